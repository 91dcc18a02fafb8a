from typing import Any, List, Optional, Tuple
import json
import logging
import re

import openai
from openai import AsyncOpenAI

from ..config import Settings, get_settings
from ..core.errors import ConfigurationError, ProviderQuotaError, ProviderTransportError
from ..models.verdict import EscalationDecision

logger = logging.getLogger(__name__)

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s)?\s*$")


def _extract_json(text: str) -> str:
    # Best-effort: pick the first {...} block
    m = re.search(r"\{[\s\S]*\}$", text.strip())
    if m:
        return m.group(0)
    m2 = re.search(r"\{[\s\S]*\}", text)
    if m2:
        return m2.group(0)
    return text


def _parse_duration(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        m = _DURATION.match(value)
        if m:
            seconds = float(m.group(1))
            return seconds / 1000 if m.group(2) == "ms" else seconds
    return None


def _find_retry_delay(node: Any) -> Optional[float]:
    # google.rpc.RetryInfo: {"@type": ".../google.rpc.RetryInfo", "retryDelay": "37s"}
    if isinstance(node, dict):
        if "retryDelay" in node:
            parsed = _parse_duration(node["retryDelay"])
            if parsed is not None:
                return parsed
        for v in node.values():
            found = _find_retry_delay(v)
            if found is not None:
                return found
    elif isinstance(node, list):
        for v in node:
            found = _find_retry_delay(v)
            if found is not None:
                return found
    return None


def extract_retry_delay(err: Any) -> Optional[float]:
    """Server-suggested wait (seconds) from a quota error.

    Looks for a structured RetryInfo in the error body first, then the
    Retry-After header.
    """
    body = getattr(err, "body", None)
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError:
            body = None
    delay = _find_retry_delay(body)
    if delay is not None:
        return delay
    response = getattr(err, "response", None)
    headers = getattr(response, "headers", None) or {}
    try:
        return _parse_duration(headers.get("retry-after"))
    except AttributeError:
        return None


class EscalationClient:
    """Second tier: contextual structured-output call over an ordered model chain.

    A quota error moves on to the next model; any other error aborts the
    chain at once. Exhausting the chain raises ProviderQuotaError carrying the
    last retry delay the provider suggested.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        models: Optional[List[str]] = None,
        temperature: float = 0.1,
        max_tokens: int = 300,
        debug: bool = False,
    ):
        self._client = client
        self.models = list(models or [])
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.debug = debug

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "EscalationClient":
        settings = settings or get_settings()
        api_key = (settings.ESCALATION_API_KEY or "").strip()
        client = None
        if api_key:
            client = AsyncOpenAI(api_key=api_key, base_url=settings.ESCALATION_BASE_URL, max_retries=0)
        else:
            logger.error("ESCALATION_API_KEY is not set; escalation unavailable")
        return cls(
            client=client,
            models=settings.ESCALATION_MODELS,
            temperature=settings.ESCALATION_TEMPERATURE,
            max_tokens=settings.ESCALATION_MAX_TOKENS,
            debug=settings.DEBUG_AI,
        )

    @property
    def configured(self) -> bool:
        return self._client is not None and bool(self.models)

    async def decide(self, system_instruction: str, prompt: str) -> Tuple[EscalationDecision, str]:
        """Return (decision, model_used)."""
        if not self.configured:
            raise ConfigurationError("escalation client not configured")

        last_delay: Optional[float] = None
        for model in self.models:
            try:
                decision = await self._ask(model, system_instruction, prompt)
                return decision, model
            except ProviderQuotaError as e:
                if e.retry_delay is not None:
                    last_delay = e.retry_delay
                logger.warning(
                    "escalation_quota",
                    extra={"model": model, "retry_delay": e.retry_delay},
                )
        raise ProviderQuotaError("every escalation model is quota-exhausted", retry_delay=last_delay)

    async def _ask(self, model: str, system_instruction: str, prompt: str) -> EscalationDecision:
        messages = [
            {"role": "system", "content": system_instruction},
            {"role": "user", "content": prompt},
        ]
        if self.debug:
            logger.debug("escalation request model=%s prompt=%s", model, prompt)
        try:
            resp = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.RateLimitError as e:
            raise ProviderQuotaError(str(e), retry_delay=extract_retry_delay(e), model=model) from e
        except openai.APIError as e:
            raise ProviderTransportError(f"escalation call failed: {e}", model=model) from e

        raw = ""
        try:
            raw = resp.choices[0].message.content or ""
        except (AttributeError, IndexError, TypeError):
            pass
        if self.debug:
            logger.debug("escalation raw output model=%s: %s", model, raw)
        if not raw.strip():
            raise ProviderTransportError("escalation returned empty content", model=model)

        try:
            obj = json.loads(_extract_json(raw.replace("```json", "").replace("```", "")))
            return EscalationDecision.model_validate(obj)
        except ValueError as e:
            raise ProviderTransportError(f"escalation output was not a valid decision: {e}", model=model) from e
