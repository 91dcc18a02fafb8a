from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
import logging

import openai
from openai import AsyncOpenAI

from ..config import Settings, get_settings
from ..core.errors import ConfigurationError, ProviderQuotaError, ProviderTransportError
from .llm import extract_retry_delay

logger = logging.getLogger(__name__)


@dataclass
class ScreenResult:
    flagged: bool
    scores: Dict[str, float] = field(default_factory=dict)


def _scores_of(category_scores: Any) -> Dict[str, float]:
    # SDK objects expose slash-separated names ("self-harm/intent") as aliases
    if isinstance(category_scores, Mapping):
        raw = dict(category_scores)
    elif hasattr(category_scores, "model_dump"):
        raw = category_scores.model_dump(by_alias=True, exclude_none=True)
    else:
        raw = dict(vars(category_scores))
    return {str(k): float(v) for k, v in raw.items() if v is not None}


class CategoricalScreen:
    """First tier: one moderation call per message, per-category float scores."""

    def __init__(self, client: Optional[Any] = None, model: str = "omni-moderation-latest", debug: bool = False):
        self._client = client
        self.model = model
        self.debug = debug

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CategoricalScreen":
        settings = settings or get_settings()
        api_key = (settings.OPENAI_API_KEY or "").strip()
        client = None
        if api_key:
            client = AsyncOpenAI(api_key=api_key, max_retries=0)
        else:
            logger.error("OPENAI_API_KEY is not set; categorical screen unavailable")
        return cls(client=client, model=settings.SCREEN_MODEL, debug=settings.DEBUG_AI)

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def screen(self, text: str) -> ScreenResult:
        if self._client is None:
            raise ConfigurationError("categorical screen client not configured")
        if self.debug:
            logger.debug("screen request: %s", text)
        try:
            resp = await self._client.moderations.create(model=self.model, input=text)
        except openai.RateLimitError as e:
            raise ProviderQuotaError(str(e), retry_delay=extract_retry_delay(e), model=self.model) from e
        except openai.APIError as e:
            raise ProviderTransportError(f"screen call failed: {e}", model=self.model) from e

        try:
            result = resp.results[0]
            out = ScreenResult(flagged=bool(result.flagged), scores=_scores_of(result.category_scores))
        except (AttributeError, IndexError, TypeError, ValueError) as e:
            raise ProviderTransportError(f"unreadable screen response: {e}", model=self.model) from e
        if self.debug:
            logger.debug("screen response: flagged=%s scores=%s", out.flagged, out.scores)
        return out
