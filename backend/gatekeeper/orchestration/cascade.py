"""Two-stage moderation cascade.

RECEIVED -> CACHE_HIT | RATE_LIMITED | SCREEN_CLEAN
         -> ESCALATED -> RESOLVED | ESCALATION_FAILED

Every path ends in a Verdict. Internal and provider failures fail open:
the message is allowed but marked ``review_needed`` so the review queue
can re-adjudicate it later.
"""

from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
import logging

from ..config import Settings, get_settings
from ..core.errors import ConfigurationError, ProviderQuotaError, ProviderTransportError
from ..models.verdict import EscalationDecision, HistoryItem, ModerationOptions, Verdict
from ..policies.thresholds import (
    ThresholdTable,
    TriggerReport,
    apply_reputation_modifier,
    classify_triggers,
    merge_overrides,
    select_base_thresholds,
)
from ..policies.tiers import SYSTEM_INSTRUCTIONS, ConversationTier, resolve_tier
from ..safety.reputation import ReputationCache
from ..safety.scrubber import scrub_pii
from .llm import EscalationClient
from .screen import CategoricalScreen

logger = logging.getLogger(__name__)

UNSAFE_CATEGORIES = ("HARASSMENT", "GROOMING", "THREAT", "SELF_HARM")

HistoryLike = Union[HistoryItem, Mapping[str, Any]]


class CascadeState(str, Enum):
    RECEIVED = "RECEIVED"
    CACHE_HIT = "CACHE_HIT"
    RATE_LIMITED = "RATE_LIMITED"
    SCREEN_CLEAN = "SCREEN_CLEAN"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    ESCALATION_FAILED = "ESCALATION_FAILED"


def _state(user_id: str, state: CascadeState, **extra: Any) -> None:
    logger.info("moderation_state", extra={"user_id": user_id, "state": state.value, **extra})


def build_context(
    history: Optional[Sequence[HistoryLike]],
    max_chars: int = 2000,
    max_messages: int = 10,
) -> str:
    """Most recent messages first, scrubbed, bounded; returned in chronological order."""
    picked: List[str] = []
    used = 0
    for msg in list(reversed(list(history or [])))[:max_messages]:
        if isinstance(msg, HistoryItem):
            role, content = msg.role, msg.content
        else:
            role, content = msg.get("role", "user"), msg.get("content", "")
        line = f"{role}: {scrub_pii(content)}\n"
        if used + len(line) > max_chars:
            break
        picked.append(line)
        used += len(line)
    return "".join(reversed(picked))


def categorize(tier: ConversationTier, report: TriggerReport, proposed: Optional[str]) -> str:
    """Category for a confirmed-unsafe verdict."""
    if proposed and proposed.upper() in UNSAFE_CATEGORIES:
        return proposed.upper()
    cats = report.categories
    if any(c.startswith("sexual") for c in cats) and tier != ConversationTier.LOOSE:
        return "GROOMING"
    if any(c.startswith("self-harm") for c in cats):
        return "SELF_HARM"
    if any(c.startswith("violence") or c.endswith("/threatening") or c == "illicit/violent" for c in cats):
        return "THREAT"
    if tier == ConversationTier.STRICT_PROTECTION:
        return "GROOMING"
    return "HARASSMENT"


class ContentModerator:
    def __init__(
        self,
        security: ReputationCache,
        screen: CategoricalScreen,
        escalation: EscalationClient,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.security = security
        self.screen = screen
        self.escalation = escalation
        logger.info(
            "ContentModerator ready: screen=%s escalation=%s models=%s",
            screen.configured,
            escalation.configured,
            escalation.models,
        )

    def rate_limit_for(self, reputation: int) -> int:
        if reputation < self.settings.REPUTATION_SUSPICIOUS_THRESHOLD:
            return self.settings.RATE_LIMIT_SUSPICIOUS
        return self.settings.RATE_LIMIT_DEFAULT

    def active_policy(
        self,
        tier: ConversationTier,
        reputation: int,
        override_config: Optional[Mapping[str, Any]] = None,
    ) -> ThresholdTable:
        base = select_base_thresholds(tier == ConversationTier.LOOSE)
        return apply_reputation_modifier(merge_overrides(base, override_config), reputation)

    async def check_message(
        self,
        text: Optional[str],
        history: Optional[Sequence[HistoryLike]] = None,
        override_config: Optional[Mapping[str, Any]] = None,
        options: Optional[Union[ModerationOptions, Mapping[str, Any]]] = None,
    ) -> Verdict:
        """Adjudicate one message. Never raises."""
        try:
            if options is None:
                opts = ModerationOptions()
            elif isinstance(options, ModerationOptions):
                opts = options
            else:
                opts = ModerationOptions.model_validate(dict(options))
            return await self._run(text, history, override_config, opts)
        except Exception as e:
            logger.error("Moderation execution error: %s", e, exc_info=True)
            return Verdict(
                is_safe=True,
                review_needed=True,
                source="fail_open_error",
                reason="internal error",
                audit_data={"error": str(e)},
            )

    async def _run(
        self,
        text: Optional[str],
        history: Optional[Sequence[HistoryLike]],
        override_config: Optional[Mapping[str, Any]],
        opts: ModerationOptions,
    ) -> Verdict:
        user_id = opts.user_id
        safe_message = (text or "")[: self.settings.MAX_MESSAGE_CHARS]
        _state(user_id, CascadeState.RECEIVED, length=len(safe_message))
        if not safe_message:
            return Verdict(is_safe=True, source="empty")

        # 1) decision cache
        cached = await self.security.get_cached_verdict(safe_message)
        if cached:
            _state(user_id, CascadeState.CACHE_HIT)
            verdict = Verdict.model_validate(cached)
            return verdict.model_copy(update={"source": "cache_hit", "penalty_applied": False})

        # 2) reputation-aware rate limit
        reputation = await self.security.get_reputation(user_id)
        if await self.security.should_throttle(user_id, self.rate_limit_for(reputation)):
            _state(user_id, CascadeState.RATE_LIMITED, reputation=reputation)
            return Verdict(is_safe=True, review_needed=True, source="ratelimit_bypass", reason="rate limited")

        # 3) providers must be wired
        if not self.screen.configured or not self.escalation.configured:
            logger.error("Moderation providers unavailable")
            return Verdict(is_safe=True, review_needed=True, source="system_down", reason="providers unavailable")

        # 4) nothing unscrubbed leaves the process
        sanitized = scrub_pii(safe_message)
        tier = resolve_tier(
            opts.user_age,
            opts.receiver_age,
            adult_age=self.settings.ADULT_AGE,
            unknown_policy=self.settings.UNKNOWN_AGE_POLICY,
        )
        policy = self.active_policy(tier, reputation, override_config)

        # 5) fast categorical screen
        try:
            screened = await self.screen.screen(sanitized)
        except (ProviderQuotaError, ProviderTransportError) as e:
            logger.warning("Categorical screen failed: %s", e)
            return Verdict(
                is_safe=True,
                review_needed=True,
                source="fail_open_error",
                reason="screen unavailable",
                retry_delay=getattr(e, "retry_delay", None),
                audit_data={"error": str(e), "model": e.model},
            )
        report = classify_triggers(screened.scores, policy, screened.flagged)

        if not report.triggered:
            _state(user_id, CascadeState.SCREEN_CLEAN, tier=tier.value)
            if len(safe_message) >= self.settings.REPUTATION_MIN_LEN_FOR_REWARD:
                await self.security.adjust_reputation(
                    user_id, self.settings.REPUTATION_REWARD_SAFE, baseline=reputation
                )
            verdict = Verdict(is_safe=True, source="screen_clean")
            await self.security.set_cached_verdict(safe_message, verdict)
            return verdict

        # 6) contextual escalation
        _state(
            user_id,
            CascadeState.ESCALATED,
            tier=tier.value,
            block=len(report.block),
            flag=len(report.flag),
        )
        max_chars = opts.max_history_chars or self.settings.MAX_HISTORY_CHARS
        context = build_context(history, max_chars, self.settings.MAX_HISTORY_MESSAGES)
        prompt = self._escalation_prompt(sanitized, context, report, policy, reputation, tier, opts)

        try:
            decision, model = await self.escalation.decide(SYSTEM_INSTRUCTIONS[tier], prompt)
        except ProviderQuotaError as e:
            _state(user_id, CascadeState.ESCALATION_FAILED, cause="quota", retry_delay=e.retry_delay)
            return Verdict(
                is_safe=True,
                review_needed=True,
                source="escalation_quota_exhausted",
                reason="escalation models quota-exhausted",
                retry_delay=e.retry_delay,
                triggers=report.all(),
            )
        except (ProviderTransportError, ConfigurationError) as e:
            _state(user_id, CascadeState.ESCALATION_FAILED, cause="transport")
            return Verdict(
                is_safe=True,
                review_needed=True,
                source="escalation_failed",
                reason="escalation unavailable",
                triggers=report.all(),
                audit_data={"error": str(e), "model": getattr(e, "model", None)},
            )

        verdict = self._resolve(decision, model, tier, report)
        _state(user_id, CascadeState.RESOLVED, is_safe=verdict.is_safe, category=verdict.category)

        if not verdict.is_safe:
            # A mere flag costs nothing; a confirmed-unsafe message is charged once
            verdict.penalty_applied = await self.security.penalize_once(
                user_id, safe_message, self.settings.REPUTATION_PENALTY_UNSAFE, baseline=reputation
            )

        await self.security.set_cached_verdict(safe_message, verdict)
        return verdict

    def _resolve(
        self,
        decision: EscalationDecision,
        model: str,
        tier: ConversationTier,
        report: TriggerReport,
    ) -> Verdict:
        if decision.is_safe:
            return Verdict(
                is_safe=True,
                reason=decision.reason,
                source="escalation_decision",
                triggers=report.all(),
                audit_data={"model": model, "tier": tier.value},
            )
        return Verdict(
            is_safe=False,
            reason=decision.reason,
            source="escalation_decision",
            category=categorize(tier, report, decision.category),
            triggers=report.all(),
            audit_data={"model": model, "tier": tier.value},
        )

    def _escalation_prompt(
        self,
        message: str,
        context: str,
        report: TriggerReport,
        policy: ThresholdTable,
        reputation: int,
        tier: ConversationTier,
        opts: ModerationOptions,
    ) -> str:
        policy_lines = "\n".join(
            f"- {cat}: flag {t.flag:.2f}, block {t.block:.2f}" for cat, t in sorted(policy.items())
        )
        profile = f"Reputation: {reputation}/100."
        if opts.user_age is not None:
            profile += f" Sender age: {opts.user_age}."
        if opts.receiver_age is not None:
            profile += f" Receiver age: {opts.receiver_age}."

        notes = "Ignore gaming/sports slang or friendly banter if the context allows."
        if reputation < self.settings.REPUTATION_SUSPICIOUS_THRESHOLD:
            notes += " WARNING: low reputation sender. Do not give benefit of the doubt."

        return (
            f"Conversation tier: {tier.value}\n"
            f"Sender profile: {profile}\n\n"
            f"Policy (0=strict, 1=loose):\n{policy_lines}\n\n"
            f"Blocking triggers: [{', '.join(report.block)}]\n"
            f"Flagging triggers: [{', '.join(report.flag)}]\n\n"
            f"Context (PII scrubbed):\n{context or '(none)'}\n\n"
            f'Message to evaluate: "{message}"\n\n'
            f"Notes: {notes}\n"
            'Return JSON: {"isSafe": boolean, "reason": string, "category": string|null}'
        )
