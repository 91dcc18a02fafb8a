from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Confirmed-unsafe categories attached by the cascade
UnsafeCategory = Literal["HARASSMENT", "GROOMING", "THREAT", "SELF_HARM"]


class Verdict(BaseModel):
    """Outcome of one adjudication. Never persisted directly.

    Serialises with camelCase aliases (``isSafe``, ``reviewNeeded``...) for
    the chat layer; Python code uses the snake_case attributes.
    """

    is_safe: bool
    review_needed: bool = False
    reason: Optional[str] = None
    source: str = ""
    retry_delay: Optional[float] = None
    category: Optional[UnsafeCategory] = None
    triggers: List[str] = Field(default_factory=list)
    # True when the cascade itself already charged the unsafe penalty
    penalty_applied: bool = False
    audit_data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        """What the chat layer sees; audit details and penalty bookkeeping stay server-side."""
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"audit_data", "penalty_applied"})

    def for_cache(self) -> Dict[str, Any]:
        """The cacheable subset: what was decided, not how this call got there."""
        return self.model_dump(
            by_alias=True,
            include={"is_safe", "review_needed", "reason", "category", "triggers"},
            exclude_none=True,
        )


class ModerationOptions(BaseModel):
    user_id: str = "anonymous"
    user_age: Optional[int] = None
    receiver_age: Optional[int] = None
    max_history_chars: Optional[int] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class HistoryItem(BaseModel):
    role: str
    content: str = ""


class EscalationDecision(BaseModel):
    """Structured output expected from the contextual escalation model."""

    is_safe: bool = Field(alias="isSafe")
    reason: str = ""
    category: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)
