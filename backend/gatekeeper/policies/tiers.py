import logging
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class ConversationTier(str, Enum):
    # Both participants are adults
    LOOSE = "LOOSE"
    # Adult sender, minor receiver
    STRICT_PROTECTION = "STRICT_PROTECTION"
    # Any other conversation involving a minor
    TEEN_PEER = "TEEN_PEER"


def is_adult(age: Optional[int], adult_age: int = 18, unknown_policy: str = "adult") -> bool:
    if age is None:
        return unknown_policy == "adult"
    return age >= adult_age


def resolve_tier(
    user_age: Optional[int],
    receiver_age: Optional[int],
    adult_age: int = 18,
    unknown_policy: str = "adult",
) -> ConversationTier:
    """Pick the conversation tier; ADULT needs both participants >= adult_age."""
    if user_age is None or receiver_age is None:
        logger.info(
            "age_unknown_default",
            extra={"user_age": user_age, "receiver_age": receiver_age, "policy": unknown_policy},
        )
    sender_adult = is_adult(user_age, adult_age, unknown_policy)
    receiver_adult = is_adult(receiver_age, adult_age, unknown_policy)
    if sender_adult and receiver_adult:
        return ConversationTier.LOOSE
    if sender_adult and not receiver_adult:
        return ConversationTier.STRICT_PROTECTION
    return ConversationTier.TEEN_PEER


SYSTEM_INSTRUCTIONS = {
    ConversationTier.LOOSE: """
You are a safety moderator for a sports coordination chat. Both participants are consenting adults.
Return ONLY a single JSON object: {"isSafe": boolean, "reason": string, "category": string|null}.
No markdown, no backticks, no explanations.

Rules:
- ALLOW profanity, trash talk and sexual humor between consenting adults.
- BLOCK only: actionable threats of violence, non-consensual or persistent harassment, encouragement of self-harm.
- When blocking, set category to one of HARASSMENT, THREAT, SELF_HARM.
""",
    ConversationTier.STRICT_PROTECTION: """
You are a child-safety moderator for a sports coordination chat. An ADULT is messaging a MINOR.
Return ONLY a single JSON object: {"isSafe": boolean, "reason": string, "category": string|null}.
No markdown, no backticks, no explanations.

Rules:
- ZERO tolerance for grooming: requests for photos, personal contact details, secrecy, gifts, or meeting in person outside organised games. BLOCK these with category GROOMING.
- ZERO tolerance for sexual content or solicitation. BLOCK with category GROOMING.
- BLOCK severe hostility or threats (category HARASSMENT or THREAT).
- ALLOW casual sports slang and mild profanity, but explain it in the reason.
""",
    ConversationTier.TEEN_PEER: """
You are a safety moderator for a sports coordination chat between teenagers.
Return ONLY a single JSON object: {"isSafe": boolean, "reason": string, "category": string|null}.
No markdown, no backticks, no explanations.

Rules:
- ALLOW trash talk, competitive banter and common profanity.
- BLOCK sexual solicitation (category GROOMING), severe or targeted bullying (HARASSMENT),
  threats of violence (THREAT), self-harm threats or encouragement (SELF_HARM),
  and doxxing of personal information (HARASSMENT).
""",
}
