from __future__ import annotations

import re
from typing import List, Tuple

PHONE_PLACEHOLDER = "[PHONE]"
EMAIL_PLACEHOLDER = "[EMAIL]"

_EMAIL = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

# Local mobile/landline format first (e.g. 050-1234567, 03 123 4567),
# then a generic international/North American shape.
_PHONES: List[re.Pattern] = [
    re.compile(r"\b0(?:5[^7]|[2-4]|[8-9])[- ]?\d{3}[- ]?\d{4}\b"),
    re.compile(r"(?:\+?\d{1,3}[- ]?)?\(?\d{2,3}\)?[- ]?\d{3}[- ]?\d{4}"),
]


def scrub_pii_with_report(text: str | None) -> Tuple[str, List[str]]:
    """Redact phone numbers and email addresses.

    Returns (clean_text, kinds) where kinds lists the placeholder types used,
    e.g. ["email", "phone"].
    """
    if not text:
        return "", []

    kinds: List[str] = []
    cleaned, n = _EMAIL.subn(EMAIL_PLACEHOLDER, text)
    if n:
        kinds.append("email")

    phones = 0
    for pat in _PHONES:
        cleaned, n = pat.subn(PHONE_PLACEHOLDER, cleaned)
        phones += n
    if phones:
        kinds.append("phone")

    return cleaned, kinds


def scrub_pii(text: str | None) -> str:
    """Text safe to send outside the process boundary."""
    cleaned, _ = scrub_pii_with_report(text)
    return cleaned
