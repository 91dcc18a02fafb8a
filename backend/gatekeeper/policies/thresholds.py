"""Per-category block/flag thresholds.

Two static tables (TEEN and ADULT) keyed by the categorical screen's
category names. A live reputation modifier shifts every value: higher
reputation loosens the bar, lower reputation tightens it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

REPUTATION_NEUTRAL = 50
THRESHOLD_FLOOR = 0.15
THRESHOLD_CEILING = 0.95


@dataclass(frozen=True)
class CategoryThreshold:
    block: float
    flag: float


ThresholdTable = Dict[str, CategoryThreshold]

TEEN_THRESHOLDS: Mapping[str, CategoryThreshold] = {
    "harassment": CategoryThreshold(block=0.70, flag=0.30),
    "harassment/threatening": CategoryThreshold(block=0.40, flag=0.10),
    "hate": CategoryThreshold(block=0.50, flag=0.10),
    "hate/threatening": CategoryThreshold(block=0.30, flag=0.05),
    "illicit": CategoryThreshold(block=0.60, flag=0.20),
    "illicit/violent": CategoryThreshold(block=0.40, flag=0.10),
    "self-harm": CategoryThreshold(block=0.40, flag=0.05),
    "self-harm/intent": CategoryThreshold(block=0.30, flag=0.05),
    "self-harm/instructions": CategoryThreshold(block=0.20, flag=0.05),
    "sexual": CategoryThreshold(block=0.40, flag=0.10),
    "sexual/minors": CategoryThreshold(block=0.15, flag=0.05),
    "violence": CategoryThreshold(block=0.80, flag=0.40),
    "violence/graphic": CategoryThreshold(block=0.70, flag=0.30),
}

ADULT_THRESHOLDS: Mapping[str, CategoryThreshold] = {
    "harassment": CategoryThreshold(block=0.95, flag=0.80),
    "harassment/threatening": CategoryThreshold(block=0.80, flag=0.40),
    "hate": CategoryThreshold(block=0.80, flag=0.40),
    "hate/threatening": CategoryThreshold(block=0.60, flag=0.20),
    "illicit": CategoryThreshold(block=0.90, flag=0.60),
    "illicit/violent": CategoryThreshold(block=0.70, flag=0.30),
    "self-harm": CategoryThreshold(block=0.60, flag=0.20),
    "self-harm/intent": CategoryThreshold(block=0.50, flag=0.15),
    "self-harm/instructions": CategoryThreshold(block=0.40, flag=0.10),
    "sexual": CategoryThreshold(block=0.95, flag=0.85),
    "sexual/minors": CategoryThreshold(block=0.15, flag=0.05),
    "violence": CategoryThreshold(block=0.95, flag=0.70),
    "violence/graphic": CategoryThreshold(block=0.90, flag=0.60),
}


def select_base_thresholds(is_adult_conversation: bool) -> ThresholdTable:
    return dict(ADULT_THRESHOLDS if is_adult_conversation else TEEN_THRESHOLDS)


def merge_overrides(table: Mapping[str, CategoryThreshold], overrides: Optional[Mapping[str, Any]]) -> ThresholdTable:
    """Overlay caller overrides on a base table.

    An override is either a mapping with ``block``/``flag`` keys (either may be
    omitted) or a bare number, which sets the flag level. Flag never ends up
    above block.
    """
    out: ThresholdTable = dict(table)
    for cat, value in (overrides or {}).items():
        base = out.get(cat) or CategoryThreshold(block=THRESHOLD_CEILING, flag=THRESHOLD_CEILING)
        if isinstance(value, (int, float)):
            block, flag = max(base.block, float(value)), float(value)
        elif isinstance(value, Mapping):
            block = float(value.get("block", base.block))
            flag = float(value.get("flag", base.flag))
        else:
            continue
        block = max(0.0, min(1.0, block))
        flag = max(0.0, min(block, flag))
        out[cat] = CategoryThreshold(block=block, flag=flag)
    return out


def _clamp(value: float, base: float) -> float:
    # A base outside [floor, ceiling] is its own bound on that side
    low = min(base, THRESHOLD_FLOOR)
    high = max(base, THRESHOLD_CEILING)
    return round(max(low, min(high, value)), 2)


def apply_reputation_modifier(table: Mapping[str, CategoryThreshold], reputation: int) -> ThresholdTable:
    """Shift every threshold by (reputation - 50) / 100 and clamp to [0.15, 0.95].

    Values that start below the floor (or above the ceiling) are never moved
    back across it, so lower reputation can only tighten.

    Neutral reputation returns the table as-is.
    """
    if reputation == REPUTATION_NEUTRAL:
        return dict(table)
    modifier = (reputation - REPUTATION_NEUTRAL) / 100
    out: ThresholdTable = {}
    for cat, t in table.items():
        block = _clamp(t.block + modifier, t.block)
        flag = min(_clamp(t.flag + modifier, t.flag), block)
        out[cat] = CategoryThreshold(block=block, flag=flag)
    return out


def limit_for(table: Mapping[str, CategoryThreshold], category: str) -> Optional[CategoryThreshold]:
    """Exact category first, then its parent ("self-harm/intent" -> "self-harm")."""
    if category in table:
        return table[category]
    if "/" in category:
        return table.get(category.split("/", 1)[0])
    return None


@dataclass
class TriggerReport:
    block: List[str] = field(default_factory=list)
    flag: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)

    @property
    def triggered(self) -> bool:
        return bool(self.block or self.flag)

    def all(self) -> List[str]:
        # BLOCK triggers take priority in ordering
        return list(self.block) + list(self.flag)


def classify_triggers(
    scores: Mapping[str, float],
    table: Mapping[str, CategoryThreshold],
    provider_flagged: bool = False,
) -> TriggerReport:
    report = TriggerReport()
    for cat, score in scores.items():
        if score is None:
            continue
        limit = limit_for(table, cat)
        if limit is None:
            continue
        score = float(score)
        if score > limit.block:
            report.block.append(f"{cat} ({score:.3f} > block {limit.block:.2f})")
            report.categories.append(cat)
        elif score > limit.flag:
            report.flag.append(f"{cat} ({score:.3f} > flag {limit.flag:.2f})")
            report.categories.append(cat)
    if provider_flagged and not report.triggered:
        report.flag.append("flagged_by_screen")
    return report
