"""
Confidence scoring for ad rankings.

An ad's raw quality score is discounted by how little time it has spent in
market. Fresh ads keep 60% of their score; the discount fades exponentially
(time constant 30 days) so that a long-running, merely-good ad can outrank a
brand-new ad with a higher raw score.
"""

import math
from functools import cmp_to_key
from typing import Any, Dict, Iterable, List

from .helpers import round_half_up

MIN_MULT = 0.60
TAU = 30

# Label thresholds (days active, inclusive lower bound)
EARLY_SIGNAL_DAYS = 7
VALIDATED_DAYS = 30
PROVEN_DAYS = 60

CONFIDENCE_LABEL_COLORS: Dict[str, Dict[str, str]] = {
    "Proven": {"bg": "#DCFCE7", "color": "#166534"},
    "Validated": {"bg": "#DBEAFE", "color": "#1E40AF"},
    "Early Signal": {"bg": "#FEF3C7", "color": "#92400E"},
    "Unproven": {"bg": "#FEE2E2", "color": "#991B1B"},
}


def confidence_multiplier(days_active: float) -> float:
    """Time-decay multiplier in [MIN_MULT, 1)."""
    return MIN_MULT + (1 - MIN_MULT) * (1 - math.exp(-days_active / TAU))


def compute_confidence_score(quality_score: float, days_active: float) -> int:
    """
    Apply the time-decay multiplier to a raw quality score.

    Args:
        quality_score: Raw (final) quality score of the ad
        days_active: Days the ad has been observed running

    Returns:
        Rounded confidence score
    """
    return round_half_up(quality_score * confidence_multiplier(days_active))


def get_confidence_label(days_active: float) -> str:
    if days_active >= PROVEN_DAYS:
        return "Proven"
    if days_active >= VALIDATED_DAYS:
        return "Validated"
    if days_active >= EARLY_SIGNAL_DAYS:
        return "Early Signal"
    return "Unproven"


def is_proven_or_validated(days_active: float) -> bool:
    return days_active >= VALIDATED_DAYS


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def _final_score(item: Any) -> float:
    # Accepts {"final_score": x} or the nested {"scoring": {"final": x}} shape
    score = _field(item, "final_score")
    if score is None:
        scoring = _field(item, "scoring")
        if scoring is not None:
            score = _field(scoring, "final")
    return score or 0


def sort_by_confidence_score(a: Any, b: Any) -> int:
    """Comparator ordering ads by confidence score, highest first."""
    score_a = compute_confidence_score(_final_score(a), _field(a, "days_active") or 0)
    score_b = compute_confidence_score(_final_score(b), _field(b, "days_active") or 0)
    return score_b - score_a


def rank_by_confidence(items: Iterable[Any]) -> List[Any]:
    """Return ``items`` sorted by descending confidence score (stable)."""
    return sorted(items, key=cmp_to_key(sort_by_confidence_score))
