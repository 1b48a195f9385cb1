"""
Services layer for AdMirror.

Separates persistence (AdStore), AI collaborators (vision, transcription,
media) and the scoring/classification/tagging logic that drives them.
"""

from .ad_store import AdStore
from .confidence import (
    compute_confidence_score,
    get_confidence_label,
    is_proven_or_validated,
    rank_by_confidence,
    sort_by_confidence_score,
)

__all__ = [
    'AdStore',
    'compute_confidence_score',
    'get_confidence_label',
    'is_proven_or_validated',
    'rank_by_confidence',
    'sort_by_confidence_score',
]
