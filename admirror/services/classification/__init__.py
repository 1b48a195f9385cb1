"""Competitor track classification."""

from .track_classifier import (
    TrackClassifier,
    calculate_track_a_signal,
    calculate_track_b_signal,
    classify_competitor,
    run_classification_pipeline,
)

__all__ = [
    'TrackClassifier',
    'calculate_track_a_signal',
    'calculate_track_b_signal',
    'classify_competitor',
    'run_classification_pipeline',
]
