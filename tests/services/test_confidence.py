"""
Tests for the survival-weighted confidence score.
"""

import math

import pytest

from admirror.services.confidence import (
    CONFIDENCE_LABEL_COLORS,
    MIN_MULT,
    TAU,
    compute_confidence_score,
    confidence_multiplier,
    get_confidence_label,
    is_proven_or_validated,
    rank_by_confidence,
    sort_by_confidence_score,
)


class TestConstants:
    def test_min_mult(self):
        assert MIN_MULT == 0.60

    def test_tau(self):
        assert TAU == 30

    def test_every_label_has_colors(self):
        for label in ("Proven", "Validated", "Early Signal", "Unproven"):
            assert set(CONFIDENCE_LABEL_COLORS[label]) == {"bg", "color"}


class TestComputeConfidenceScore:
    def test_brand_new_ad_keeps_sixty_percent(self):
        assert compute_confidence_score(100, 0) == 60

    def test_one_time_constant(self):
        # 0.6 + 0.4 * (1 - e^-1) = 0.8528...
        assert compute_confidence_score(100, 30) == 85

    def test_long_running_approaches_raw_score(self):
        assert compute_confidence_score(100, 1000) == 100

    def test_zero_quality(self):
        assert compute_confidence_score(0, 45) == 0

    def test_multiplier_is_monotonic(self):
        values = [confidence_multiplier(d) for d in (0, 1, 7, 30, 60, 90, 365)]
        assert values == sorted(values)
        assert all(MIN_MULT <= v < 1 for v in values)

    def test_matches_formula(self):
        expected = 72 * (0.6 + 0.4 * (1 - math.exp(-12 / 30)))
        assert compute_confidence_score(72, 12) == math.floor(expected + 0.5)


class TestConfidenceLabels:
    @pytest.mark.parametrize("days,label", [
        (0, "Unproven"),
        (6, "Unproven"),
        (7, "Early Signal"),
        (29, "Early Signal"),
        (30, "Validated"),
        (59, "Validated"),
        (60, "Proven"),
        (400, "Proven"),
    ])
    def test_thresholds(self, days, label):
        assert get_confidence_label(days) == label

    def test_proven_or_validated(self):
        assert is_proven_or_validated(30) is True
        assert is_proven_or_validated(90) is True
        assert is_proven_or_validated(29) is False


class TestSortByConfidence:
    def test_established_ad_outranks_fresh_higher_score(self):
        fresh = {"id": "fresh", "final_score": 90, "days_active": 0}          # 54
        established = {"id": "old", "final_score": 70, "days_active": 60}     # 66
        assert sort_by_confidence_score(fresh, established) > 0
        assert [a["id"] for a in rank_by_confidence([fresh, established])] == ["old", "fresh"]

    def test_nested_scoring_shape(self):
        a = {"scoring": {"final": 50}, "days_active": 90}
        b = {"scoring": {"final": 10}, "days_active": 90}
        assert sort_by_confidence_score(a, b) < 0

    def test_missing_score_counts_as_zero(self):
        ranked = rank_by_confidence([{"id": "none"}, {"id": "some", "final_score": 10, "days_active": 5}])
        assert ranked[0]["id"] == "some"

    def test_ties_keep_input_order(self):
        items = [{"id": str(i), "final_score": 50, "days_active": 10} for i in range(4)]
        assert [a["id"] for a in rank_by_confidence(items)] == ["0", "1", "2", "3"]
