"""
Tests for VelocityAnalyzer - signal-weighted element velocity.

All database calls are mocked.
"""

from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest

from admirror.services.analysis.velocity import (
    VelocityAnalyzer,
    calculate_velocity,
    calculate_weighted_prevalence,
    classify_velocity,
    detect_track_divergences,
    filter_by_track,
    to_tagged_ads,
)
from admirror.services.models import TaggedAd, VelocityDirection

NOW = datetime(2025, 6, 30, tzinfo=timezone.utc)

COMPETITORS = [
    {"id": "c1", "name": "Slowburn", "track": "consolidator"},
    {"id": "c2", "name": "Rapidfire", "track": "velocity_tester"},
]


def _row(ad_id, competitor_id, launch, signal, format_type, track="consolidator", **extra):
    return {
        "id": ad_id,
        "competitor_id": competitor_id,
        "competitor_track": track,
        "signal_strength": signal,
        "launch_date": launch,
        "is_video": False,
        "tags": {"format_type": format_type},
        "video_tags": {},
        **extra,
    }


def _rows():
    """Both competitors ran static images last month and moved to UGC this month."""
    return [
        _row("a1", "c1", "2025-06-10", 30, "ugc_talking_head"),
        _row("a2", "c2", "2025-06-12", 10, "ugc_talking_head", track="velocity_tester"),
        _row("a3", "c1", "2025-06-15", 10, "static_image"),
        _row("p1", "c1", "2025-05-10", 10, "static_image"),
        _row("p2", "c2", "2025-05-12", 10, "static_image", track="velocity_tester"),
        _row("o1", "c1", "2025-04-10", 90, "product_demo"),
    ]


def _ad(ad_id, signal, format_type, track=None, is_video=False, video_tags=None):
    return TaggedAd(
        id=ad_id,
        competitor_id="c1",
        signal_strength=signal,
        competitor_track=track,
        launch_date=date(2025, 6, 10),
        is_video=is_video,
        tags={"format_type": format_type},
        video_tags=video_tags or {},
    )


@pytest.fixture
def store():
    store = MagicMock()
    store.fetch_brand.return_value = {"id": "b1", "name": "Acme"}
    store.fetch_brand_competitors.return_value = COMPETITORS
    store.fetch_tagged_ads.return_value = _rows()
    return store


# ============================================================================
# Pure functions
# ============================================================================

class TestWeightedPrevalence:
    def test_weighted_by_signal_strength(self):
        prevalence = calculate_weighted_prevalence([
            _ad("a1", 30, "static_image"),
            _ad("a2", 10, "ugc_talking_head"),
        ])

        assert prevalence["format_type"]["static_image"] == pytest.approx(0.75)
        assert prevalence["format_type"]["ugc_talking_head"] == pytest.approx(0.25)
        assert prevalence["format_type"]["product_demo"] == 0.0

    def test_video_dimensions_only_from_video_ads(self):
        prevalence = calculate_weighted_prevalence([
            _ad("v1", 10, "static_image", is_video=True, video_tags={"pacing": "mixed"}),
            _ad("i1", 10, "static_image", video_tags={"pacing": "slow_single_shot"}),
        ])

        assert prevalence["pacing"]["mixed"] == 1.0
        assert prevalence["pacing"]["slow_single_shot"] == 0.0

    def test_unknown_values_are_ignored(self):
        prevalence = calculate_weighted_prevalence([_ad("a1", 10, "hologram")])
        assert sum(prevalence["format_type"].values()) == 0.0

    def test_empty(self):
        assert calculate_weighted_prevalence([]) == {}

    def test_track_filter(self):
        ads = [_ad("a1", 10, "static_image", track="consolidator"), _ad("a2", 10, "ugc_talking_head")]

        assert [ad.id for ad in filter_by_track(ads, "consolidator")] == ["a1"]
        assert len(filter_by_track(ads, "all")) == 2
        assert calculate_weighted_prevalence(ads, "velocity_tester") == {}


class TestClassifyVelocity:
    @pytest.mark.parametrize("velocity,expected", [
        (0.31, VelocityDirection.ACCELERATING),
        (0.3, VelocityDirection.STABLE),
        (0.0, VelocityDirection.STABLE),
        (-0.3, VelocityDirection.STABLE),
        (-0.31, VelocityDirection.DECLINING),
    ])
    def test_thresholds(self, velocity, expected):
        assert classify_velocity(velocity) == expected


class TestCalculateVelocity:
    def test_relative_change_and_new_values(self):
        current = {"format_type": {"ugc_talking_head": 0.5, "static_image": 0.25, "product_demo": 0.0}}
        previous = {"format_type": {"static_image": 0.5}}

        by_value = {v.value: v for v in calculate_velocity(current, previous)}

        assert by_value["ugc_talking_head"].velocity_percent == 1.0
        assert by_value["ugc_talking_head"].direction == VelocityDirection.ACCELERATING
        assert by_value["static_image"].velocity_percent == -0.5
        assert by_value["static_image"].direction == VelocityDirection.DECLINING
        assert by_value["product_demo"].velocity_percent == 0.0

    def test_values_below_floor_do_not_count_as_new(self):
        velocities = calculate_velocity({"pacing": {"mixed": 0.005}}, {})
        assert velocities[0].velocity_percent == 0.0


class TestTrackDivergence:
    def test_sorted_by_size_with_direction(self):
        consolidator = {"format_type": {
            "static_image": 0.7, "ugc_talking_head": 0.3, "product_demo": 0.0, "lifestyle_photo": 0.0,
        }}
        velocity_tester = {"format_type": {
            "static_image": 0.2, "ugc_talking_head": 0.6, "product_demo": 0.2, "lifestyle_photo": 0.1,
        }}

        divergences = detect_track_divergences(consolidator, velocity_tester)

        assert [d.value for d in divergences] == ["static_image", "ugc_talking_head", "product_demo"]
        assert divergences[0].direction == "consolidators_leading"
        assert divergences[0].divergence_percent == -0.5
        assert divergences[1].direction == "velocity_testers_leading"


class TestToTaggedAds:
    def test_drops_rows_without_launch_date(self):
        rows = [_row("a1", "c1", "2025-06-10T09:30:00+00:00", 10, "static_image"),
                _row("a2", "c1", None, 10, "static_image")]

        ads = to_tagged_ads(rows)

        assert [ad.id for ad in ads] == ["a1"]
        assert ads[0].launch_date == date(2025, 6, 10)


# ============================================================================
# Analyzer
# ============================================================================

class TestAnalyzeBrand:
    @pytest.mark.asyncio
    async def test_ranks_accelerating_and_declining(self, store):
        result = await VelocityAnalyzer(store, now=NOW).analyze_brand("b1")

        assert result.competitive_set == "Acme Competitors"
        assert result.analysis_date == date(2025, 6, 30)
        assert [(v.value, v.velocity_percent) for v in result.top_accelerating] == [("ugc_talking_head", 1.0)]
        assert result.top_accelerating[0].ad_count == 2
        assert [(v.value, v.velocity_percent) for v in result.top_declining] == [("static_image", -0.8)]
        assert result.full_dimension_breakdown["format_type"]["ugc_talking_head"].current == 0.8
        store.fetch_tagged_ads.assert_called_once_with(["c1", "c2"], date(2025, 4, 1))

    @pytest.mark.asyncio
    async def test_track_divergences(self, store):
        result = await VelocityAnalyzer(store, now=NOW).analyze_brand("b1")

        by_value = {d.value: d for d in result.track_divergences}
        assert set(by_value) == {"ugc_talking_head", "static_image"}
        assert by_value["ugc_talking_head"].direction == "velocity_testers_leading"
        assert by_value["static_image"].direction == "consolidators_leading"

    @pytest.mark.asyncio
    async def test_snapshots_per_track_filter(self, store):
        result = await VelocityAnalyzer(store, now=NOW).analyze_brand("b1")

        rows = store.upsert_velocity_snapshots.call_args[0][0]
        assert result.snapshots_saved == len(rows) == 5
        assert {r["track_filter"] for r in rows} == {"all", "consolidator", "velocity_tester"}
        consolidator_ugc = next(
            r for r in rows if r["track_filter"] == "consolidator" and r["value"] == "ugc_talking_head"
        )
        assert consolidator_ugc["weighted_prevalence"] == pytest.approx(0.75)
        assert consolidator_ugc["total_signal_strength"] == 40
        assert consolidator_ugc["period_start"] == "2025-05-31"
        assert all(r["weighted_prevalence"] > 0 for r in rows)

    @pytest.mark.asyncio
    async def test_no_competitors(self, store):
        store.fetch_brand_competitors.return_value = []

        assert await VelocityAnalyzer(store, now=NOW).analyze_brand("b1") is None
        store.upsert_velocity_snapshots.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_tagged_ads(self, store):
        store.fetch_tagged_ads.return_value = []
        assert await VelocityAnalyzer(store, now=NOW).analyze_brand("b1") is None


class TestVelocityRun:
    @pytest.mark.asyncio
    async def test_failed_brand_is_counted_and_skipped(self, store):
        store.fetch_client_brands.return_value = [{"id": "b1"}, {"id": "b2"}]

        def fetch_brand(brand_id):
            if brand_id == "b2":
                raise Exception("postgrest 500")
            return {"id": brand_id, "name": "Acme"}

        store.fetch_brand.side_effect = fetch_brand

        stats = await VelocityAnalyzer(store, now=NOW).run()

        assert stats.brands_analyzed == 1
        assert stats.snapshots_saved == 5
        assert stats.failed == 1

    @pytest.mark.asyncio
    async def test_brand_query_failure(self, store):
        store.fetch_client_brands.side_effect = Exception("timeout")

        stats = await VelocityAnalyzer(store, now=NOW).run()

        assert stats.brands_analyzed == 0
        assert stats.failed == 0
