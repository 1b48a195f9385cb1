"""
Tests for LifecycleAnalyzer - breakout cohorts and cash cows.

All database calls are mocked.
"""

from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest

from admirror.services.analysis.lifecycle import (
    LifecycleAnalyzer,
    aggregate_winning_patterns,
    analyze_breakout_cohort,
    build_cohorts,
    calculate_tag_profile,
    find_differentiating_elements,
    get_cohort_end_date,
    get_cohort_week,
    is_cohort_ready,
    is_survivor,
    market_signals,
)
from admirror.services.models import BreakoutEvent, DifferentiatingElement, LifecycleAd

NOW = datetime(2025, 6, 30, tzinfo=timezone.utc)
TODAY = date(2025, 6, 30)

COMPETITORS = [
    {"id": "c1", "name": "Slowburn", "track": "consolidator"},
    {"id": "c2", "name": "Rapidfire", "track": "velocity_tester"},
]


def _row(ad_id, launch, active, days, format_type="static_image", **extra):
    tags = {"format_type": format_type, "hook_type_visual": "bold_claim"} if format_type else {}
    return {
        "id": ad_id,
        "competitor_id": "c2",
        "competitor_name": "Rapidfire",
        "launch_date": launch,
        "days_active": days,
        "is_active": active,
        "is_video": False,
        "cohort_week": None,
        "tags": tags,
        "video_tags": {},
        **extra,
    }


def _rows():
    """One breakout week (1 of 5 survived), one week too recent and one too small."""
    return [
        _row("s1", "2025-05-05", True, 56, "ugc_talking_head"),
        _row("k1", "2025-05-06", False, 3),
        _row("k2", "2025-05-07", False, 2),
        _row("k3", "2025-05-08", False, 4),
        _row("k4", "2025-05-09", False, 1, cohort_week="2025-05-05"),
        _row("r1", "2025-06-23", True, 7),
        _row("r2", "2025-06-24", True, 6),
        _row("r3", "2025-06-25", False, 1),
        _row("m1", "2025-05-12", True, 49),
        _row("m2", "2025-05-13", False, 2),
    ]


def _ads(rows=None):
    return [LifecycleAd.model_validate(r) for r in (rows or _rows())]


def _event(*elements):
    return BreakoutEvent(
        brand_id="b1",
        competitor_id="c2",
        competitor_name="Rapidfire",
        cohort_start=date(2025, 5, 5),
        cohort_end=date(2025, 5, 11),
        analysis_date=TODAY,
        total_in_cohort=5,
        survivors_count=1,
        killed_count=4,
        survival_rate=0.2,
        differentiating_elements=list(elements),
    )


def _element(value, lift, direction="survivor_higher", dimension="format_type"):
    return DifferentiatingElement(
        dimension=dimension,
        value=value,
        survivor_prevalence=0.5,
        killed_prevalence=0.1,
        lift=lift,
        direction=direction,
    )


@pytest.fixture
def store():
    store = MagicMock()
    store.fetch_brand.return_value = {"id": "b1", "name": "Acme"}
    store.fetch_brand_competitors.return_value = COMPETITORS
    store.fetch_lifecycle_ads.return_value = _rows()
    store.fetch_cash_cow_candidates.return_value = [{
        "id": "s0",
        "competitor_name": "Rapidfire",
        "days_active": 75,
        "breakout_detected_at": "2025-04-20T00:00:00+00:00",
        "tags": {"format_type": "ugc_talking_head", "hook_type_visual": "bold_claim", "human_presence": None},
    }]
    return store


# ============================================================================
# Cohort helpers
# ============================================================================

class TestCohortDates:
    @pytest.mark.parametrize("launch", [date(2025, 5, 5), date(2025, 5, 8), date(2025, 5, 11)])
    def test_week_starts_monday(self, launch):
        assert get_cohort_week(launch) == date(2025, 5, 5)

    def test_end_is_sunday(self):
        assert get_cohort_end_date(date(2025, 5, 5)) == date(2025, 5, 11)

    def test_ready_after_fourteen_days(self):
        assert is_cohort_ready(date(2025, 6, 16), TODAY) is True
        assert is_cohort_ready(date(2025, 6, 17), TODAY) is False


class TestSurvivor:
    @pytest.mark.parametrize("active,days,expected", [
        (True, 14, True),
        (True, 13, False),
        (False, 30, False),
    ])
    def test_active_for_fourteen_days(self, active, days, expected):
        ad = LifecycleAd(id="a", competitor_id="c2", launch_date=date(2025, 5, 5), is_active=active, days_active=days)
        assert is_survivor(ad) is expected

    def test_missing_days_active_is_zero(self):
        ad = LifecycleAd.model_validate(_row("a", "2025-05-05T10:00:00+00:00", True, None))
        assert ad.days_active == 0
        assert ad.launch_date == date(2025, 5, 5)


class TestBuildCohorts:
    def test_only_ready_cohorts_of_three_or_more(self):
        cohorts = build_cohorts(_ads(), TODAY)

        assert len(cohorts) == 1
        cohort = cohorts[0]
        assert cohort.cohort_start == date(2025, 5, 5)
        assert [ad.id for ad in cohort.survivors] == ["s1"]
        assert cohort.survival_rate == 0.2
        assert cohort.is_breakout_cohort is True

    def test_no_survivors_is_not_a_breakout(self):
        rows = [_row(f"k{i}", "2025-05-05", False, 2) for i in range(4)]
        assert build_cohorts(_ads(rows), TODAY)[0].is_breakout_cohort is False

    def test_high_survival_is_not_a_breakout(self):
        rows = [
            _row("s1", "2025-05-05", True, 50),
            _row("s2", "2025-05-06", True, 50),
            _row("k1", "2025-05-07", False, 2),
        ]
        assert build_cohorts(_ads(rows), TODAY)[0].is_breakout_cohort is False

    def test_stored_cohort_week_is_used(self):
        rows = [
            _row("a1", "2025-05-05", False, 2),
            _row("a2", "2025-05-06", False, 2),
            _row("a3", "2025-05-20", True, 40, cohort_week="2025-05-05"),
        ]
        cohorts = build_cohorts(_ads(rows), TODAY)
        assert len(cohorts) == 1
        assert len(cohorts[0].ads) == 3


# ============================================================================
# Tag profiles
# ============================================================================

class TestTagProfile:
    def test_shares_within_dimension(self):
        profile = calculate_tag_profile(_ads([
            _row("a", "2025-05-05", True, 20, "static_image"),
            _row("b", "2025-05-05", True, 20, "static_image"),
            _row("c", "2025-05-05", True, 20, "ugc_talking_head"),
        ]))

        assert profile["format_type"]["static_image"] == 0.6667
        assert profile["format_type"]["ugc_talking_head"] == 0.3333

    def test_video_dimensions_only_from_video_ads(self):
        profile = calculate_tag_profile(_ads([
            _row("v", "2025-05-05", True, 20, is_video=True, video_tags={"pacing": "mixed"}),
            _row("i", "2025-05-05", True, 20, video_tags={"pacing": "slow_single_shot"}),
        ]))

        assert profile["pacing"]["mixed"] == 1.0
        assert profile["pacing"]["slow_single_shot"] == 0

    def test_empty(self):
        assert calculate_tag_profile([]) == {}


class TestDifferentiatingElements:
    def test_lift_threshold(self):
        survivor = {"format_type": {"static_image": 0.6, "ugc_talking_head": 0.4}}
        killed = {"format_type": {"static_image": 0.3, "ugc_talking_head": 0.3}}

        elements = find_differentiating_elements(survivor, killed)

        assert [(e.value, e.lift) for e in elements] == [("static_image", 2.0)]

    def test_one_sided_values(self):
        survivor = {"format_type": {"static_image": 0.0, "ugc_talking_head": 1.0}}
        killed = {"format_type": {"static_image": 1.0, "ugc_talking_head": 0.0}}

        by_value = {e.value: e for e in find_differentiating_elements(survivor, killed)}

        assert by_value["ugc_talking_head"].lift == 10.0
        assert by_value["ugc_talking_head"].direction == "survivor_higher"
        assert by_value["static_image"].direction == "killed_higher"

    def test_rare_values_are_skipped(self):
        survivor = {"format_type": {"static_image": 0.005}}
        assert find_differentiating_elements(survivor, {}) == []


class TestBreakoutEvent:
    def test_profiles_survivors_against_killed(self):
        cohort = build_cohorts(_ads(), TODAY)[0]

        event = analyze_breakout_cohort(cohort, "b1", TODAY)

        assert event.survivor_ad_ids == ["s1"]
        assert event.killed_ad_ids == ["k1", "k2", "k3", "k4"]
        assert event.top_survivor_traits == ["ugc_talking_head (format_type)"]
        assert "bold_claim" not in {e.value for e in event.differentiating_elements}
        assert event.analysis_summary == (
            "Rapidfire cohort (2025-05-05): 1/5 survived (20%). Survivor traits: ugc_talking_head (format_type)."
        )

    def test_untagged_survivors_yield_no_elements(self):
        rows = [_row("s1", "2025-05-05", True, 50, None)] + [_row(f"k{i}", "2025-05-06", False, 2) for i in range(4)]
        cohort = build_cohorts(_ads(rows), TODAY)[0]

        event = analyze_breakout_cohort(cohort, "b1", TODAY)

        assert event.survivors_count == 1
        assert event.differentiating_elements == []
        assert event.analysis_summary.endswith("(20%).")

    def test_non_breakout_cohort(self):
        rows = [_row(f"k{i}", "2025-05-05", False, 2) for i in range(4)]
        assert analyze_breakout_cohort(build_cohorts(_ads(rows), TODAY)[0], "b1", TODAY) is None


class TestWinningPatterns:
    def test_frequency_lift_and_confidence(self):
        events = [
            _event(_element("ugc_talking_head", 10.0), _element("static_image", 10.0, "killed_higher")),
            _event(_element("ugc_talking_head", 2.0), _element("bold_claim", 3.0, dimension="hook_type_visual")),
        ]

        patterns = aggregate_winning_patterns(events)

        assert [(p.value, p.frequency, p.avg_lift, p.confidence) for p in patterns] == [
            ("ugc_talking_head", 2, 6.0, 1.0),
            ("bold_claim", 1, 3.0, 0.7071),
        ]

    def test_no_events(self):
        assert aggregate_winning_patterns([]) == []
        assert market_signals([], 0, 0, []) == "No breakout cohorts detected in current analysis window."


# ============================================================================
# Analyzer
# ============================================================================

class TestAnalyzeBrand:
    @pytest.mark.asyncio
    async def test_only_velocity_testers_are_read(self, store):
        await LifecycleAnalyzer(store, now=NOW).analyze_brand("b1")

        competitor_ids, since = store.fetch_lifecycle_ads.call_args[0]
        assert competitor_ids == ["c2"]
        assert since == date(2025, 4, 1)
        assert store.fetch_cash_cow_candidates.call_args[0][0] == ["c2"]

    @pytest.mark.asyncio
    async def test_breakouts_and_cash_cows(self, store):
        result = await LifecycleAnalyzer(store, now=NOW).analyze_brand("b1")

        assert len(result.breakout_events) == 1
        assert result.breakout_events[0].competitor_name == "Rapidfire"
        assert result.total_breakout_ads == 1
        assert result.total_cash_cows == 1
        cow = result.cash_cow_transitions[0]
        assert cow.traits == ["ugc_talking_head (format_type)", "bold_claim (hook_type_visual)"]
        assert cow.breakout_date == "2025-04-20T00:00:00+00:00"
        assert [p.value for p in result.winning_patterns] == ["ugc_talking_head"]
        assert result.market_signals.startswith("Found 1 breakout cohort(s) with 1 surviving ad(s).")

    @pytest.mark.asyncio
    async def test_persists_results(self, store):
        await LifecycleAnalyzer(store, now=NOW).analyze_brand("b1")

        now_iso = NOW.isoformat()
        event_row = store.upsert_breakout_event.call_args[0][0]
        assert event_row["cohort_start"] == "2025-05-05"
        assert event_row["survivor_ad_ids"] == ["s1"]
        store.flag_breakout_ads.assert_called_once_with(["s1"], now_iso)
        store.flag_cash_cow.assert_called_once_with("s0", now_iso)

        backfilled = {c.args[0] for c in store.update_ad.call_args_list}
        assert "k4" not in backfilled
        assert len(backfilled) == 9

        snapshot = store.upsert_lifecycle_snapshot.call_args[0][0]
        assert snapshot["snapshot_date"] == "2025-06-30"
        assert snapshot["total_breakout_events"] == 1
        assert snapshot["total_cash_cows"] == 1

    @pytest.mark.asyncio
    async def test_no_velocity_testers(self, store):
        store.fetch_brand_competitors.return_value = [COMPETITORS[0]]

        assert await LifecycleAnalyzer(store, now=NOW).analyze_brand("b1") is None
        store.fetch_lifecycle_ads.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_recent_ads(self, store):
        store.fetch_lifecycle_ads.return_value = []

        assert await LifecycleAnalyzer(store, now=NOW).analyze_brand("b1") is None
        store.upsert_lifecycle_snapshot.assert_not_called()


class TestLifecycleRun:
    @pytest.mark.asyncio
    async def test_aggregates_across_brands(self, store):
        store.fetch_client_brands.return_value = [{"id": "b1"}, {"id": "b2"}, {"id": "b3"}]

        def fetch_brand(brand_id):
            if brand_id == "b3":
                raise Exception("postgrest 500")
            return {"id": brand_id, "name": "Acme"}

        store.fetch_brand.side_effect = fetch_brand

        stats = await LifecycleAnalyzer(store, now=NOW).run()

        assert stats.brands_analyzed == 2
        assert stats.breakout_events_found == 2
        assert stats.breakout_ads_flagged == 2
        assert stats.cash_cows_detected == 2
        assert stats.snapshots_saved == 2
        assert stats.failed == 1

    @pytest.mark.asyncio
    async def test_brand_query_failure(self, store):
        store.fetch_client_brands.side_effect = Exception("timeout")

        stats = await LifecycleAnalyzer(store, now=NOW).run()

        assert stats.brands_analyzed == 0
        assert stats.failed == 0
