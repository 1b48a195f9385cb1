"""LifecycleAnalyzer: breakout ads and cash cows among velocity testers.

Velocity testers launch many ads and kill most within days. Their ads are
grouped into weekly launch cohorts (Monday to Sunday, per competitor). Once a
cohort has had 14 days to play out after its last launch day:

- survivors: still active with at least 14 days live
- breakout cohort: some survivors, but under 30% of the cohort

In a breakout cohort the survivors are the ads the competitor chose to keep,
so the tags that separate them from the killed ads are the winning traits.
A breakout ad still active after 60 days becomes a cash cow.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from ...core.observability import get_logfire
from ..helpers import elapsed_ms, round_half_up, utc_now
from ..models import (
    BreakoutEvent,
    CashCowTransition,
    Cohort,
    CompetitorTrack,
    DifferentiatingElement,
    LifecycleAd,
    LifecycleAnalysis,
    LifecyclePipelineStats,
    WinningPattern,
)
from ..tagging.taxonomy import TAXONOMY_DIMENSIONS
from ..tagging.video_taxonomy import VIDEO_TAXONOMY_DIMENSIONS

logger = logging.getLogger(__name__)

ALL_DIMENSIONS = {**TAXONOMY_DIMENSIONS, **VIDEO_TAXONOMY_DIMENSIONS}

COHORT_WINDOW_DAYS = 7
BREAKOUT_THRESHOLD_DAYS = 14
CASH_COW_THRESHOLD_DAYS = 60
BREAKOUT_SURVIVAL_RATE_THRESHOLD = 0.30
MIN_COHORT_SIZE = 3
LOOKBACK_DAYS = 90
MIN_LIFT = 1.5
# Lift reported when only one side carries the value at all
ONE_SIDED_LIFT = 10.0
MIN_PREVALENCE = 0.01
MAX_SURVIVOR_TRAITS = 5
MAX_WINNING_PATTERNS = 20
CASH_COW_TRAIT_KEYS = ("format_type", "hook_type_visual", "human_presence", "emotion_energy_level")

TagProfile = Dict[str, Dict[str, float]]


def _round4(n: float) -> float:
    return round(n, 4)


def _round2(n: float) -> float:
    return round(n, 2)


# ============================================================================
# Cohort helpers
# ============================================================================

def get_cohort_week(launch_date: date) -> date:
    """Monday of the launch week."""
    return launch_date - timedelta(days=launch_date.weekday())


def get_cohort_end_date(cohort_start: date) -> date:
    return cohort_start + timedelta(days=COHORT_WINDOW_DAYS - 1)


def is_cohort_ready(cohort_end: date, today: date) -> bool:
    return (today - cohort_end).days >= BREAKOUT_THRESHOLD_DAYS


def is_survivor(ad: LifecycleAd) -> bool:
    return ad.is_active and ad.days_active >= BREAKOUT_THRESHOLD_DAYS


# ============================================================================
# Tag profiles
# ============================================================================

def calculate_tag_profile(ads: Sequence[LifecycleAd]) -> TagProfile:
    """Unweighted share of each value within its dimension, rounded to 4 places."""
    if not ads:
        return {}

    profile: TagProfile = {
        dimension: {value: 0 for value in values}
        for dimension, values in ALL_DIMENSIONS.items()
    }
    for ad in ads:
        for dimension in TAXONOMY_DIMENSIONS:
            value = ad.tags.get(dimension)
            if value and value in profile[dimension]:
                profile[dimension][value] += 1
        if ad.is_video:
            for dimension in VIDEO_TAXONOMY_DIMENSIONS:
                value = ad.video_tags.get(dimension)
                if value and value in profile[dimension]:
                    profile[dimension][value] += 1

    for values in profile.values():
        total = sum(values.values())
        if total > 0:
            for value in values:
                values[value] = _round4(values[value] / total)
    return profile


def _lift(higher: float, lower: float) -> float:
    if lower > MIN_PREVALENCE:
        return higher / lower
    return ONE_SIDED_LIFT if higher > MIN_PREVALENCE else 1.0


def find_differentiating_elements(survivor: TagProfile, killed: TagProfile) -> List[DifferentiatingElement]:
    """Values at least 1.5x more common on one side, strongest lift first."""
    elements = []
    for dimension, values in survivor.items():
        for value, survivor_prevalence in values.items():
            killed_prevalence = killed.get(dimension, {}).get(value, 0.0)
            if survivor_prevalence < MIN_PREVALENCE and killed_prevalence < MIN_PREVALENCE:
                continue

            if survivor_prevalence >= killed_prevalence:
                lift = _lift(survivor_prevalence, killed_prevalence)
                direction = "survivor_higher"
            else:
                lift = _lift(killed_prevalence, survivor_prevalence)
                direction = "killed_higher"

            if lift >= MIN_LIFT:
                elements.append(DifferentiatingElement(
                    dimension=dimension,
                    value=value,
                    survivor_prevalence=_round4(survivor_prevalence),
                    killed_prevalence=_round4(killed_prevalence),
                    lift=_round2(lift),
                    direction=direction,
                ))

    elements.sort(key=lambda e: e.lift, reverse=True)
    return elements


def generate_breakout_summary(event: BreakoutEvent) -> str:
    survival_pct = round_half_up(event.survival_rate * 100)
    traits = ", ".join(event.top_survivor_traits[:3])
    trait_note = f" Survivor traits: {traits}." if traits else ""
    return (
        f"{event.competitor_name} cohort ({event.cohort_start.isoformat()}): "
        f"{event.survivors_count}/{event.total_in_cohort} survived ({survival_pct}%).{trait_note}"
    )


def aggregate_winning_patterns(events: Sequence[BreakoutEvent]) -> List[WinningPattern]:
    """Survivor traits that recur across breakout events, top 20."""
    if not events:
        return []

    lifts: Dict[Tuple[str, str], List[float]] = {}
    for event in events:
        for element in event.differentiating_elements:
            if element.direction != "survivor_higher":
                continue
            lifts.setdefault((element.dimension, element.value), []).append(element.lift)

    patterns = [
        WinningPattern(
            dimension=dimension,
            value=value,
            frequency=len(values),
            avg_lift=_round2(sum(values) / len(values)),
            confidence=_round4(min(1.0, math.sqrt(len(values) / len(events)))),
        )
        for (dimension, value), values in lifts.items()
    ]
    patterns.sort(key=lambda p: p.confidence * p.avg_lift, reverse=True)
    return patterns[:MAX_WINNING_PATTERNS]


# ============================================================================
# Cohorts and breakouts
# ============================================================================

def build_cohorts(ads: Sequence[LifecycleAd], today: date) -> List[Cohort]:
    """Weekly cohorts per competitor that are large and old enough to judge."""
    groups: Dict[Tuple[str, date], List[LifecycleAd]] = {}
    for ad in ads:
        week = ad.cohort_week or get_cohort_week(ad.launch_date)
        groups.setdefault((ad.competitor_id, week), []).append(ad)

    cohorts = []
    for (competitor_id, cohort_start), cohort_ads in groups.items():
        if len(cohort_ads) < MIN_COHORT_SIZE:
            continue
        cohort_end = get_cohort_end_date(cohort_start)
        if not is_cohort_ready(cohort_end, today):
            continue

        survivors = [ad for ad in cohort_ads if is_survivor(ad)]
        killed = [ad for ad in cohort_ads if not is_survivor(ad)]
        survival_rate = len(survivors) / len(cohort_ads)

        cohorts.append(Cohort(
            competitor_id=competitor_id,
            competitor_name=cohort_ads[0].competitor_name,
            cohort_start=cohort_start,
            cohort_end=cohort_end,
            ads=cohort_ads,
            survivors=survivors,
            killed=killed,
            survival_rate=survival_rate,
            is_breakout_cohort=survival_rate < BREAKOUT_SURVIVAL_RATE_THRESHOLD and len(survivors) > 0,
        ))
    return cohorts


def analyze_breakout_cohort(cohort: Cohort, brand_id: str, analysis_date: date) -> Optional[BreakoutEvent]:
    """Profile a breakout cohort's survivors against its killed ads (untagged ads are ignored)."""
    if not cohort.is_breakout_cohort:
        return None

    tagged_survivors = [ad for ad in cohort.survivors if ad.has_image_tags]
    tagged_killed = [ad for ad in cohort.killed if ad.has_image_tags]
    survivor_profile = calculate_tag_profile(tagged_survivors)
    killed_profile = calculate_tag_profile(tagged_killed)

    differentiating = []
    if tagged_survivors and tagged_killed:
        differentiating = find_differentiating_elements(survivor_profile, killed_profile)

    event = BreakoutEvent(
        brand_id=brand_id,
        competitor_id=cohort.competitor_id,
        competitor_name=cohort.competitor_name,
        cohort_start=cohort.cohort_start,
        cohort_end=cohort.cohort_end,
        analysis_date=analysis_date,
        total_in_cohort=len(cohort.ads),
        survivors_count=len(cohort.survivors),
        killed_count=len(cohort.killed),
        survival_rate=cohort.survival_rate,
        survivor_ad_ids=[ad.id for ad in cohort.survivors],
        killed_ad_ids=[ad.id for ad in cohort.killed],
        survivor_tag_profile=survivor_profile,
        killed_tag_profile=killed_profile,
        differentiating_elements=differentiating,
        top_survivor_traits=[
            f"{e.value} ({e.dimension})" for e in differentiating if e.direction == "survivor_higher"
        ][:MAX_SURVIVOR_TRAITS],
    )
    event.analysis_summary = generate_breakout_summary(event)
    return event


def market_signals(
    events: Sequence[BreakoutEvent],
    total_breakout_ads: int,
    total_cash_cows: int,
    patterns: Sequence[WinningPattern],
) -> str:
    if not events:
        return "No breakout cohorts detected in current analysis window."
    top = ", ".join(f"{p.value} ({p.dimension})" for p in patterns[:3]) or "none yet"
    return (
        f"Found {len(events)} breakout cohort(s) with {total_breakout_ads} surviving ad(s). "
        f"{total_cash_cows} cash cow transition(s) detected. Top winning patterns: {top}."
    )


# ============================================================================
# Analyzer
# ============================================================================

class LifecycleAnalyzer:
    """Finds breakout cohorts and cash cows for each client brand's velocity testers."""

    def __init__(self, store, now: Optional[datetime] = None):
        self.store = store
        self._now = now

    def _detect_cash_cows(self, competitor_ids: List[str], now: datetime) -> List[CashCowTransition]:
        now_iso = now.isoformat()
        transitions = []
        for row in self.store.fetch_cash_cow_candidates(competitor_ids, CASH_COW_THRESHOLD_DAYS, CASH_COW_TRAIT_KEYS):
            tags = row.get("tags") or {}
            transitions.append(CashCowTransition(
                ad_id=row["id"],
                competitor_name=row.get("competitor_name") or "Unknown",
                days_active=row.get("days_active") or 0,
                breakout_date=row.get("breakout_detected_at") or now_iso,
                cash_cow_date=now_iso,
                traits=[f"{tags[key]} ({key})" for key in CASH_COW_TRAIT_KEYS if tags.get(key) is not None],
            ))
        return transitions

    async def analyze_brand(self, brand_id: str) -> Optional[LifecycleAnalysis]:
        """
        Analyze one brand's velocity testers and persist the results.

        Returns:
            LifecycleAnalysis, or None when the brand is unknown, has no
            velocity testers, or they launched nothing in the last 90 days
        """
        now = self._now or utc_now()
        today = now.date()

        if not self.store.fetch_brand(brand_id):
            return None
        testers = [
            c for c in self.store.fetch_brand_competitors(brand_id)
            if c.get("track") == CompetitorTrack.VELOCITY_TESTER.value
        ]
        if not testers:
            return None

        names = {c["id"]: c.get("name") for c in testers}
        rows = self.store.fetch_lifecycle_ads(list(names), today - timedelta(days=LOOKBACK_DAYS))
        ads = []
        for row in rows:
            if not row.get("launch_date"):
                continue
            ads.append(LifecycleAd.model_validate({
                **row,
                "competitor_name": row.get("competitor_name") or names.get(row["competitor_id"]) or "Unknown",
            }))
        if not ads:
            return None

        events = []
        for cohort in build_cohorts(ads, today):
            event = analyze_breakout_cohort(cohort, brand_id, today)
            if event is not None:
                events.append(event)

        cash_cows = self._detect_cash_cows(list(names), now)
        patterns = aggregate_winning_patterns(events)
        breakout_ad_ids = [ad_id for event in events for ad_id in event.survivor_ad_ids]

        analysis = LifecycleAnalysis(
            brand_id=brand_id,
            analysis_date=today,
            breakout_events=events,
            cash_cow_transitions=cash_cows,
            winning_patterns=patterns,
            total_breakout_ads=len(breakout_ad_ids),
            total_cash_cows=len(cash_cows),
            market_signals=market_signals(events, len(breakout_ad_ids), len(cash_cows), patterns),
        )

        now_iso = now.isoformat()
        for event in events:
            self.store.upsert_breakout_event(event.model_dump(mode="json"))
        self.store.flag_breakout_ads(breakout_ad_ids, now_iso)
        for cow in cash_cows:
            self.store.flag_cash_cow(cow.ad_id, now_iso)
        for ad in ads:
            if ad.cohort_week is None:
                self.store.update_ad(ad.id, {"cohort_week": get_cohort_week(ad.launch_date).isoformat()})

        self.store.upsert_lifecycle_snapshot({
            "brand_id": brand_id,
            "snapshot_date": today.isoformat(),
            "total_breakout_events": len(events),
            "total_breakout_ads": len(breakout_ad_ids),
            "total_cash_cows": len(cash_cows),
            "winning_patterns": [p.model_dump() for p in patterns],
            "cash_cow_transitions": [c.model_dump() for c in cash_cows],
            "analysis_json": analysis.model_dump(mode="json"),
        })
        return analysis

    async def run(self) -> LifecyclePipelineStats:
        """Analyze every client brand (weekly job)."""
        start = time.monotonic()
        stats = LifecyclePipelineStats()

        with get_logfire().span("run_lifecycle_pipeline"):
            try:
                brands = self.store.fetch_client_brands()
            except Exception as e:
                logger.error(f"Lifecycle run aborted, brand query failed: {e}")
                brands = []

            for brand in brands:
                try:
                    result = await self.analyze_brand(brand["id"])
                except Exception as e:
                    logger.error(f"Error analyzing ad lifecycle for brand {brand['id']}: {e}")
                    stats.failed += 1
                    continue
                if result is None:
                    continue
                stats.brands_analyzed += 1
                stats.breakout_events_found += len(result.breakout_events)
                stats.breakout_ads_flagged += result.total_breakout_ads
                stats.cash_cows_detected += result.total_cash_cows
                stats.snapshots_saved += 1

        stats.duration_ms = elapsed_ms(start)
        logger.info(
            f"Lifecycle: {stats.brands_analyzed} brands, {stats.breakout_events_found} breakout cohorts, "
            f"{stats.cash_cows_detected} cash cows, {stats.failed} failed"
        )
        return stats


async def run_lifecycle_pipeline(store=None) -> LifecyclePipelineStats:
    if store is None:
        from ...core.database import get_supabase_client
        from ..ad_store import AdStore
        store = AdStore(get_supabase_client())
    return await LifecycleAnalyzer(store).run()
