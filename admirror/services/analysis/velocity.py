"""VelocityAnalyzer: which creative elements are gaining or losing ground.

Each taxonomy value's prevalence across a competitive set is weighted by the
ads' signal strength, so an element carried by proven ads counts for more
than one seen on ads that were killed after a day. Prevalence in the last
30 days is compared with the 30 days before:

    velocity = (current - previous) / previous

A value above +0.3 is accelerating, below -0.3 declining. Consolidators and
velocity testers are also compared with each other, since a value velocity
testers lean into well ahead of consolidators is often an early trend.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from ...core.observability import get_logfire
from ..helpers import elapsed_ms, parse_date, utc_now
from ..models import (
    CompetitorTrack,
    DimensionVelocity,
    ElementVelocity,
    TaggedAd,
    TrackDivergence,
    VelocityAnalysis,
    VelocityDirection,
    VelocityPipelineStats,
)
from ..tagging.taxonomy import TAXONOMY_DIMENSIONS
from ..tagging.video_taxonomy import VIDEO_TAXONOMY_DIMENSIONS

logger = logging.getLogger(__name__)

ALL_DIMENSIONS = {**TAXONOMY_DIMENSIONS, **VIDEO_TAXONOMY_DIMENSIONS}

LOOKBACK_DAYS = 90
WINDOW_DAYS = 30
ACCELERATING_THRESHOLD = 0.3
DECLINING_THRESHOLD = -0.3
DIVERGENCE_THRESHOLD = 0.15
MIN_PREVALENCE = 0.01
TOP_N = 10

TRACK_FILTERS = ("all", CompetitorTrack.CONSOLIDATOR.value, CompetitorTrack.VELOCITY_TESTER.value)

Prevalence = Dict[str, Dict[str, float]]


def _round4(n: float) -> float:
    return round(n, 4)


def _round2(n: float) -> float:
    return round(n, 2)


def filter_by_track(ads: Sequence[TaggedAd], track_filter: str = "all") -> List[TaggedAd]:
    if track_filter == "all":
        return list(ads)
    return [ad for ad in ads if ad.competitor_track == track_filter]


def calculate_weighted_prevalence(ads: Sequence[TaggedAd], track_filter: str = "all") -> Prevalence:
    """
    Signal-weighted share of each value within its dimension.

    Image dimensions come from every ad, video dimensions only from video
    ads. Each dimension is normalized over the ads that carry a tag for it.

    Returns:
        {dimension: {value: prevalence}}, or {} when no ads match the filter
    """
    filtered = filter_by_track(ads, track_filter)
    if not filtered:
        return {}
    if sum(ad.signal_strength or 1 for ad in filtered) == 0:
        return {}

    prevalence: Prevalence = {
        dimension: {value: 0.0 for value in values}
        for dimension, values in ALL_DIMENSIONS.items()
    }

    for ad in filtered:
        weight = ad.signal_strength or 1
        for dimension in TAXONOMY_DIMENSIONS:
            value = ad.tags.get(dimension)
            if value and value in prevalence[dimension]:
                prevalence[dimension][value] += weight
        if ad.is_video:
            for dimension in VIDEO_TAXONOMY_DIMENSIONS:
                value = ad.video_tags.get(dimension)
                if value and value in prevalence[dimension]:
                    prevalence[dimension][value] += weight

    for values in prevalence.values():
        total = sum(values.values())
        if total > 0:
            for value in values:
                values[value] = values[value] / total

    return prevalence


def classify_velocity(velocity: float) -> VelocityDirection:
    if velocity > ACCELERATING_THRESHOLD:
        return VelocityDirection.ACCELERATING
    if velocity < DECLINING_THRESHOLD:
        return VelocityDirection.DECLINING
    return VelocityDirection.STABLE


def calculate_velocity(current: Prevalence, previous: Prevalence) -> List[ElementVelocity]:
    """Relative change per value; a value that newly appears counts as +100%."""
    velocities = []
    for dimension, values in current.items():
        for value, current_prevalence in values.items():
            previous_prevalence = previous.get(dimension, {}).get(value, 0.0)

            velocity = 0.0
            if previous_prevalence > MIN_PREVALENCE:
                velocity = (current_prevalence - previous_prevalence) / previous_prevalence
            elif current_prevalence > MIN_PREVALENCE:
                velocity = 1.0

            velocities.append(ElementVelocity(
                dimension=dimension,
                value=value,
                current_prevalence=_round4(current_prevalence),
                previous_prevalence=_round4(previous_prevalence),
                velocity_percent=_round2(velocity),
                direction=classify_velocity(velocity),
            ))
    return velocities


def detect_track_divergences(
    consolidator: Prevalence,
    velocity_tester: Prevalence,
    threshold: float = DIVERGENCE_THRESHOLD,
) -> List[TrackDivergence]:
    """Values whose prevalence differs between the tracks by at least ``threshold``."""
    divergences = []
    for dimension, values in consolidator.items():
        for value, cons_prevalence in values.items():
            vt_prevalence = velocity_tester.get(dimension, {}).get(value, 0.0)
            diff = vt_prevalence - cons_prevalence
            if abs(diff) < threshold:
                continue
            divergences.append(TrackDivergence(
                dimension=dimension,
                value=value,
                consolidator_prevalence=_round4(cons_prevalence),
                velocity_tester_prevalence=_round4(vt_prevalence),
                divergence_percent=_round2(diff),
                direction="velocity_testers_leading" if diff > 0 else "consolidators_leading",
            ))

    divergences.sort(key=lambda d: abs(d.divergence_percent), reverse=True)
    return divergences


def count_ads_with(ads: Sequence[TaggedAd], dimension: str, value: str) -> int:
    return sum(1 for ad in ads if ad.tag_value(dimension) == value)


def to_tagged_ads(rows: Sequence[Dict]) -> List[TaggedAd]:
    """Validate store rows, dropping any without a usable launch date."""
    tagged = []
    for row in rows:
        launch = parse_date(row.get("launch_date"))
        if launch is None:
            continue
        tagged.append(TaggedAd.model_validate({**row, "launch_date": launch}))
    return tagged


class VelocityAnalyzer:
    """Computes element velocity per client brand and stores prevalence snapshots."""

    def __init__(self, store, now: Optional[datetime] = None):
        self.store = store
        self._now = now

    def fetch_competitor_ads(self, brand_id: str):
        """
        Load a brand and its competitors' tagged ads over the lookback window.

        Returns:
            (brand, competitors, tagged_ads), or None when the brand is
            unknown or has no competitors or tagged ads
        """
        today = (self._now or utc_now()).date()
        brand = self.store.fetch_brand(brand_id)
        if not brand:
            return None
        competitors = self.store.fetch_brand_competitors(brand_id)
        if not competitors:
            return None
        rows = self.store.fetch_tagged_ads(
            [c["id"] for c in competitors], today - timedelta(days=LOOKBACK_DAYS)
        )
        tagged_ads = to_tagged_ads(rows)
        if not tagged_ads:
            return None
        return brand, competitors, tagged_ads

    async def analyze_brand(self, brand_id: str) -> Optional[VelocityAnalysis]:
        loaded = self.fetch_competitor_ads(brand_id)
        if loaded is None:
            return None
        brand, _, tagged_ads = loaded

        today = (self._now or utc_now()).date()
        current_cutoff = today - timedelta(days=WINDOW_DAYS)
        previous_cutoff = today - timedelta(days=2 * WINDOW_DAYS)

        current_ads = [ad for ad in tagged_ads if ad.launch_date >= current_cutoff]
        previous_ads = [ad for ad in tagged_ads if previous_cutoff <= ad.launch_date < current_cutoff]

        current_by_track = {f: calculate_weighted_prevalence(current_ads, f) for f in TRACK_FILTERS}
        previous_all = calculate_weighted_prevalence(previous_ads, "all")

        velocities = calculate_velocity(current_by_track["all"], previous_all)
        for v in velocities:
            v.ad_count = count_ads_with(current_ads, v.dimension, v.value)

        ranked = sorted(
            (v for v in velocities if v.current_prevalence > MIN_PREVALENCE or v.previous_prevalence > MIN_PREVALENCE),
            key=lambda v: abs(v.velocity_percent),
            reverse=True,
        )

        breakdown: Dict[str, Dict[str, DimensionVelocity]] = {}
        for v in velocities:
            breakdown.setdefault(v.dimension, {})[v.value] = DimensionVelocity(
                current=v.current_prevalence,
                previous=v.previous_prevalence,
                velocity=v.velocity_percent,
                direction=v.direction,
            )

        rows = []
        for track_filter, prevalence in current_by_track.items():
            track_ads = filter_by_track(current_ads, track_filter)
            total_signal = sum(ad.signal_strength or 1 for ad in track_ads)
            for dimension, values in prevalence.items():
                for value, weighted in values.items():
                    if weighted <= 0:
                        continue
                    rows.append({
                        "brand_id": brand_id,
                        "snapshot_date": today.isoformat(),
                        "period_start": current_cutoff.isoformat(),
                        "period_end": today.isoformat(),
                        "track_filter": track_filter,
                        "dimension": dimension,
                        "value": value,
                        "weighted_prevalence": weighted,
                        "ad_count": count_ads_with(track_ads, dimension, value),
                        "total_signal_strength": total_signal,
                    })
        self.store.upsert_velocity_snapshots(rows)

        return VelocityAnalysis(
            competitive_set=f"{brand.get('name') or 'Brand'} Competitors",
            brand_id=brand_id,
            analysis_date=today,
            top_accelerating=[v for v in ranked if v.direction == VelocityDirection.ACCELERATING][:TOP_N],
            top_declining=[v for v in ranked if v.direction == VelocityDirection.DECLINING][:TOP_N],
            full_dimension_breakdown=breakdown,
            track_divergences=detect_track_divergences(
                current_by_track[CompetitorTrack.CONSOLIDATOR.value],
                current_by_track[CompetitorTrack.VELOCITY_TESTER.value],
            ),
            snapshots_saved=len(rows),
        )

    async def run(self) -> VelocityPipelineStats:
        """Analyze every client brand (weekly job)."""
        start = time.monotonic()
        stats = VelocityPipelineStats()

        with get_logfire().span("run_velocity_pipeline"):
            try:
                brands = self.store.fetch_client_brands()
            except Exception as e:
                logger.error(f"Velocity run aborted, brand query failed: {e}")
                brands = []

            for brand in brands:
                try:
                    result = await self.analyze_brand(brand["id"])
                except Exception as e:
                    logger.error(f"Error analyzing velocity for brand {brand['id']}: {e}")
                    stats.failed += 1
                    continue
                if result is None:
                    continue
                stats.brands_analyzed += 1
                stats.snapshots_saved += result.snapshots_saved

        stats.duration_ms = elapsed_ms(start)
        logger.info(
            f"Velocity: {stats.brands_analyzed} brands, {stats.snapshots_saved} snapshots, {stats.failed} failed"
        )
        return stats


async def run_velocity_pipeline(store=None) -> VelocityPipelineStats:
    if store is None:
        from ...core.database import get_supabase_client
        from ..ad_store import AdStore
        store = AdStore(get_supabase_client())
    return await VelocityAnalyzer(store).run()
