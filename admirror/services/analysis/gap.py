"""GapAnalyzer: where a brand's own creative differs from its competitors'.

The brand's tagged client ads and its competitors' tagged ads are reduced to
weighted prevalence per taxonomy value. A positive gap means competitors use
a value more than the brand does. Each gap is ranked by

    priority = |gap| * (1 + |velocity|) * (1 + convergence score)

so a gap on an element that is both accelerating and being converged on
comes first.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ...core.observability import get_logfire
from ..helpers import elapsed_ms, round_half_up, utc_now
from ..models import (
    ConvergenceClassification,
    GapAnalysis,
    GapElement,
    GapExample,
    GapPipelineStats,
    GapSummary,
    TaggedAd,
    VelocityDirection,
)
from ..tagging.client_sync import ClientAdSync
from .velocity import (
    ALL_DIMENSIONS,
    VelocityAnalyzer,
    WINDOW_DAYS,
    calculate_velocity,
    calculate_weighted_prevalence,
    classify_velocity,
)

logger = logging.getLogger(__name__)

MIN_USAGE = 0.001
MIN_STRENGTH_PREVALENCE = 0.01
WATCH_LIST_MAX_GAP = 0.1
MAX_PRIORITY_GAPS = 5
MAX_EXAMPLE_ADS = 3
NONE_IDENTIFIED = "None identified"


def _round4(n: float) -> float:
    return round(n, 4)


def calculate_priority_score(gap_size: float, velocity: float, convergence_score: float) -> float:
    return abs(gap_size) * (1 + abs(velocity)) * (1 + convergence_score)


def generate_recommendation(element: GapElement) -> str:
    pct_gap = round_half_up(abs(element.gap_size) * 100)
    dim = element.dimension.replace("_", " ")
    val = element.value.replace("_", " ")

    if element.gap_size <= 0:
        return f"Strength: Your use of {val} ({dim}) exceeds competitors by {pct_gap}%."
    if element.velocity_direction == VelocityDirection.ACCELERATING and element.convergence_score > 0:
        return (
            f"Critical opportunity: Competitors are converging on {val} ({dim}). "
            f"You're {pct_gap}% behind and the trend is accelerating."
        )
    if element.velocity_direction == VelocityDirection.ACCELERATING:
        return f"High priority: {val} ({dim}) is gaining traction among competitors. Consider testing this approach."
    if element.velocity_direction == VelocityDirection.STABLE:
        return f"Opportunity: Competitors use {val} ({dim}) more than you. Worth testing."
    return f"Low priority: {val} ({dim}) shows a gap but is declining in popularity."


def _label(element: Optional[GapElement]) -> str:
    return f"{element.value} ({element.dimension})" if element else NONE_IDENTIFIED


class GapAnalyzer:
    """Compares each client brand's creative mix against its competitive set."""

    def __init__(self, store, now: Optional[datetime] = None, sync_client_ads: bool = True):
        """
        Args:
            store: AdStore instance.
            now: Fixed clock (defaults to current UTC time).
            sync_client_ads: Queue the brand's new client ads for tagging first.
        """
        self.store = store
        self._now = now
        self.sync_client_ads = sync_client_ads

    def _client_ads(self, brand_id: str, today) -> List[TaggedAd]:
        # Client ads count once each and sit in the current window
        return [
            TaggedAd(
                id=row["id"],
                competitor_id="",
                signal_strength=1,
                launch_date=today,
                is_video=bool(row.get("is_video")),
                tags=row.get("tags") or {},
                video_tags=row.get("video_tags") or {},
            )
            for row in self.store.fetch_client_tagged_ads(brand_id)
        ]

    def _velocity_map(self, competitor_ads: List[TaggedAd], today) -> Dict[str, float]:
        current_cutoff = today - timedelta(days=WINDOW_DAYS)
        previous_cutoff = today - timedelta(days=2 * WINDOW_DAYS)
        current = [ad for ad in competitor_ads if ad.launch_date >= current_cutoff]
        previous = [ad for ad in competitor_ads if previous_cutoff <= ad.launch_date < current_cutoff]
        return {
            f"{v.dimension}:{v.value}": v.velocity_percent
            for v in calculate_velocity(
                calculate_weighted_prevalence(current, "all"),
                calculate_weighted_prevalence(previous, "all"),
            )
        }

    async def analyze_brand(self, brand_id: str) -> Optional[GapAnalysis]:
        """
        Analyze one brand.

        Returns:
            GapAnalysis, or None when the brand has no tagged client ads or
            its competitors have no tagged ads
        """
        now = self._now or utc_now()
        today = now.date()

        if self.sync_client_ads:
            ClientAdSync(self.store, now=now).sync_brand(brand_id)

        client_ads = self._client_ads(brand_id, today)
        if not client_ads:
            return None

        loaded = VelocityAnalyzer(self.store, now=now).fetch_competitor_ads(brand_id)
        if loaded is None:
            return None
        _, competitors, competitor_ads = loaded

        client_prevalence = calculate_weighted_prevalence(client_ads, "all")
        competitor_prevalence = calculate_weighted_prevalence(competitor_ads, "all")
        velocity_map = self._velocity_map(competitor_ads, today)
        convergence_map = self.store.fetch_latest_convergence_scores(brand_id)
        names = {c["id"]: c.get("name") for c in competitors}

        elements: List[GapElement] = []
        for dimension, values in ALL_DIMENSIONS.items():
            for value in values:
                client_prev = client_prevalence.get(dimension, {}).get(value, 0.0)
                comp_prev = competitor_prevalence.get(dimension, {}).get(value, 0.0)
                if client_prev < MIN_USAGE and comp_prev < MIN_USAGE:
                    continue

                key = f"{dimension}:{value}"
                gap = comp_prev - client_prev
                velocity = velocity_map.get(key, 0.0)
                convergence = convergence_map.get(key) or {
                    "score": 0.0,
                    "classification": ConvergenceClassification.NO_CONVERGENCE.value,
                }

                element = GapElement(
                    dimension=dimension,
                    value=value,
                    client_prevalence=_round4(client_prev),
                    competitor_prevalence=_round4(comp_prev),
                    gap_size=_round4(gap),
                    velocity=_round4(velocity),
                    velocity_direction=classify_velocity(velocity),
                    convergence_score=convergence["score"],
                    convergence_classification=convergence["classification"],
                    priority_score=_round4(calculate_priority_score(gap, velocity, convergence["score"])),
                    competitor_examples=[
                        GapExample(ad_id=ad.id, competitor_name=names.get(ad.competitor_id) or "Unknown")
                        for ad in competitor_ads
                        if ad.tag_value(dimension) == value
                    ][:MAX_EXAMPLE_ADS],
                )
                element.recommendation = generate_recommendation(element)
                elements.append(element)

        positive_gaps = sorted((e for e in elements if e.gap_size > 0), key=lambda e: e.priority_score, reverse=True)
        priority_gaps = positive_gaps[:MAX_PRIORITY_GAPS]
        strengths = sorted(
            (
                e for e in elements
                if e.client_prevalence >= e.competitor_prevalence and e.client_prevalence > MIN_STRENGTH_PREVALENCE
            ),
            key=lambda e: e.client_prevalence,
            reverse=True,
        )
        watch_list = sorted(
            (
                e for e in elements
                if abs(e.gap_size) < WATCH_LIST_MAX_GAP and e.velocity_direction == VelocityDirection.ACCELERATING
            ),
            key=lambda e: e.velocity,
            reverse=True,
        )

        analysis = GapAnalysis(
            brand_id=brand_id,
            analysis_date=today,
            total_client_ads=len(client_ads),
            total_competitor_ads=len(competitor_ads),
            priority_gaps=priority_gaps,
            strengths=strengths,
            watch_list=watch_list,
            summary=GapSummary(
                biggest_opportunity=_label(priority_gaps[0] if priority_gaps else None),
                strongest_match=_label(strengths[0] if strengths else None),
                total_gaps_identified=len(positive_gaps),
            ),
        )

        self.store.upsert_gap_snapshot({
            "brand_id": brand_id,
            "snapshot_date": today.isoformat(),
            "total_client_ads": len(client_ads),
            "total_competitor_ads": len(competitor_ads),
            "analysis_json": analysis.model_dump(mode="json"),
        })
        return analysis

    async def run(self) -> GapPipelineStats:
        """Sync client ads and analyze every client brand (weekly job)."""
        start = time.monotonic()
        stats = GapPipelineStats()

        with get_logfire().span("run_gap_pipeline"):
            try:
                brands = self.store.fetch_client_brands()
            except Exception as e:
                logger.error(f"Gap analysis aborted, brand query failed: {e}")
                brands = []

            sync = ClientAdSync(self.store, now=self._now)
            for brand in brands:
                try:
                    if self.sync_client_ads:
                        stats.client_ads_synced += sync.sync_brand(brand["id"]).synced
                    analyzer = GapAnalyzer(self.store, now=self._now, sync_client_ads=False)
                    result = await analyzer.analyze_brand(brand["id"])
                except Exception as e:
                    logger.error(f"Error analyzing creative gap for brand {brand['id']}: {e}")
                    stats.failed += 1
                    continue
                if result is None:
                    continue
                stats.brands_analyzed += 1
                stats.snapshots_saved += 1

        stats.duration_ms = elapsed_ms(start)
        logger.info(
            f"Gap analysis: {stats.brands_analyzed} brands, {stats.client_ads_synced} client ads synced, "
            f"{stats.failed} failed"
        )
        return stats


async def run_gap_pipeline(store=None) -> GapPipelineStats:
    if store is None:
        from ...core.database import get_supabase_client
        from ..ad_store import AdStore
        store = AdStore(get_supabase_client())
    return await GapAnalyzer(store).run()
