"""ConvergenceAnalyzer: detects creative elements competitors adopt together.

For every taxonomy value (image + video dimensions) each active competitor's
prevalence in the last 30 days is compared with the 30 days before. The
share of competitors whose prevalence increased is the convergence ratio.
Increases seen on both tracks (consolidators AND velocity testers) are the
strongest evidence of a market-wide shift.

Classifications:
- STRONG_CONVERGENCE: ratio >= 0.6 and cross-track
- MODERATE_CONVERGENCE: ratio >= 0.6
- EMERGING_PATTERN: ratio >= 0.4
"""

from __future__ import annotations

import logging
import math
import time
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence

from ...core.observability import get_logfire
from ..helpers import elapsed_ms, parse_date, utc_now
from ..models import (
    CompetitorAdoption,
    CompetitorInfo,
    CompetitorTrack,
    ConvergenceAnalysis,
    ConvergenceClassification,
    ConvergenceElement,
    ConvergencePipelineStats,
    TaggedAd,
)
from ..tagging.taxonomy import TAXONOMY_DIMENSIONS
from ..tagging.video_taxonomy import VIDEO_TAXONOMY_DIMENSIONS

logger = logging.getLogger(__name__)

ALL_DIMENSIONS = {**TAXONOMY_DIMENSIONS, **VIDEO_TAXONOMY_DIMENSIONS}

WINDOW_DAYS = 30
LOOKBACK_DAYS = 60
CONVERGENCE_THRESHOLD = 0.6
EMERGING_THRESHOLD = 0.4
CROSS_TRACK_BOOST = 1.5
MIN_PREVALENCE = 0.01
MAX_EXAMPLE_ADS = 3


def _round4(n: float) -> float:
    return round(n, 4)


def _round2(n: float) -> float:
    return round(n, 2)


def calculate_confidence(total_competitors: int) -> float:
    """Confidence from competitive-set size: 3 -> ~0.55, 5 -> ~0.71, 10+ -> 1.0."""
    if total_competitors <= 0:
        return 0.0
    return _round4(min(1.0, math.sqrt(total_competitors / 10)))


def classify_convergence(convergence_ratio: float, cross_track: bool) -> ConvergenceClassification:
    if convergence_ratio >= CONVERGENCE_THRESHOLD and cross_track:
        return ConvergenceClassification.STRONG_CONVERGENCE
    if convergence_ratio >= CONVERGENCE_THRESHOLD:
        return ConvergenceClassification.MODERATE_CONVERGENCE
    if convergence_ratio >= EMERGING_THRESHOLD:
        return ConvergenceClassification.EMERGING_PATTERN
    return ConvergenceClassification.NO_CONVERGENCE


def calculate_convergence(
    tagged_ads: Sequence[TaggedAd],
    competitors: Sequence[CompetitorInfo],
    dimension: str,
    value: str,
    current_cutoff: date,
    previous_cutoff: date,
) -> ConvergenceElement:
    """
    Convergence of one taxonomy value across a competitive set.

    Competitors without ads in the current window are not counted.
    """
    adoptions: List[CompetitorAdoption] = []
    track_a_increasing = 0
    track_b_increasing = 0
    total_active = 0
    total_increasing = 0

    for comp in competitors:
        comp_ads = [a for a in tagged_ads if a.competitor_id == comp.id]
        current = [a for a in comp_ads if a.launch_date >= current_cutoff]
        previous = [a for a in comp_ads if previous_cutoff <= a.launch_date < current_cutoff]

        if not current:
            continue
        total_active += 1

        current_with = [a for a in current if a.tag_value(dimension) == value]
        previous_with = [a for a in previous if a.tag_value(dimension) == value]

        current_prevalence = len(current_with) / len(current)
        previous_prevalence = len(previous_with) / len(previous) if previous else 0.0
        increasing = current_prevalence > previous_prevalence

        velocity = 0.0
        if previous_prevalence > MIN_PREVALENCE:
            velocity = (current_prevalence - previous_prevalence) / previous_prevalence
        elif current_prevalence > MIN_PREVALENCE:
            velocity = 1.0

        if increasing:
            total_increasing += 1
            if comp.track == CompetitorTrack.CONSOLIDATOR.value:
                track_a_increasing += 1
            elif comp.track == CompetitorTrack.VELOCITY_TESTER.value:
                track_b_increasing += 1

        adoptions.append(CompetitorAdoption(
            competitor_id=comp.id,
            competitor_name=comp.name or "Unknown",
            track=comp.track or "unclassified",
            current_prevalence=_round4(current_prevalence),
            previous_prevalence=_round4(previous_prevalence),
            velocity_percent=_round2(velocity),
            increasing=increasing,
            example_ad_ids=[a.id for a in current_with[:MAX_EXAMPLE_ADS]],
        ))

    if total_active == 0:
        return ConvergenceElement(dimension=dimension, value=value, competitors=adoptions)

    ratio = total_increasing / total_active
    cross_track = track_a_increasing > 0 and track_b_increasing > 0
    adjusted = min(1.0, ratio * (CROSS_TRACK_BOOST if cross_track else 1.0))

    return ConvergenceElement(
        dimension=dimension,
        value=value,
        convergence_ratio=_round4(ratio),
        adjusted_score=_round4(adjusted),
        cross_track=cross_track,
        classification=classify_convergence(ratio, cross_track),
        confidence=calculate_confidence(total_active),
        competitors_increasing=total_increasing,
        total_competitors=total_active,
        track_a_increasing=track_a_increasing,
        track_b_increasing=track_b_increasing,
        competitors=adoptions,
    )


class ConvergenceAnalyzer:
    """Runs convergence analysis for client brands and stores snapshots."""

    def __init__(self, store, now: Optional[datetime] = None):
        """Initialize with an AdStore.

        Args:
            store: AdStore instance.
            now: Fixed clock (defaults to current UTC time).
        """
        self.store = store
        self._now = now

    async def analyze_brand(self, brand_id: str) -> Optional[ConvergenceAnalysis]:
        """
        Analyze one brand's competitive set.

        Returns:
            ConvergenceAnalysis, or None when the brand has no competitors or
            no tagged ads in the lookback window.
        """
        today = (self._now or utc_now()).date()
        current_cutoff = today - timedelta(days=WINDOW_DAYS)
        previous_cutoff = today - timedelta(days=LOOKBACK_DAYS)

        brand = self.store.fetch_brand(brand_id)
        if not brand:
            return None

        competitors = [CompetitorInfo.model_validate(c) for c in self.store.fetch_brand_competitors(brand_id)]
        if not competitors:
            return None

        rows = self.store.fetch_tagged_ads([c.id for c in competitors], previous_cutoff)
        tagged_ads = []
        for row in rows:
            launch = parse_date(row.get("launch_date"))
            if launch is None:
                continue
            tagged_ads.append(TaggedAd.model_validate({**row, "launch_date": launch}))
        if not tagged_ads:
            return None

        elements: List[ConvergenceElement] = []
        for dimension, values in ALL_DIMENSIONS.items():
            for value in values:
                element = calculate_convergence(
                    tagged_ads, competitors, dimension, value, current_cutoff, previous_cutoff
                )
                if element.competitors_increasing > 0:
                    elements.append(element)

        previous_strong = {
            f"{row['dimension']}:{row['value']}"
            for row in self.store.fetch_previous_strong_convergences(brand_id, today)
        }
        alerts = []
        for element in elements:
            if element.classification == ConvergenceClassification.STRONG_CONVERGENCE:
                if f"{element.dimension}:{element.value}" not in previous_strong:
                    element.is_new_alert = True
                    alerts.append(element)

        elements.sort(key=lambda e: e.adjusted_score, reverse=True)

        self.store.upsert_convergence_snapshots([
            self._snapshot_row(brand_id, today, e)
            for e in elements
            if e.classification != ConvergenceClassification.NO_CONVERGENCE
        ])

        def by_class(cls: ConvergenceClassification) -> List[ConvergenceElement]:
            return [e for e in elements if e.classification == cls]

        return ConvergenceAnalysis(
            competitive_set=f"{brand.get('name') or 'Brand'} Competitors",
            brand_id=brand_id,
            analysis_date=today,
            total_competitors=len(competitors),
            confidence=calculate_confidence(len(competitors)),
            strong_convergences=by_class(ConvergenceClassification.STRONG_CONVERGENCE),
            moderate_convergences=by_class(ConvergenceClassification.MODERATE_CONVERGENCE),
            emerging_patterns=by_class(ConvergenceClassification.EMERGING_PATTERN),
            market_shift_alerts=alerts,
        )

    @staticmethod
    def _snapshot_row(brand_id: str, snapshot_date: date, e: ConvergenceElement) -> Dict:
        return {
            "brand_id": brand_id,
            "snapshot_date": snapshot_date.isoformat(),
            "dimension": e.dimension,
            "value": e.value,
            "convergence_ratio": e.convergence_ratio,
            "adjusted_score": e.adjusted_score,
            "classification": e.classification.value,
            "cross_track": e.cross_track,
            "confidence": e.confidence,
            "competitors_increasing": e.competitors_increasing,
            "total_competitors": e.total_competitors,
            "track_a_increasing": e.track_a_increasing,
            "track_b_increasing": e.track_b_increasing,
            "competitor_details": [c.model_dump() for c in e.competitors if c.increasing],
            "is_new_alert": e.is_new_alert,
        }

    async def run(self) -> ConvergencePipelineStats:
        """Analyze every client brand (weekly job)."""
        start = time.monotonic()
        stats = ConvergencePipelineStats()

        with get_logfire().span("run_convergence_pipeline"):
            try:
                brands = self.store.fetch_client_brands()
            except Exception as e:
                logger.error(f"Convergence run aborted, brand query failed: {e}")
                brands = []

            for brand in brands:
                try:
                    result = await self.analyze_brand(brand["id"])
                except Exception as e:
                    logger.error(f"Error analyzing convergence for brand {brand['id']}: {e}")
                    stats.failed += 1
                    continue
                if result is None:
                    continue
                stats.brands_analyzed += 1
                stats.snapshots_saved += (
                    len(result.strong_convergences)
                    + len(result.moderate_convergences)
                    + len(result.emerging_patterns)
                )
                stats.alerts_generated += len(result.market_shift_alerts)

        stats.duration_ms = elapsed_ms(start)
        logger.info(
            f"Convergence: {stats.brands_analyzed} brands, {stats.snapshots_saved} snapshots, "
            f"{stats.alerts_generated} alerts, {stats.failed} failed"
        )
        return stats


async def run_convergence_pipeline(store=None) -> ConvergencePipelineStats:
    if store is None:
        from ...core.database import get_supabase_client
        from ..ad_store import AdStore
        store = AdStore(get_supabase_client())
    return await ConvergenceAnalyzer(store).run()
