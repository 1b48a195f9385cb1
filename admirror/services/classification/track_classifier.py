"""TrackClassifier: nightly competitor track classification and ad scoring.

Competitors are split into two behavioral tracks from their 30-day launch
volume:
- Consolidator (Track A): few ads, run for a long time and iterated on.
- Velocity Tester (Track B): 10+ launches a month, most killed quickly.

Every ad then gets a ``signal_strength`` (1-100) whose meaning depends on its
competitor's current track: duration + variations for consolidators, and
survival weighted by how selective the competitor's kill rate is for
velocity testers.
"""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from ...core.observability import get_logfire
from ..helpers import clamp, elapsed_ms, round_half_up, utc_now
from ..models import (
    AdRecord,
    ClassificationPipelineStats,
    ClassificationResult,
    CompetitorRecord,
    CompetitorTrack,
    TrackChangeLogEntry,
)

logger = logging.getLogger(__name__)

NEW_ADS_THRESHOLD = 10
SURVIVAL_DAYS = 14
LOOKBACK_DAYS = 30

# Track A (Consolidator): duration + variations
TRACK_A_DURATION_MAX_DAYS = 90  # 90+ days gets full duration credit
TRACK_A_VARIATION_MAX = 5       # 5+ variations gets full variation credit
TRACK_A_DURATION_WEIGHT = 0.7
TRACK_A_VARIATION_WEIGHT = 0.3

# Track B (Velocity Tester): survival in context
TRACK_B_BASELINE_SURVIVAL = 0.5  # 50% survival = neutral selectivity
TRACK_B_MIN_SIGNAL = 10          # floor for any surviving ad
TRACK_B_KILLED_MAX_SIGNAL = 15

SCORE_BATCH_SIZE = 100


def calculate_track_a_signal(days_active: float, variation_count: float) -> int:
    """Signal strength for a consolidator's ad: long-running + iterated = strong."""
    duration_score = min(days_active / TRACK_A_DURATION_MAX_DAYS, 1)
    variation_score = min(variation_count / TRACK_A_VARIATION_MAX, 1)

    raw = (duration_score * TRACK_A_DURATION_WEIGHT + variation_score * TRACK_A_VARIATION_WEIGHT) * 100
    return round_half_up(clamp(raw, 1, 100))


def calculate_track_b_signal(survived_ad: bool, survival_rate: float, days_active: float) -> int:
    """
    Signal strength for a velocity tester's ad.

    Surviving when most siblings were killed is a strong signal; surviving
    when nearly everything survives is weak.

    Args:
        survived_ad: Whether the ad made it past SURVIVAL_DAYS
        survival_rate: The competitor's 14-day survival rate (0-1)
        days_active: Days the ad ran

    Returns:
        Signal strength in [1, 100]
    """
    if not survived_ad:
        # Killed ads stay low but still separate day-1 kills from week-2 kills
        return round_half_up(clamp(days_active, 1, TRACK_B_KILLED_MAX_SIGNAL))

    # 10% survival -> selectivity 0.9 (very selective); 80% -> 0.2
    selectivity = 1 - survival_rate
    selectivity_multiplier = selectivity / (1 - TRACK_B_BASELINE_SURVIVAL)

    raw = min(selectivity_multiplier, 1) * 100
    return round_half_up(clamp(raw, TRACK_B_MIN_SIGNAL, 100))


def classify_competitor(
    new_ads_30d: int,
    previous_track: Optional[CompetitorTrack],
) -> Tuple[CompetitorTrack, bool]:
    """
    Classify a competitor from its 30-day launch volume.

    Returns:
        (track, track_changed). A first classification is never a change.
    """
    if new_ads_30d >= NEW_ADS_THRESHOLD:
        track = CompetitorTrack.VELOCITY_TESTER
    else:
        track = CompetitorTrack.CONSOLIDATOR
    if previous_track is not None:
        previous_track = CompetitorTrack(previous_track)
    track_changed = previous_track is not None and previous_track != track
    return track, track_changed


def ad_survived(ad: AdRecord) -> bool:
    """An ad survived if it is still running or ran 14+ days before disappearing."""
    return ad.is_active or ad.days_active >= SURVIVAL_DAYS


def compute_survival(ads: Iterable[AdRecord], survival_cutoff: date) -> Tuple[int, Optional[float]]:
    """
    Survival stats over the ads launched on or before ``survival_cutoff``.

    Returns:
        (survived_count, survival_rate); the rate is None with no eligible ads.
    """
    eligible = [ad for ad in ads if ad.launch_date is not None and ad.launch_date <= survival_cutoff]
    survived = sum(1 for ad in eligible if ad_survived(ad))
    if not eligible:
        return survived, None
    return survived, survived / len(eligible)


class TrackClassifier:
    """Classifies every competitor and rescores every ad.

    Competitor tracks come from the stored ``track`` at the start of the run;
    the scoring pass uses the freshly computed results, not a re-read.
    """

    def __init__(self, store, now: Optional[datetime] = None):
        """Initialize with an AdStore.

        Args:
            store: AdStore (or any object with the same methods).
            now: Fixed clock for the run; defaults to the current UTC time.
        """
        self.store = store
        self._now = now
        self.last_results: List[ClassificationResult] = []

    async def run(self) -> ClassificationPipelineStats:
        """Run the full classification pipeline for all competitors."""
        start = time.monotonic()
        stats = ClassificationPipelineStats()
        now = self._now or utc_now()
        today = now.date()
        lookback_cutoff = today - timedelta(days=LOOKBACK_DAYS)
        survival_cutoff = today - timedelta(days=SURVIVAL_DAYS)

        with get_logfire().span("run_classification_pipeline"):
            try:
                competitors = [CompetitorRecord.model_validate(row) for row in self.store.fetch_competitors()]
                recent_ads = [AdRecord.model_validate(row) for row in self.store.fetch_ads_launched_since(lookback_cutoff)]
            except Exception as e:
                logger.error(f"Classification aborted, query failed: {e}")
                return ClassificationPipelineStats(duration_ms=elapsed_ms(start))

            if not competitors:
                stats.duration_ms = elapsed_ms(start)
                return stats

            stats.total = len(competitors)

            ads_by_competitor: Dict[str, List[AdRecord]] = {}
            for ad in recent_ads:
                ads_by_competitor.setdefault(ad.competitor_id, []).append(ad)

            results: List[ClassificationResult] = []
            for competitor in competitors:
                try:
                    result = self._classify_one(
                        competitor,
                        ads_by_competitor.get(competitor.id, []),
                        survival_cutoff,
                        now,
                    )
                except Exception as e:
                    logger.error(f"Error classifying competitor {competitor.name or competitor.id}: {e}")
                    stats.failed += 1
                    continue

                results.append(result)
                stats.classified += 1
                if result.track_changed:
                    stats.track_changes += 1

            self.last_results = results
            try:
                stats.ads_scored = await self._score_ads(results)
            except Exception as e:
                logger.error(f"Signal scoring failed: {e}")

        stats.duration_ms = elapsed_ms(start)
        logger.info(
            f"Classified {stats.classified}/{stats.total} competitors "
            f"({stats.track_changes} track changes, {stats.failed} failed), "
            f"scored {stats.ads_scored} ads in {stats.duration_ms}ms"
        )
        return stats

    def _classify_one(
        self,
        competitor: CompetitorRecord,
        ads: List[AdRecord],
        survival_cutoff: date,
        now: datetime,
    ) -> ClassificationResult:
        new_ads_30d = len(ads)
        previous_track = competitor.track
        track, track_changed = classify_competitor(new_ads_30d, previous_track)

        survived_14d = 0
        survival_rate: Optional[float] = None
        if track == CompetitorTrack.VELOCITY_TESTER and new_ads_30d > 0:
            survived_14d, survival_rate = compute_survival(ads, survival_cutoff)

        self.store.update_competitor(competitor.id, {
            "track": track.value,
            "track_classified_at": now.isoformat(),
            "new_ads_30d": new_ads_30d,
            "total_ads_launched_30d": new_ads_30d,
            "survived_14d": survived_14d,
            "survival_rate": survival_rate,
        })

        if track_changed:
            self.store.insert_track_change(TrackChangeLogEntry(
                competitor_id=competitor.id,
                previous_track=previous_track,
                new_track=track,
                new_ads_30d=new_ads_30d,
                survival_rate=survival_rate,
            ))
            logger.info(
                f"Competitor {competitor.name or competitor.id} moved "
                f"{previous_track.value} -> {track.value}"
            )

        return ClassificationResult(
            competitor_id=competitor.id,
            competitor_name=competitor.name,
            track=track,
            previous_track=previous_track,
            track_changed=track_changed,
            new_ads_30d=new_ads_30d,
            total_ads_launched_30d=new_ads_30d,
            survived_14d=survived_14d,
            survival_rate=survival_rate,
        )

    async def _score_ads(self, results: List[ClassificationResult]) -> int:
        """Score ALL ads (not just the 30-day window) against current tracks."""
        if not results:
            return 0

        try:
            all_ads = [AdRecord.model_validate(row) for row in self.store.fetch_ads_for_scoring()]
        except Exception as e:
            logger.error(f"Skipping signal scoring, ad query failed: {e}")
            return 0

        by_competitor = {r.competitor_id: r for r in results}
        updates = []
        for ad in all_ads:
            comp = by_competitor.get(ad.competitor_id)
            if comp is None:
                continue

            if comp.track == CompetitorTrack.CONSOLIDATOR:
                signal = calculate_track_a_signal(ad.days_active, ad.variation_count)
            else:
                rate = comp.survival_rate if comp.survival_rate is not None else TRACK_B_BASELINE_SURVIVAL
                signal = calculate_track_b_signal(ad_survived(ad), rate, ad.days_active)

            updates.append({
                "id": ad.id,
                "signal_strength": signal,
                "competitor_track": comp.track.value,
            })

        if not updates:
            return 0
        return await self.store.update_ads_concurrently(updates, batch_size=SCORE_BATCH_SIZE)


async def run_classification_pipeline(store=None) -> ClassificationPipelineStats:
    """Entry point for the scheduled job; builds a Supabase-backed store by default."""
    if store is None:
        from ...core.database import get_supabase_client
        from ..ad_store import AdStore
        store = AdStore(get_supabase_client())
    return await TrackClassifier(store).run()
