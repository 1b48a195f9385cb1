"""
TaggingPipeline - batch tagging of image ad creatives.

Per run:
1. Select a bounded batch of ads still pending/failed.
2. Reuse tags from an already-tagged ad with the same image hash.
3. Otherwise ask the vision collaborator, log the cost, store valid tags.
4. Failed attempts count against the retry budget; exhausted ads become
   ``skipped`` and are never selected again.

Ads are processed one at a time. A failure on one ad never stops the batch.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from ...core.config import TaggingPolicy
from ...core.observability import get_logfire
from ..helpers import elapsed_ms, utc_now
from ..models import PipelineStats, TaggingCostEntry, TaggingStatus
from .retry import record_failure

logger = logging.getLogger(__name__)


class TaggingPipeline:
    """Runs one image tagging batch."""

    def __init__(
        self,
        store,
        vision,
        policy: Optional[TaggingPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            store: AdStore (or any object with the same methods)
            vision: VisionTaggingService (tag_ad_image, hash_image, model_name)
            policy: Retry/batch/lease policy (defaults to TaggingPolicy())
            sleep: Awaitable sleep used for rate-limit backoff
        """
        self.store = store
        self.vision = vision
        self.policy = policy or TaggingPolicy()
        self._sleep = sleep

    @property
    def model_name(self) -> str:
        return getattr(self.vision, "model_name", "unknown")

    async def run(self) -> PipelineStats:
        start = time.monotonic()
        stats = PipelineStats()

        with get_logfire().span(
            "run_tagging_pipeline",
            batch_size=self.policy.image_batch_size,
            max_retries=self.policy.max_retries,
        ):
            try:
                ads = self.store.fetch_untagged_ads(
                    limit=self.policy.image_batch_size,
                    max_retries=self.policy.max_retries,
                )
            except Exception as e:
                logger.error(f"Image tagging aborted, ad query failed: {e}")
                ads = []

            if not ads:
                stats.duration_ms = elapsed_ms(start)
                return stats

            stats.total = len(ads)
            hash_index = self._load_hash_index()

            for ad in ads:
                if self.policy.use_leases and not self._claim(ad):
                    continue
                try:
                    await self._process_ad(ad, hash_index, stats)
                except Exception as e:
                    logger.error(f"Error tagging ad {ad['id']}: {e}")
                    await self._fail(ad, str(e), stats)

        stats.duration_ms = elapsed_ms(start)
        logger.info(
            f"Image tagging: {stats.tagged} tagged, {stats.deduped} deduped, "
            f"{stats.failed} failed, {stats.skipped} skipped of {stats.total} "
            f"(${stats.total_cost_usd:.4f}, {stats.duration_ms}ms)"
        )
        return stats

    def _load_hash_index(self) -> Dict[str, Dict[str, Any]]:
        try:
            return self.store.fetch_tag_hash_index()
        except Exception as e:
            logger.warning(f"Hash dedup disabled for this run: {e}")
            return {}

    def _claim(self, ad: Dict[str, Any]) -> bool:
        try:
            claimed = self.store.claim_ad(ad["id"], "image", self.policy.lease_seconds)
        except Exception as e:
            logger.error(f"Could not claim ad {ad['id']}: {e}")
            return False
        if not claimed:
            logger.info(f"Ad {ad['id']} is leased by another run, leaving it")
        return claimed

    async def _process_ad(self, ad: Dict[str, Any], hash_index: Dict[str, Dict[str, Any]], stats: PipelineStats) -> None:
        now = utc_now()

        image_hash = ad.get("image_hash")
        if not image_hash and ad.get("thumbnail_url"):
            image_hash = await self.vision.hash_image(ad["thumbnail_url"])
            if image_hash:
                self.store.update_ad(ad["id"], {"image_hash": image_hash})

        match = hash_index.get(image_hash) if image_hash else None
        if match:
            self.store.insert_creative_tags(
                ad["id"],
                match["tags"],
                model_version=self.model_name,
                source="hash_dedup",
                source_ad_id=match["ad_id"],
            )
            self._mark_tagged(ad, now)
            stats.deduped += 1
            logger.debug(f"Ad {ad['id']} reused tags from {match['ad_id']}")
            return

        result = await self.vision.tag_ad_image(ad["thumbnail_url"])

        self.store.insert_cost_log(TaggingCostEntry(
            ad_id=ad["id"],
            model=self.model_name,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            estimated_cost_usd=result.estimated_cost_usd,
            duration_ms=result.duration_ms,
            success=result.tags is not None,
            error_message=result.error,
        ))

        if result.tags is None:
            await self._fail(ad, result.error or "Unknown error", stats, rate_limited=result.rate_limited)
            return

        self.store.insert_creative_tags(
            ad["id"],
            result.tags,
            model_version=self.model_name,
            source="vision_api",
        )
        self._mark_tagged(ad, now)
        stats.tagged += 1
        stats.total_cost_usd += result.estimated_cost_usd

        if image_hash:
            hash_index[image_hash] = {"ad_id": ad["id"], "tags": dict(result.tags)}

    def _mark_tagged(self, ad: Dict[str, Any], now) -> None:
        self.store.update_ad(ad["id"], {
            "tagging_status": TaggingStatus.TAGGED.value,
            "tagging_attempted_at": now.isoformat(),
        })

    async def _fail(self, ad: Dict[str, Any], error: str, stats: PipelineStats, rate_limited: bool = False) -> None:
        try:
            status = await record_failure(
                self.store,
                self.policy,
                ad,
                prefix="tagging",
                error=error,
                now=utc_now(),
                rate_limited=rate_limited,
                sleep=self._sleep,
            )
        except Exception as e:
            logger.error(f"Could not record tagging failure for ad {ad['id']}: {e}")
            status = TaggingStatus.FAILED

        if status == TaggingStatus.SKIPPED:
            stats.skipped += 1
        else:
            stats.failed += 1


async def run_tagging_pipeline(store=None, vision=None, policy: Optional[TaggingPolicy] = None) -> PipelineStats:
    """Entry point for the scheduled job. Closes the vision client it creates."""
    if store is None:
        from ...core.database import get_supabase_client
        from ..ad_store import AdStore
        store = AdStore(get_supabase_client())
    owned = None
    if vision is None:
        from .vision_service import VisionTaggingService
        vision = owned = VisionTaggingService()
    try:
        return await TaggingPipeline(store, vision, policy or TaggingPolicy.from_config()).run()
    finally:
        if owned is not None:
            await owned.aclose()
