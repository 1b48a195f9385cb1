"""
VideoTaggingPipeline - batch tagging of video ad creatives.

Per ad, in order:
1. Extract keyframes + audio (ffmpeg)
2. Transcribe audio when there is any (silent/music-only ads are normal)
3. Tag the hook frame with the image taxonomy
4. Detect visual shifts between keyframes
5. Tag the six inferred video dimensions; the duration bucket comes from
   metadata
6. Validate the merged 7-dimension set and store it

Every stage writes a cost-ledger row. Any stage failure applies the same
retry/skip policy as image tagging. Temp media for the ad is always removed.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from ...core.config import TaggingPolicy
from ...core.observability import get_logfire
from ..helpers import elapsed_ms, utc_now
from ..models import TaggingCostEntry, TaggingStatus, VideoPipelineStats
from .retry import record_failure
from .taxonomy import DIMENSION_KEYS
from .video_taxonomy import DURATION_BUCKET_KEY, VIDEO_DIMENSION_KEYS, get_duration_bucket, validate_video_tag_set

logger = logging.getLogger(__name__)

COST_LOG_TABLE = "video_tagging_cost_log"


class VideoTaggingError(Exception):
    """A video tagging stage failed for one ad."""


class VideoTaggingPipeline:
    """Runs one video tagging batch."""

    def __init__(
        self,
        store,
        media,
        transcriber,
        vision,
        policy: Optional[TaggingPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            store: AdStore
            media: MediaService (extract_keyframes_and_audio, cleanup_temp_files)
            transcriber: TranscriptionService (transcribe_audio, model_name)
            vision: VideoVisionService (tag_hook_frame, detect_visual_shifts,
                tag_video_content, model_name)
            policy: Retry/batch/lease/time-budget policy
            sleep: Awaitable sleep used for rate-limit backoff
        """
        self.store = store
        self.media = media
        self.transcriber = transcriber
        self.vision = vision
        self.policy = policy or TaggingPolicy()
        self._sleep = sleep

    @property
    def model_name(self) -> str:
        return getattr(self.vision, "model_name", "unknown")

    @property
    def whisper_model(self) -> str:
        return getattr(self.transcriber, "model_name", "unknown")

    async def run(self) -> VideoPipelineStats:
        start = time.monotonic()
        stats = VideoPipelineStats()

        with get_logfire().span(
            "run_video_tagging_pipeline",
            batch_size=self.policy.video_batch_size,
            time_budget_seconds=self.policy.video_time_budget_seconds,
        ):
            try:
                ads = self.store.fetch_untagged_video_ads(
                    limit=self.policy.video_batch_size,
                    max_retries=self.policy.max_retries,
                )
            except Exception as e:
                logger.error(f"Video tagging aborted, ad query failed: {e}")
                ads = []

            if not ads:
                stats.duration_ms = elapsed_ms(start)
                return stats

            stats.total = len(ads)

            for ad in ads:
                if time.monotonic() - start > self.policy.video_time_budget_seconds:
                    logger.info("Video tagging time budget reached, stopping")
                    break
                if self.policy.use_leases and not self._claim(ad):
                    continue

                try:
                    await self._process_ad(ad, stats)
                except Exception as e:
                    logger.error(f"Error tagging video ad {ad['id']}: {e}")
                    await self._fail(ad, str(e) or type(e).__name__, stats)
                finally:
                    await self._cleanup(ad["id"])

        stats.duration_ms = elapsed_ms(start)
        logger.info(
            f"Video tagging: {stats.tagged} tagged, {stats.failed} failed, "
            f"{stats.skipped} skipped, {stats.no_audio} without audio of {stats.total} "
            f"(${stats.total_cost_usd:.4f}, {stats.duration_ms}ms)"
        )
        return stats

    def _claim(self, ad: Dict[str, Any]) -> bool:
        try:
            claimed = self.store.claim_ad(ad["id"], "video", self.policy.lease_seconds)
        except Exception as e:
            logger.error(f"Could not claim video ad {ad['id']}: {e}")
            return False
        if not claimed:
            logger.info(f"Video ad {ad['id']} is leased by another run, leaving it")
        return claimed

    def _log_cost(self, ad_id: str, stage: str, model: str, **fields) -> None:
        self.store.insert_cost_log(
            TaggingCostEntry(ad_id=ad_id, model=model, stage=stage, **fields),
            table=COST_LOG_TABLE,
        )

    async def _process_ad(self, ad: Dict[str, Any], stats: VideoPipelineStats) -> None:
        ad_id = ad["id"]
        now = utc_now()
        self.store.update_ad(ad_id, {"video_tagging_attempted_at": now.isoformat()})

        # a. Keyframes + audio
        extraction = await asyncio.to_thread(self.media.extract_keyframes_and_audio, ad["video_url"], ad_id)
        if not extraction.frames:
            raise VideoTaggingError("No keyframes extracted")
        self._log_cost(ad_id, "keyframe_extraction", "ffmpeg")

        # b. Transcript
        transcript = ""
        word_count = 0
        if extraction.audio_path:
            transcription = await self.transcriber.transcribe_audio(extraction.audio_path)
            if transcription.error:
                raise VideoTaggingError(f"Transcription failed: {transcription.error}")
            transcript = transcription.transcript
            word_count = transcription.word_count
            self._log_cost(
                ad_id, "transcription", self.whisper_model,
                estimated_cost_usd=transcription.estimated_cost_usd,
                duration_ms=transcription.duration_ms,
                audio_seconds=round(transcription.audio_seconds),
            )
            stats.total_cost_usd += transcription.estimated_cost_usd
        else:
            stats.no_audio += 1

        # c. Hook frame
        hook = await self.vision.tag_hook_frame(extraction.frames[0])
        self._log_cost(
            ad_id, "hook_tagging", self.model_name,
            input_tokens=hook.input_tokens,
            output_tokens=hook.output_tokens,
            estimated_cost_usd=hook.estimated_cost_usd,
            duration_ms=hook.duration_ms,
            success=hook.tags is not None,
            error_message=hook.error,
        )
        stats.total_cost_usd += hook.estimated_cost_usd
        if hook.tags is None:
            raise VideoTaggingError(f"Hook frame tagging failed: {hook.error}")

        # d. Visual shifts
        shifts = await self.vision.detect_visual_shifts(extraction.frames)
        self._log_cost(
            ad_id, "shift_detection", self.model_name,
            input_tokens=shifts.total_input_tokens,
            output_tokens=shifts.total_output_tokens,
            estimated_cost_usd=shifts.total_cost_usd,
            duration_ms=shifts.duration_ms,
        )
        stats.total_cost_usd += shifts.total_cost_usd

        # e. Video dimensions
        duration_seconds = extraction.duration_seconds or ad.get("video_duration") or 0
        video = await self.vision.tag_video_content(transcript, hook.tags, duration_seconds)
        self._log_cost(
            ad_id, "video_tagging", self.model_name,
            input_tokens=video.input_tokens,
            output_tokens=video.output_tokens,
            estimated_cost_usd=video.estimated_cost_usd,
            duration_ms=video.duration_ms,
            success=video.tags is not None,
            error_message=video.error,
        )
        stats.total_cost_usd += video.estimated_cost_usd
        if video.tags is None:
            raise VideoTaggingError(f"Video content tagging failed: {video.error}")

        # f. Merge and validate
        video_tags = {key: video.tags.get(key) for key in VIDEO_DIMENSION_KEYS}
        video_tags[DURATION_BUCKET_KEY] = get_duration_bucket(duration_seconds)
        validation = validate_video_tag_set(video_tags)
        if not validation.valid:
            raise VideoTaggingError(f"Validation failed: {'; '.join(validation.errors)}")

        hook_columns = {f"hook_{key}": hook.tags[key] for key in DIMENSION_KEYS}

        self.store.insert_video_tags({
            "ad_id": ad_id,
            **hook_columns,
            **video_tags,
            "visual_shifts": [s.model_dump() for s in shifts.shifts],
            "keyframe_count": len(extraction.frames),
            "model_version": self.model_name,
            "transcription_model": self.whisper_model if extraction.audio_path else None,
        })
        self.store.update_ad(ad_id, {
            "video_tagging_status": TaggingStatus.TAGGED.value,
            "video_tagging_attempted_at": now.isoformat(),
            "transcript": transcript or None,
            "transcript_word_count": word_count,
        })
        stats.tagged += 1

    async def _cleanup(self, ad_id: str) -> None:
        try:
            await asyncio.to_thread(self.media.cleanup_temp_files, ad_id)
        except Exception as e:
            logger.warning(f"Temp file cleanup failed for ad {ad_id}: {e}")

    async def _fail(self, ad: Dict[str, Any], error: str, stats: VideoPipelineStats) -> None:
        try:
            status = await record_failure(
                self.store,
                self.policy,
                ad,
                prefix="video_tagging",
                error=error,
                now=utc_now(),
                rate_limited="RATE_LIMITED" in error,
                sleep=self._sleep,
            )
        except Exception as e:
            logger.error(f"Could not record video tagging failure for ad {ad['id']}: {e}")
            status = TaggingStatus.FAILED

        if status == TaggingStatus.SKIPPED:
            stats.skipped += 1
        else:
            stats.failed += 1


async def run_video_tagging_pipeline(
    store=None,
    media=None,
    transcriber=None,
    vision=None,
    policy: Optional[TaggingPolicy] = None,
) -> VideoPipelineStats:
    """Entry point for the scheduled job. Closes the HTTP clients it creates."""
    if store is None:
        from ...core.database import get_supabase_client
        from ..ad_store import AdStore
        store = AdStore(get_supabase_client())
    if media is None:
        from .media_service import MediaService
        media = MediaService()

    owned = []
    try:
        if transcriber is None:
            from .transcription_service import TranscriptionService
            transcriber = TranscriptionService()
            owned.append(transcriber)
        if vision is None:
            from .video_vision_service import VideoVisionService
            vision = VideoVisionService()
            owned.append(vision)
        pipeline = VideoTaggingPipeline(store, media, transcriber, vision, policy or TaggingPolicy.from_config())
        return await pipeline.run()
    finally:
        for client in owned:
            try:
                await client.aclose()
            except Exception as e:
                logger.warning(f"Failed to close {type(client).__name__}: {e}")
