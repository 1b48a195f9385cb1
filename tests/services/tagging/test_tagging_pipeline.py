"""
Tests for TaggingPipeline - image tagging batches.

The store and vision collaborators are mocks; no DB or API calls.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from admirror.core.config import TaggingPolicy
from admirror.services.models import TaggingResult
from admirror.services.tagging.cost_tracking import calculate_cost
from admirror.services.tagging.taxonomy import TAXONOMY_DIMENSIONS
from admirror.services.tagging.tagging_pipeline import TaggingPipeline, run_tagging_pipeline

VALID_TAGS = {key: values[0] for key, values in TAXONOMY_DIMENSIONS.items()}


# ============================================================================
# Fixtures
# ============================================================================

def _ad(ad_id="a1", retry_count=0, image_hash=None):
    return {
        "id": ad_id,
        "thumbnail_url": f"https://cdn.example.com/{ad_id}.jpg",
        "image_hash": image_hash,
        "tagging_retry_count": retry_count,
    }


@pytest.fixture
def store():
    store = MagicMock()
    store.fetch_untagged_ads.return_value = [_ad()]
    store.fetch_tag_hash_index.return_value = {}
    store.claim_ad.return_value = True
    return store


@pytest.fixture
def vision():
    vision = MagicMock()
    vision.model_name = "claude-test"
    vision.hash_image = AsyncMock(return_value="hash-a1")
    vision.tag_ad_image = AsyncMock(return_value=TaggingResult(
        tags=dict(VALID_TAGS),
        input_tokens=1000,
        output_tokens=200,
        estimated_cost_usd=calculate_cost(1000, 200),
        duration_ms=850,
    ))
    return vision


@pytest.fixture
def sleep():
    return AsyncMock()


def _failure_update(store):
    for call in store.update_ad.call_args_list:
        fields = call[0][1]
        if "tagging_retry_count" in fields:
            return fields
    return None


# ============================================================================
# Happy path
# ============================================================================

class TestTaggedPath:
    @pytest.mark.asyncio
    async def test_tags_and_counts_cost(self, store, vision, sleep):
        stats = await TaggingPipeline(store, vision, sleep=sleep).run()

        assert stats.total == 1
        assert stats.tagged == 1
        assert stats.failed == stats.skipped == stats.deduped == 0
        assert stats.total_cost_usd == pytest.approx(calculate_cost(1000, 200))

        store.insert_creative_tags.assert_called_once_with(
            "a1", VALID_TAGS, model_version="claude-test", source="vision_api",
        )
        statuses = [c[0][1].get("tagging_status") for c in store.update_ad.call_args_list]
        assert "tagged" in statuses

    @pytest.mark.asyncio
    async def test_stores_missing_hash(self, store, vision, sleep):
        await TaggingPipeline(store, vision, sleep=sleep).run()
        store.update_ad.assert_any_call("a1", {"image_hash": "hash-a1"})

    @pytest.mark.asyncio
    async def test_cost_logged(self, store, vision, sleep):
        await TaggingPipeline(store, vision, sleep=sleep).run()

        entry = store.insert_cost_log.call_args[0][0]
        assert entry.ad_id == "a1"
        assert entry.success is True
        assert entry.input_tokens == 1000
        assert entry.output_tokens == 200

    @pytest.mark.asyncio
    async def test_batch_uses_policy(self, store, vision, sleep):
        policy = TaggingPolicy(image_batch_size=50, max_retries=4)
        await TaggingPipeline(store, vision, policy=policy, sleep=sleep).run()
        store.fetch_untagged_ads.assert_called_once_with(limit=50, max_retries=4)


# ============================================================================
# Hash dedup
# ============================================================================

class TestDedup:
    @pytest.mark.asyncio
    async def test_known_hash_reuses_tags(self, store, vision, sleep):
        store.fetch_untagged_ads.return_value = [_ad(image_hash="h1")]
        store.fetch_tag_hash_index.return_value = {"h1": {"ad_id": "a0", "tags": dict(VALID_TAGS)}}

        stats = await TaggingPipeline(store, vision, sleep=sleep).run()

        assert stats.deduped == 1
        assert stats.tagged == 0
        assert stats.total_cost_usd == 0
        vision.tag_ad_image.assert_not_awaited()
        store.insert_creative_tags.assert_called_once_with(
            "a1", VALID_TAGS, model_version="claude-test", source="hash_dedup", source_ad_id="a0",
        )

    @pytest.mark.asyncio
    async def test_duplicate_within_batch(self, store, vision, sleep):
        store.fetch_untagged_ads.return_value = [_ad("a1"), _ad("a2")]
        vision.hash_image = AsyncMock(return_value="same")

        stats = await TaggingPipeline(store, vision, sleep=sleep).run()

        assert stats.tagged == 1
        assert stats.deduped == 1
        vision.tag_ad_image.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_hash_index_failure_tolerated(self, store, vision, sleep):
        store.fetch_tag_hash_index.side_effect = Exception("timeout")

        stats = await TaggingPipeline(store, vision, sleep=sleep).run()

        assert stats.tagged == 1


# ============================================================================
# Failures and retries
# ============================================================================

class TestFailures:
    @pytest.mark.asyncio
    async def test_invalid_response_fails(self, store, vision, sleep):
        vision.tag_ad_image.return_value = TaggingResult(
            input_tokens=900, output_tokens=40,
            estimated_cost_usd=calculate_cost(900, 40),
            error="Failed to parse JSON response",
        )

        stats = await TaggingPipeline(store, vision, sleep=sleep).run()

        assert stats.failed == 1
        assert stats.tagged == 0
        fields = _failure_update(store)
        assert fields["tagging_retry_count"] == 1
        assert fields["tagging_status"] == "failed"
        assert fields["tagging_last_error"] == "Failed to parse JSON response"
        store.insert_creative_tags.assert_not_called()
        assert store.insert_cost_log.call_args[0][0].success is False
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_third_failure_skips(self, store, vision, sleep):
        store.fetch_untagged_ads.return_value = [_ad(retry_count=2)]
        vision.tag_ad_image.return_value = TaggingResult(error="Failed to fetch image")

        stats = await TaggingPipeline(store, vision, sleep=sleep).run()

        assert stats.skipped == 1
        assert stats.failed == 0
        fields = _failure_update(store)
        assert fields["tagging_retry_count"] == 3
        assert fields["tagging_status"] == "skipped"

    @pytest.mark.asyncio
    async def test_exception_counts_as_failure(self, store, vision, sleep):
        vision.tag_ad_image.side_effect = RuntimeError("socket closed")

        stats = await TaggingPipeline(store, vision, sleep=sleep).run()

        assert stats.failed == 1
        assert _failure_update(store)["tagging_last_error"] == "socket closed"

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_batch(self, store, vision, sleep):
        store.fetch_untagged_ads.return_value = [_ad("a1"), _ad("a2")]
        vision.hash_image = AsyncMock(side_effect=["h1", "h2"])
        vision.tag_ad_image.side_effect = [
            TaggingResult(error="Validation failed: Missing dimension: pacing"),
            TaggingResult(tags=dict(VALID_TAGS), estimated_cost_usd=0.01),
        ]

        stats = await TaggingPipeline(store, vision, sleep=sleep).run()

        assert (stats.tagged, stats.failed) == (1, 1)

    @pytest.mark.asyncio
    async def test_rate_limit_backs_off(self, store, vision, sleep):
        vision.tag_ad_image.return_value = TaggingResult(error="RATE_LIMITED")

        stats = await TaggingPipeline(store, vision, sleep=sleep).run()

        assert stats.failed == 1
        sleep.assert_awaited_once_with(2.0)

    @pytest.mark.asyncio
    async def test_rate_limit_without_retry_cost(self, store, vision, sleep):
        store.fetch_untagged_ads.return_value = [_ad(retry_count=2)]
        vision.tag_ad_image.return_value = TaggingResult(error="RATE_LIMITED")
        policy = TaggingPolicy(rate_limit_consumes_retry=False)

        stats = await TaggingPipeline(store, vision, policy=policy, sleep=sleep).run()

        assert stats.failed == 1
        assert stats.skipped == 0
        assert _failure_update(store)["tagging_retry_count"] == 2


# ============================================================================
# Batch-level behaviour
# ============================================================================

class TestBatch:
    @pytest.mark.asyncio
    async def test_nothing_to_tag(self, store, vision, sleep):
        store.fetch_untagged_ads.return_value = []

        stats = await TaggingPipeline(store, vision, sleep=sleep).run()

        assert stats.total == 0
        assert stats.tagged == stats.failed == stats.skipped == stats.deduped == 0
        assert stats.total_cost_usd == 0

    @pytest.mark.asyncio
    async def test_query_error_returns_zero_stats(self, store, vision, sleep):
        store.fetch_untagged_ads.side_effect = Exception("connection refused")

        stats = await TaggingPipeline(store, vision, sleep=sleep).run()

        assert stats.total == 0
        vision.tag_ad_image.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_leased_ad_left_alone(self, store, vision, sleep):
        store.claim_ad.return_value = False

        stats = await TaggingPipeline(store, vision, sleep=sleep).run()

        assert stats.total == 1
        assert stats.tagged == stats.failed == stats.skipped == stats.deduped == 0
        vision.tag_ad_image.assert_not_awaited()
        store.claim_ad.assert_called_once_with("a1", "image", 900)

    @pytest.mark.asyncio
    async def test_leases_can_be_disabled(self, store, vision, sleep):
        policy = TaggingPolicy(use_leases=False)

        stats = await TaggingPipeline(store, vision, policy=policy, sleep=sleep).run()

        assert stats.tagged == 1
        store.claim_ad.assert_not_called()


# ============================================================================
# Entry point
# ============================================================================

class TestRunTaggingPipeline:
    @pytest.mark.asyncio
    async def test_closes_default_vision_client(self, store, vision):
        vision.aclose = AsyncMock()
        with patch("admirror.services.tagging.vision_service.VisionTaggingService", return_value=vision):
            stats = await run_tagging_pipeline(store=store, policy=TaggingPolicy())

        assert stats.tagged == 1
        vision.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_closes_default_vision_client_on_error(self, store, vision):
        vision.aclose = AsyncMock()
        with patch("admirror.services.tagging.vision_service.VisionTaggingService", return_value=vision), \
                patch.object(TaggingPipeline, "run", AsyncMock(side_effect=RuntimeError("boom"))):
            with pytest.raises(RuntimeError):
                await run_tagging_pipeline(store=store, policy=TaggingPolicy())

        vision.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_injected_vision_is_left_open(self, store, vision):
        vision.aclose = AsyncMock()

        await run_tagging_pipeline(store=store, vision=vision, policy=TaggingPolicy())

        vision.aclose.assert_not_awaited()
