"""Retry/skip bookkeeping shared by the image and video tagging pipelines."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict

from ...core.config import TaggingPolicy
from ..models import TaggingStatus

logger = logging.getLogger(__name__)


async def record_failure(
    store,
    policy: TaggingPolicy,
    ad: Dict[str, Any],
    prefix: str,
    error: str,
    now: datetime,
    rate_limited: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> TaggingStatus:
    """
    Persist a failed tagging attempt and return the resulting status.

    ``prefix`` is the column family: "tagging" or "video_tagging". The retry
    count grows by one per failed attempt; reaching ``policy.max_retries``
    turns the attempt into a terminal ``skipped``.
    """
    prior = ad.get(f"{prefix}_retry_count") or 0

    if rate_limited and not policy.rate_limit_consumes_retry:
        retry_count = prior
        status = TaggingStatus.FAILED
    else:
        retry_count = prior + 1
        status = TaggingStatus(policy.next_status(retry_count))

    if rate_limited:
        backoff = policy.rate_limit_backoff(prior + 1)
        if backoff > 0:
            logger.warning(f"Rate limited on ad {ad['id']}, backing off {backoff:.1f}s")
            await sleep(backoff)

    store.update_ad(ad["id"], {
        f"{prefix}_retry_count": retry_count,
        f"{prefix}_last_error": error or "Unknown error",
        f"{prefix}_status": status.value,
        f"{prefix}_attempted_at": now.isoformat(),
    })

    logger.info(f"Ad {ad['id']} {prefix} attempt failed ({retry_count}/{policy.max_retries}) -> {status.value}: {error}")
    return status
