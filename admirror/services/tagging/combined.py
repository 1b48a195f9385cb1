"""Client ad sync, then image tagging, then video tagging in one scheduled run."""

from typing import Optional

from ...core.config import TaggingPolicy
from ..models import CombinedPipelineStats
from .client_sync import ClientAdSync
from .tagging_pipeline import run_tagging_pipeline
from .video_tagging_pipeline import run_video_tagging_pipeline


async def run_combined_tagging_pipeline(store=None, policy: Optional[TaggingPolicy] = None) -> CombinedPipelineStats:
    if store is None:
        from ...core.database import get_supabase_client
        from ..ad_store import AdStore
        store = AdStore(get_supabase_client())

    synced = ClientAdSync(store).sync_all()
    image = await run_tagging_pipeline(store=store, policy=policy)
    video = await run_video_tagging_pipeline(store=store, policy=policy)
    return CombinedPipelineStats(image=image, video=video, client_ads_synced=synced)
