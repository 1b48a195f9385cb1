"""
AdStore - persistence collaborator for the classification and tagging jobs.

Wraps every table the batch jobs touch (ads, competitors, track_change_log,
creative_tags, video_tags, the two cost ledgers, client_brands, client_ads
and the analysis snapshot tables). Jobs receive an AdStore through their constructor
instead of reaching for a global client.

Read methods let query errors propagate; each job decides what a failed
query means for its run. Cost-ledger writes never raise.

Usage:
    from admirror.core.database import get_supabase_client
    from admirror.services.ad_store import AdStore

    store = AdStore(get_supabase_client())
    ads = store.fetch_untagged_ads(limit=200, max_retries=3)
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from supabase import Client

from .helpers import utc_now
from .models import TaggingCostEntry, TrackChangeLogEntry
from .tagging.taxonomy import DIMENSION_KEYS
from .tagging.video_taxonomy import VIDEO_DIMENSION_KEYS

logger = logging.getLogger(__name__)

# PostgREST caps un-ranged selects at 1000 rows
PAGE_SIZE = 1000

CLAIM_COLUMNS = {
    "image": "tagging_claimed_at",
    "video": "video_tagging_claimed_at",
}


class AdStore:
    """Supabase-backed reads and writes for ads and competitors."""

    def __init__(self, supabase_client: Client):
        """
        Initialize AdStore.

        Args:
            supabase_client: Supabase client instance
        """
        self.supabase = supabase_client

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fetch_all(self, build_query: Callable[[], Any]) -> List[Dict]:
        """Page through a select until a short page comes back."""
        rows: List[Dict] = []
        offset = 0
        while True:
            result = build_query().range(offset, offset + PAGE_SIZE - 1).execute()
            page = result.data or []
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                return rows
            offset += PAGE_SIZE

    # ------------------------------------------------------------------
    # Competitors / classification
    # ------------------------------------------------------------------

    def fetch_competitors(self) -> List[Dict]:
        return self._fetch_all(
            lambda: self.supabase.table("competitors").select("id, name, track").order("id")
        )

    def fetch_ads_launched_since(self, since: date) -> List[Dict]:
        return self._fetch_all(
            lambda: self.supabase.table("ads").select(
                "id, competitor_id, launch_date, days_active, variation_count, is_active"
            ).gte("launch_date", since.isoformat()).order("id")
        )

    def fetch_ads_for_scoring(self) -> List[Dict]:
        return self._fetch_all(
            lambda: self.supabase.table("ads").select(
                "id, competitor_id, days_active, variation_count, is_active, launch_date"
            ).order("id")
        )

    def update_competitor(self, competitor_id: str, fields: Dict[str, Any]) -> None:
        self.supabase.table("competitors").update(fields).eq("id", competitor_id).execute()

    def insert_track_change(self, entry: TrackChangeLogEntry) -> None:
        row = entry.model_dump(mode="json", exclude_none=True)
        # Nullable columns are written explicitly
        row["previous_track"] = entry.previous_track.value if entry.previous_track else None
        row["survival_rate"] = entry.survival_rate
        self.supabase.table("track_change_log").insert(row).execute()

    def update_ad(self, ad_id: str, fields: Dict[str, Any]) -> None:
        self.supabase.table("ads").update(fields).eq("id", ad_id).execute()

    async def update_ads_concurrently(
        self,
        updates: Sequence[Dict[str, Any]],
        batch_size: int = 100,
    ) -> int:
        """
        Apply per-ad updates, running each batch's writes concurrently.

        Args:
            updates: Dicts with an ``id`` key plus the columns to set
            batch_size: Writes issued together before waiting

        Returns:
            Number of updates that were written. Failed writes are logged
            and left out of the count.
        """
        written = 0
        for i in range(0, len(updates), batch_size):
            batch = updates[i:i + batch_size]
            outcomes = await asyncio.gather(*(
                asyncio.to_thread(
                    self.update_ad,
                    u["id"],
                    {k: v for k, v in u.items() if k != "id"},
                )
                for u in batch
            ), return_exceptions=True)
            for update, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"Failed to update ad {update['id']}: {outcome}")
                else:
                    written += 1
        return written

    # ------------------------------------------------------------------
    # Image tagging
    # ------------------------------------------------------------------

    def fetch_untagged_ads(self, limit: int, max_retries: int) -> List[Dict]:
        result = self.supabase.table("ads").select(
            "id, thumbnail_url, image_hash, tagging_retry_count"
        ).in_(
            "tagging_status", ["pending", "failed"]
        ).or_(
            "days_active.gte.2,is_client_ad.eq.true"
        ).not_.is_(
            "thumbnail_url", "null"
        ).lt(
            "tagging_retry_count", max_retries
        ).order("days_active", desc=False).limit(limit).execute()
        return result.data or []

    def fetch_tag_hash_index(self) -> Dict[str, Dict[str, Any]]:
        """Map image_hash -> {"ad_id", "tags"} for already-tagged ads."""
        tag_rows = self._fetch_all(
            lambda: self.supabase.table("creative_tags").select(
                "ad_id, " + ", ".join(DIMENSION_KEYS)
            ).order("ad_id")
        )
        tagged_ads = self._fetch_all(
            lambda: self.supabase.table("ads").select("id, image_hash").not_.is_(
                "image_hash", "null"
            ).eq("tagging_status", "tagged").order("id")
        )

        tags_by_ad = {row["ad_id"]: row for row in tag_rows}
        index: Dict[str, Dict[str, Any]] = {}
        for ad in tagged_ads:
            row = tags_by_ad.get(ad["id"])
            if row and ad.get("image_hash"):
                index[ad["image_hash"]] = {
                    "ad_id": ad["id"],
                    "tags": {key: row.get(key) or "" for key in DIMENSION_KEYS},
                }
        return index

    def insert_creative_tags(
        self,
        ad_id: str,
        tags: Dict[str, str],
        model_version: str,
        source: str,
        source_ad_id: Optional[str] = None,
    ) -> None:
        row: Dict[str, Any] = {"ad_id": ad_id, **tags, "model_version": model_version, "source": source}
        if source_ad_id:
            row["source_ad_id"] = source_ad_id
        self.supabase.table("creative_tags").insert(row).execute()

    # ------------------------------------------------------------------
    # Video tagging
    # ------------------------------------------------------------------

    def fetch_untagged_video_ads(self, limit: int, max_retries: int) -> List[Dict]:
        result = self.supabase.table("ads").select(
            "id, video_url, video_duration, video_tagging_retry_count"
        ).eq(
            "is_video", True
        ).in_(
            "video_tagging_status", ["pending", "failed"]
        ).not_.is_(
            "video_url", "null"
        ).lt(
            "video_tagging_retry_count", max_retries
        ).or_(
            "days_active.gte.2,is_client_ad.eq.true"
        ).order("days_active", desc=True).limit(limit).execute()
        return result.data or []

    def insert_video_tags(self, row: Dict[str, Any]) -> None:
        missing = [key for key in VIDEO_DIMENSION_KEYS if key not in row]
        if missing:
            raise ValueError(f"video_tags row missing dimensions: {', '.join(missing)}")
        self.supabase.table("video_tags").insert(row).execute()

    # ------------------------------------------------------------------
    # Leases and cost ledger
    # ------------------------------------------------------------------

    def claim_ad(self, ad_id: str, kind: str, lease_seconds: int) -> bool:
        """
        Take a processing lease on an ad for one tagging kind.

        The update only matches when the ad is unclaimed or its previous lease
        has expired, so two overlapping runs cannot both process the same ad.

        Args:
            ad_id: Ad ID
            kind: "image" or "video"
            lease_seconds: Lease length

        Returns:
            True if this caller now holds the lease
        """
        column = CLAIM_COLUMNS[kind]
        now = utc_now()
        cutoff = (now - timedelta(seconds=lease_seconds)).isoformat()
        result = self.supabase.table("ads").update(
            {column: now.isoformat()}
        ).eq(
            "id", ad_id
        ).or_(
            f"{column}.is.null,{column}.lt.{cutoff}"
        ).execute()
        return bool(result.data)

    def insert_cost_log(self, entry: TaggingCostEntry, table: str = "tagging_cost_log") -> None:
        """Record a cost-ledger row. Never raises."""
        try:
            self.supabase.table(table).insert(entry.model_dump(exclude_none=True)).execute()
        except Exception as e:
            logger.warning(f"Failed to record cost for ad {entry.ad_id}: {e}")

    # ------------------------------------------------------------------
    # Convergence analysis
    # ------------------------------------------------------------------

    def fetch_client_brands(self) -> List[Dict]:
        result = self.supabase.table("client_brands").select("id, name").execute()
        return result.data or []

    def fetch_brand(self, brand_id: str) -> Optional[Dict]:
        result = self.supabase.table("client_brands").select("id, name, user_id").eq("id", brand_id).limit(1).execute()
        return result.data[0] if result.data else None

    def fetch_brand_competitors(self, brand_id: str) -> List[Dict]:
        result = self.supabase.table("competitors").select("id, name, track").eq("brand_id", brand_id).execute()
        return result.data or []

    def fetch_tagged_ads(self, competitor_ids: Iterable[str], since: date) -> List[Dict]:
        """
        Fetch scored ads for a set of competitors with their image and video tags.

        Ads without image tags are dropped. Each row gets ``tags`` and
        ``video_tags`` dicts keyed by dimension.
        """
        competitor_ids = list(competitor_ids)
        if not competitor_ids:
            return []

        ads = self._fetch_all(
            lambda: self.supabase.table("ads").select(
                "id, competitor_id, signal_strength, competitor_track, launch_date, is_video"
            ).in_(
                "competitor_id", competitor_ids
            ).gte(
                "launch_date", since.isoformat()
            ).not_.is_("signal_strength", "null").order("id")
        )
        if not ads:
            return []

        ad_ids = [ad["id"] for ad in ads]
        tags_by_ad = self._tags_by_ad("creative_tags", DIMENSION_KEYS, ad_ids)

        video_ids = [ad["id"] for ad in ads if ad.get("is_video")]
        video_tags_by_ad = self._tags_by_ad("video_tags", VIDEO_DIMENSION_KEYS, video_ids) if video_ids else {}

        tagged = []
        for ad in ads:
            if ad["id"] not in tags_by_ad:
                continue
            tagged.append({
                **ad,
                "signal_strength": ad.get("signal_strength") or 1,
                "tags": tags_by_ad[ad["id"]],
                "video_tags": video_tags_by_ad.get(ad["id"], {}),
            })
        return tagged

    def _tags_by_ad(self, table: str, keys: Sequence[str], ad_ids: List[str]) -> Dict[str, Dict]:
        tags: Dict[str, Dict] = {}
        for i in range(0, len(ad_ids), PAGE_SIZE):
            chunk = ad_ids[i:i + PAGE_SIZE]
            result = self.supabase.table(table).select("ad_id, " + ", ".join(keys)).in_("ad_id", chunk).execute()
            for row in result.data or []:
                tags[row["ad_id"]] = {key: row.get(key) for key in keys}
        return tags

    def fetch_previous_strong_convergences(self, brand_id: str, before: date) -> List[Dict]:
        result = self.supabase.table("convergence_snapshots").select(
            "dimension, value"
        ).eq(
            "brand_id", brand_id
        ).eq(
            "classification", "STRONG_CONVERGENCE"
        ).lt("snapshot_date", before.isoformat()).execute()
        return result.data or []

    def upsert_convergence_snapshots(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        self.supabase.table("convergence_snapshots").upsert(
            rows, on_conflict="brand_id,snapshot_date,dimension,value"
        ).execute()

    # ------------------------------------------------------------------
    # Client ad sync
    # ------------------------------------------------------------------

    def fetch_active_client_ads(self, brand_id: str) -> List[Dict]:
        result = self.supabase.table("client_ads").select(
            "meta_ad_id, thumbnail_url, image_url, created_at"
        ).eq(
            "client_brand_id", brand_id
        ).eq("effective_status", "ACTIVE").execute()
        return result.data or []

    def fetch_existing_ad_ids(self, ad_ids: Sequence[str]) -> Set[str]:
        existing: Set[str] = set()
        ad_ids = list(ad_ids)
        for i in range(0, len(ad_ids), PAGE_SIZE):
            result = self.supabase.table("ads").select("id").in_("id", ad_ids[i:i + PAGE_SIZE]).execute()
            existing.update(row["id"] for row in result.data or [])
        return existing

    def insert_ads(self, rows: List[Dict[str, Any]]) -> None:
        if rows:
            self.supabase.table("ads").insert(rows).execute()

    # ------------------------------------------------------------------
    # Creative velocity and gap analysis
    # ------------------------------------------------------------------

    def upsert_velocity_snapshots(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        self.supabase.table("velocity_snapshots").upsert(
            rows, on_conflict="brand_id,snapshot_date,track_filter,dimension,value"
        ).execute()

    def fetch_client_tagged_ads(self, brand_id: str) -> List[Dict]:
        """Tagged client ads of a brand with ``tags`` and ``video_tags`` attached."""
        ads = self._fetch_all(
            lambda: self.supabase.table("ads").select("id, is_video").eq(
                "client_brand_id", brand_id
            ).eq(
                "is_client_ad", True
            ).eq("tagging_status", "tagged").order("id")
        )
        if not ads:
            return []

        tags_by_ad = self._tags_by_ad("creative_tags", DIMENSION_KEYS, [ad["id"] for ad in ads])
        video_ids = [ad["id"] for ad in ads if ad.get("is_video")]
        video_tags_by_ad = self._tags_by_ad("video_tags", VIDEO_DIMENSION_KEYS, video_ids) if video_ids else {}

        return [
            {
                **ad,
                "tags": tags_by_ad[ad["id"]],
                "video_tags": video_tags_by_ad.get(ad["id"], {}),
            }
            for ad in ads
            if ad["id"] in tags_by_ad
        ]

    def fetch_latest_convergence_scores(self, brand_id: str, limit: int = 500) -> Dict[str, Dict[str, Any]]:
        """Map "dimension:value" -> {"score", "classification"} from the newest snapshots."""
        result = self.supabase.table("convergence_snapshots").select(
            "dimension, value, adjusted_score, classification"
        ).eq(
            "brand_id", brand_id
        ).order("snapshot_date", desc=True).limit(limit).execute()

        scores: Dict[str, Dict[str, Any]] = {}
        for row in result.data or []:
            key = f"{row['dimension']}:{row['value']}"
            if key not in scores:
                scores[key] = {
                    "score": float(row.get("adjusted_score") or 0),
                    "classification": row.get("classification") or "NO_CONVERGENCE",
                }
        return scores

    def upsert_gap_snapshot(self, row: Dict[str, Any]) -> None:
        self.supabase.table("gap_analysis_snapshots").upsert(
            row, on_conflict="brand_id,snapshot_date"
        ).execute()

    # ------------------------------------------------------------------
    # Ad lifecycle
    # ------------------------------------------------------------------

    def fetch_lifecycle_ads(self, competitor_ids: Iterable[str], since: date) -> List[Dict]:
        """Ads of the given competitors launched since ``since``, tagged or not."""
        competitor_ids = list(competitor_ids)
        if not competitor_ids:
            return []

        ads = self._fetch_all(
            lambda: self.supabase.table("ads").select(
                "id, competitor_id, competitor_name, launch_date, days_active, is_active, "
                "is_video, cohort_week, is_breakout, is_cash_cow"
            ).in_(
                "competitor_id", competitor_ids
            ).gte("launch_date", since.isoformat()).order("id")
        )
        if not ads:
            return []

        tags_by_ad = self._tags_by_ad("creative_tags", DIMENSION_KEYS, [ad["id"] for ad in ads])
        video_ids = [ad["id"] for ad in ads if ad.get("is_video")]
        video_tags_by_ad = self._tags_by_ad("video_tags", VIDEO_DIMENSION_KEYS, video_ids) if video_ids else {}

        return [
            {
                **ad,
                "tags": tags_by_ad.get(ad["id"], {}),
                "video_tags": video_tags_by_ad.get(ad["id"], {}),
            }
            for ad in ads
        ]

    def fetch_cash_cow_candidates(
        self,
        competitor_ids: Iterable[str],
        min_days_active: int,
        trait_keys: Sequence[str],
    ) -> List[Dict]:
        """Active breakout ads that have not yet been flagged as cash cows."""
        competitor_ids = list(competitor_ids)
        if not competitor_ids:
            return []

        ads = self._fetch_all(
            lambda: self.supabase.table("ads").select(
                "id, competitor_name, days_active, breakout_detected_at"
            ).in_(
                "competitor_id", competitor_ids
            ).eq(
                "is_breakout", True
            ).eq(
                "is_cash_cow", False
            ).eq(
                "is_active", True
            ).gte("days_active", min_days_active).order("id")
        )
        if not ads:
            return []

        tags_by_ad = self._tags_by_ad("creative_tags", trait_keys, [ad["id"] for ad in ads])
        return [{**ad, "tags": tags_by_ad.get(ad["id"], {})} for ad in ads]

    def upsert_breakout_event(self, row: Dict[str, Any]) -> None:
        self.supabase.table("breakout_events").upsert(
            row, on_conflict="brand_id,competitor_id,cohort_start,cohort_end"
        ).execute()

    def flag_breakout_ads(self, ad_ids: List[str], detected_at: str) -> None:
        if not ad_ids:
            return
        self.supabase.table("ads").update(
            {"is_breakout": True, "breakout_detected_at": detected_at}
        ).in_(
            "id", ad_ids
        ).eq("is_breakout", False).execute()

    def flag_cash_cow(self, ad_id: str, detected_at: str) -> None:
        self.update_ad(ad_id, {"is_cash_cow": True, "cash_cow_detected_at": detected_at})

    def upsert_lifecycle_snapshot(self, row: Dict[str, Any]) -> None:
        self.supabase.table("lifecycle_analysis_snapshots").upsert(
            row, on_conflict="brand_id,snapshot_date"
        ).execute()
