"""
Client ad sync - puts a brand's own live ads into the tagging queue.

Active rows of ``client_ads`` (already pulled from the ad platform by the
account sync) are copied into ``ads`` as ``client-<meta_ad_id>`` with
``is_client_ad`` set and ``tagging_status='pending'``. The image tagging job
then tags them like any competitor ad, which is what the gap analysis
compares against.
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional

from ..helpers import utc_now
from ..models import ClientAdSyncResult

logger = logging.getLogger(__name__)

CLIENT_AD_PREFIX = "client-"
SECONDS_PER_DAY = 24 * 60 * 60


def client_ad_id(meta_ad_id: str) -> str:
    return f"{CLIENT_AD_PREFIX}{meta_ad_id}"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def build_client_ad_row(client_ad: Dict[str, Any], brand: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Shape a ``client_ads`` row as an ``ads`` row ready for tagging."""
    created = _parse_timestamp(client_ad.get("created_at")) or now
    if created.tzinfo is None:
        created = created.replace(tzinfo=now.tzinfo)
    days_active = max(1, math.floor((now - created).total_seconds() / SECONDS_PER_DAY))

    return {
        "id": client_ad_id(client_ad["meta_ad_id"]),
        "user_id": brand.get("user_id"),
        "client_brand_id": brand["id"],
        "competitor_id": None,
        "competitor_name": None,
        "competitor_logo": "",
        "is_client_ad": True,
        "thumbnail_url": client_ad.get("thumbnail_url") or client_ad.get("image_url") or None,
        "tagging_status": "pending",
        "format": "image",
        "is_video": False,
        "launch_date": created.date().isoformat(),
        "days_active": days_active,
        "last_seen_at": now.isoformat(),
    }


class ClientAdSync:
    """Copies active client ads into ``ads`` once per Meta ad."""

    def __init__(self, store, now: Optional[datetime] = None):
        self.store = store
        self._now = now

    def sync_brand(self, brand_id: str) -> ClientAdSyncResult:
        """
        Sync one brand's active client ads.

        A failed bulk insert falls back to one insert per ad so a single bad
        row does not block the rest.
        """
        brand = self.store.fetch_brand(brand_id)
        if not brand:
            return ClientAdSyncResult()

        client_ads = self.store.fetch_active_client_ads(brand_id)
        if not client_ads:
            return ClientAdSyncResult()

        existing = self.store.fetch_existing_ad_ids([client_ad_id(ca["meta_ad_id"]) for ca in client_ads])
        now = self._now or utc_now()
        rows = [
            build_client_ad_row(ca, brand, now)
            for ca in client_ads
            if client_ad_id(ca["meta_ad_id"]) not in existing
        ]
        result = ClientAdSyncResult(already_synced=len(existing))
        if not rows:
            return result

        try:
            self.store.insert_ads(rows)
            result.synced = len(rows)
        except Exception as e:
            logger.error(f"Bulk insert of client ads failed for brand {brand_id}, inserting one by one: {e}")
            for row in rows:
                try:
                    self.store.insert_ads([row])
                    result.synced += 1
                except Exception as row_error:
                    logger.error(f"Skipping client ad {row['id']}: {row_error}")
        return result

    def sync_all(self) -> int:
        """Sync every client brand; returns the number of newly queued ads."""
        try:
            brands = self.store.fetch_client_brands()
        except Exception as e:
            logger.error(f"Client ad sync skipped, brand query failed: {e}")
            return 0

        total = 0
        for brand in brands:
            try:
                total += self.sync_brand(brand["id"]).synced
            except Exception as e:
                logger.error(f"Failed to sync client ads for brand {brand['id']}: {e}")

        logger.info(f"Client ad sync: {total} new ads across {len(brands)} brands")
        return total
