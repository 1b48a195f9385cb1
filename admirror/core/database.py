"""
Database client and utilities
"""

import hashlib
from typing import Dict, Optional

from supabase import create_client, Client
from .config import Config


_supabase_clients: Dict[str, Client] = {}


def _fingerprint(url: str, key: str) -> str:
    return hashlib.sha256(f"{url}\n{key}".encode("utf-8")).hexdigest()


def get_supabase_client(url: Optional[str] = None, key: Optional[str] = None) -> Client:
    """
    Get or create a Supabase client for a set of credentials.

    Clients are cached per credential fingerprint, so callers working with
    different projects each get their own instance.

    Args:
        url: Supabase project URL (defaults to Config.SUPABASE_URL)
        key: Service key (defaults to Config.SUPABASE_SERVICE_KEY)

    Returns:
        Supabase client instance
    """
    if url is None and key is None:
        Config.validate()

    url = url or Config.SUPABASE_URL
    key = key or Config.SUPABASE_SERVICE_KEY
    if not url or not key:
        raise ValueError("Supabase URL and service key are required")

    fingerprint = _fingerprint(url, key)
    client = _supabase_clients.get(fingerprint)
    if client is None:
        client = create_client(url, key)
        _supabase_clients[fingerprint] = client

    return client


def reset_supabase_client():
    """Reset cached Supabase clients (useful for testing)"""
    _supabase_clients.clear()
