"""Cache key builders shared by cache population and invalidation."""

from datetime import datetime, timezone
from typing import Optional

from ..ingestion.identity import hash_url

META_LAST_UPDATED = 'discover:meta:last_updated'
ALL_TOPICS = 'all'


def today_utc() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%d')


def discover_list_key(topic: str, date: Optional[str] = None) -> str:
    """Key for a topic listing, e.g. discover:finance:2024-05-01."""
    return f"discover:{topic}:{date or today_utc()}"


def article_detail_key(url: str) -> str:
    """Key for an article detail view: first 16 hex chars of the URL identity hash."""
    return f"article:{hash_url(url)[:16]}"
