"""
Raw feed item to article record conversion.

Resolves identity hashes, publish time, TTL, thumbnail and author for an
upstream feed item before it is written to the article store.
"""

import re
import html
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from email.utils import parsedate_to_datetime
from typing import List, Dict, Any, Optional, Tuple

from .identity import hash_url, hash_title

logger = logging.getLogger(__name__)

DEFAULT_AUTHOR = "PR Newswire"
DEFAULT_TTL_DAYS = 30
AD_PLACEHOLDER = '/ad_placeholder'

_IMG_SRC_RE = re.compile(r'<img[^>]+src=["\']([^"\']+)["\']', re.IGNORECASE)
_IMAGE_URL_RE = re.compile(r'https?://[^\s<>"\']+\.(jpg|jpeg|png|gif|webp)', re.IGNORECASE)


@dataclass
class RawArticleItem:
    """Article item as delivered by the upstream feed."""
    title: str
    link: str
    source: str = ""
    category: str = ""
    id: str = ""
    published: str = ""
    published_iso: str = ""
    summary: str = ""
    content_html: Optional[str] = None
    authors: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RawArticleItem':
        """Build an item from a feed JSON object, ignoring unknown fields."""
        return cls(
            title=data.get('title') or '',
            link=data.get('link') or '',
            source=data.get('source') or '',
            category=data.get('category') or '',
            id=str(data.get('id') or ''),
            published=data.get('published') or '',
            published_iso=data.get('published_iso') or '',
            summary=data.get('summary') or '',
            content_html=data.get('content_html'),
            authors=list(data.get('authors') or []),
        )


def extract_thumbnail(html_text: str) -> str:
    """
    Extract a thumbnail URL from an HTML fragment.

    The first <img src> wins unless it is an ad placeholder; otherwise the
    first bare image URL in the text is used.
    """
    if not html_text:
        return ''

    img_match = _IMG_SRC_RE.search(html_text)
    if img_match:
        url = img_match.group(1)
        if AD_PLACEHOLDER not in url:
            return url

    for url_match in _IMAGE_URL_RE.finditer(html_text):
        if AD_PLACEHOLDER not in url_match.group(0):
            return url_match.group(0)
    return ''


def parse_publish_time(value: str, now: datetime) -> Tuple[datetime, bool]:
    """
    Parse an ISO-8601 or RFC-2822 timestamp.

    Args:
        value: Timestamp string
        now: Fallback time

    Returns:
        (datetime in UTC, parsed_ok)
    """
    if not value:
        return now, False

    text = value.strip()
    parsed = None

    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            parsed = None

    if parsed is None:
        return now, False

    # Naive timestamps are treated as UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc), True


def process_article(
    item: RawArticleItem,
    source_key: str,
    ttl_days: int = DEFAULT_TTL_DAYS,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Convert a raw feed item into an article store record.

    Args:
        item: Upstream item
        source_key: Pointer to the feed object the item came from
        ttl_days: Days until the store may reclaim the record
        now: Current time (injectable for tests)

    Returns:
        Article record dictionary keyed by url_hash
    """
    now = now or datetime.now(timezone.utc)
    now_iso = now.isoformat()

    raw_pub_date = item.published_iso or item.published
    pub_time, parsed_ok = parse_publish_time(raw_pub_date, now)
    if raw_pub_date and not parsed_ok:
        logger.warning(f"Unparseable publish time '{raw_pub_date}' for {item.link}, using now")

    decoded_title = html.unescape(item.title or '')
    content = item.summary or item.content_html or ''

    return {
        'url_hash': hash_url(item.link),
        'title_hash': hash_title(decoded_title),
        'url': item.link,
        'title': decoded_title,
        'content': content,
        'thumbnail': extract_thumbnail(content),
        'pub_date': pub_time.isoformat(),
        'pub_date_epoch': int(pub_time.timestamp()),
        'author': item.authors[0] if item.authors else DEFAULT_AUTHOR,
        'category': item.category,
        'source_key': source_key,
        'created_at': now_iso,
        'updated_at': now_iso,
        'ttl': int((now + timedelta(days=ttl_days)).timestamp()),
    }
