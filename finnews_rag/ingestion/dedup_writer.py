"""
Dedup Writer

Writes upstream feed items into the article store, enforcing at most one
record per title identity:
- Title hash already present in title_hash-index => skipped_duplicate
- Otherwise put keyed by url_hash (the same URL overwrites)

Per-record failures are isolated; after a batch, cached listings for every
category that received an insert are invalidated.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Optional, Any, Tuple, Union

from .article_processor import RawArticleItem, process_article, DEFAULT_TTL_DAYS
from ..storage.article_store import TITLE_HASH_INDEX

logger = logging.getLogger(__name__)

INSERTED = 'inserted'
SKIPPED_DUPLICATE = 'skipped_duplicate'
ERROR = 'error'


@dataclass
class WriteResult:
    """Outcome of writing one feed item."""
    status: str
    url_hash: Optional[str] = None
    title: Optional[str] = None
    category: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class BatchWriteSummary:
    """Aggregate outcome of a batch write."""
    results: List[WriteResult] = field(default_factory=list)
    invalidated_categories: List[str] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return sum(1 for r in self.results if r.status == INSERTED)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.status == SKIPPED_DUPLICATE)

    @property
    def errors(self) -> int:
        return sum(1 for r in self.results if r.status == ERROR)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': len(self.results),
            'inserted': self.inserted,
            'skipped_duplicate': self.skipped,
            'errors': self.errors,
            'invalidated_categories': self.invalidated_categories,
            'results': [r.to_dict() for r in self.results],
        }


class DedupWriter:
    """Idempotent writer from feed items to the article store."""

    def __init__(
        self,
        store,
        cache=None,
        ttl_days: int = DEFAULT_TTL_DAYS,
        items_prefix: str = "items/"
    ):
        """
        Args:
            store: ArticleStore
            cache: CacheService used to invalidate listings (optional)
            ttl_days: Record lifetime
            items_prefix: Feed objects outside this prefix are ignored
        """
        self.store = store
        self.cache = cache
        self.ttl_days = ttl_days
        self.items_prefix = items_prefix

    def is_duplicate(self, title_hash: str) -> bool:
        return len(self.store.query_index(TITLE_HASH_INDEX, title_hash, limit=1)) > 0

    def write(self, item: Union[RawArticleItem, Dict[str, Any]], source_key: str = "") -> WriteResult:
        """
        Write one feed item.

        Args:
            item: RawArticleItem or its dictionary form
            source_key: Pointer to the originating feed object

        Returns:
            WriteResult with status inserted, skipped_duplicate or error
        """
        try:
            if isinstance(item, dict):
                item = RawArticleItem.from_dict(item)

            if not item.link:
                raise ValueError("Feed item has no link")

            record = process_article(item, source_key, ttl_days=self.ttl_days)

            if self.is_duplicate(record['title_hash']):
                logger.info(f"Skipped duplicate: {record['title']}")
                return WriteResult(
                    status=SKIPPED_DUPLICATE,
                    url_hash=record['url_hash'],
                    title=record['title'],
                    category=record['category'],
                    reason='Title already ingested',
                )

            self.store.put(record)
            logger.info(f"Inserted: {record['title']}")
            return WriteResult(
                status=INSERTED,
                url_hash=record['url_hash'],
                title=record['title'],
                category=record['category'],
            )

        except Exception as e:
            link = item.get('link') if isinstance(item, dict) else getattr(item, 'link', None)
            logger.error(f"Error writing article {link or source_key}: {e}")
            return WriteResult(status=ERROR, reason=str(e))

    def write_batch(
        self,
        items: List[Union[RawArticleItem, Dict[str, Any], Tuple[Any, str]]]
    ) -> BatchWriteSummary:
        """
        Write a batch of items, then invalidate affected topic listings.

        Items may be (item, source_key) tuples.
        """
        summary = BatchWriteSummary()
        categories = []

        for entry in items:
            if isinstance(entry, tuple):
                item, source_key = entry
            else:
                item, source_key = entry, ""

            result = self.write(item, source_key)
            summary.results.append(result)
            if result.status == INSERTED and result.category and result.category not in categories:
                categories.append(result.category)

        for category in categories:
            self._invalidate(category)
        summary.invalidated_categories = categories

        logger.info(
            f"Batch complete: {summary.inserted} inserted, "
            f"{summary.skipped} duplicates, {summary.errors} errors. "
            f"Categories updated: {', '.join(categories) or 'none'}"
        )
        return summary

    def _invalidate(self, category: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.invalidate_topic(category)
        except Exception as e:
            logger.error(f"Cache invalidation error for {category}: {e}")

    def process_object(self, key: str, body: str) -> Optional[WriteResult]:
        """
        Ingest one feed object (a JSON document holding a single item).

        Keys that are not .json or lie outside the items prefix are skipped.

        Returns:
            WriteResult, or None when the object was skipped
        """
        if not key.endswith('.json'):
            logger.info(f"Skipping non-JSON file: {key}")
            return None

        if not key.startswith(self.items_prefix):
            logger.info(f"Skipping file outside {self.items_prefix}: {key}")
            return None

        if not body or not body.strip():
            logger.warning(f"Empty content for {key}")
            return None

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in {key}: {e}")
            return WriteResult(status=ERROR, reason=f"Invalid JSON: {e}")

        return self.write(data, key)
