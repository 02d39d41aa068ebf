"""
Article Store

Durable key-value store for article records, keyed by url_hash, with:
- Secondary indexes (title_hash-index, category-pubDateEpoch-index)
- Chunked batch reads and paginated scans
- TTL reclamation
- A change feed of INSERT/MODIFY/REMOVE records for the vector ingestor
- Atomic JSON persistence
"""

import os
import json
import time
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any, Iterable

logger = logging.getLogger(__name__)


PRIMARY_KEY = 'url_hash'
TITLE_HASH_INDEX = 'title_hash-index'
CATEGORY_DATE_INDEX = 'category-pubDateEpoch-index'

# index name -> (partition attribute, sort attribute)
INDEXES = {
    TITLE_HASH_INDEX: ('title_hash', None),
    CATEGORY_DATE_INDEX: ('category', 'pub_date_epoch'),
}

INSERT = 'INSERT'
MODIFY = 'MODIFY'
REMOVE = 'REMOVE'


@dataclass
class ChangeRecord:
    """A single change-feed notification."""
    event_name: str
    keys: Dict[str, str]
    new_image: Optional[Dict[str, Any]] = None
    old_image: Optional[Dict[str, Any]] = None
    sequence_number: int = 0


@dataclass
class ScanPage:
    """One page of a paginated scan."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    last_evaluated_key: Optional[str] = None


class ChangeFeed:
    """Ordered, in-process change stream consumed by polling."""

    def __init__(self):
        self._records = deque()
        self._sequence = 0
        self._lock = threading.Lock()

    def publish(self, event_name: str, key: str, new_image=None, old_image=None) -> None:
        with self._lock:
            self._sequence += 1
            self._records.append(ChangeRecord(
                event_name=event_name,
                keys={PRIMARY_KEY: key},
                new_image=dict(new_image) if new_image is not None else None,
                old_image=dict(old_image) if old_image is not None else None,
                sequence_number=self._sequence,
            ))

    def poll(self, max_records: int = 100) -> List[ChangeRecord]:
        """
        Remove and return up to max_records pending records, oldest first.
        """
        with self._lock:
            batch = []
            while self._records and len(batch) < max_records:
                batch.append(self._records.popleft())
            return batch

    def __len__(self) -> int:
        return len(self._records)


class ArticleStore:
    """
    Key-value article store with secondary indexes and a change feed.

    Every operation holds an internal lock, so individual reads and writes
    are atomic per key when the store is shared between threads.
    """

    BATCH_GET_LIMIT = 100

    def __init__(
        self,
        path: Optional[str] = None,
        change_feed: Optional[ChangeFeed] = None,
        autoload: bool = True
    ):
        """
        Initialize the store.

        Args:
            path: JSON file for persistence (None keeps the store in memory)
            change_feed: Feed receiving change records (created if omitted)
            autoload: Load existing records from path on startup
        """
        self.path = path
        self.change_feed = change_feed or ChangeFeed()
        self._items: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

        if self.path and autoload and os.path.exists(self.path):
            self.load()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get(key)
            return dict(item) if item is not None else None

    def put(self, record: Dict[str, Any]) -> None:
        """
        Insert or overwrite a record keyed by its url_hash.

        Raises:
            ValueError: If the record has no url_hash
        """
        key = record.get(PRIMARY_KEY)
        if not key:
            raise ValueError(f"Record is missing primary key '{PRIMARY_KEY}'")

        with self._lock:
            old = self._items.get(key)
            self._items[key] = dict(record)
            self.change_feed.publish(
                MODIFY if old is not None else INSERT,
                key,
                new_image=record,
                old_image=old,
            )

    def delete(self, key: str) -> bool:
        with self._lock:
            old = self._items.pop(key, None)
            if old is None:
                return False
            self.change_feed.publish(REMOVE, key, old_image=old)
            return True

    def query_index(
        self,
        index_name: str,
        value: Any,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Query a secondary index by its partition value.

        Results on an index with a sort attribute come back newest first.

        Args:
            index_name: One of INDEXES
            value: Partition attribute value
            limit: Maximum number of records

        Returns:
            Matching records
        """
        if index_name not in INDEXES:
            raise ValueError(f"Unknown index: {index_name}")

        partition_attr, sort_attr = INDEXES[index_name]

        with self._lock:
            matches = [
                dict(item) for item in self._items.values()
                if item.get(partition_attr) == value
            ]

        if sort_attr:
            matches.sort(key=lambda item: item.get(sort_attr) or 0, reverse=True)

        if limit is not None:
            matches = matches[:limit]
        return matches

    def batch_get(self, keys: List[str]) -> List[Dict[str, Any]]:
        """
        Fetch several records at once; missing keys are simply absent.

        Raises:
            ValueError: If more than BATCH_GET_LIMIT keys are requested
        """
        if len(keys) > self.BATCH_GET_LIMIT:
            raise ValueError(
                f"batch_get accepts at most {self.BATCH_GET_LIMIT} keys, got {len(keys)}"
            )

        with self._lock:
            return [dict(self._items[k]) for k in dict.fromkeys(keys) if k in self._items]

    def scan(
        self,
        category: Optional[str] = None,
        start_key: Optional[str] = None,
        limit: int = 100
    ) -> ScanPage:
        """
        Scan records in key order, one page at a time.

        Args:
            category: Only return records of this category
            start_key: Exclusive key to resume after (last_evaluated_key)
            limit: Page size (keys examined, before filtering)

        Returns:
            ScanPage whose last_evaluated_key is None on the final page
        """
        with self._lock:
            keys = sorted(self._items)
            if start_key is not None:
                keys = [k for k in keys if k > start_key]

            page_keys = keys[:limit]
            items = [
                dict(self._items[k]) for k in page_keys
                if category is None or self._items[k].get('category') == category
            ]

        last_key = page_keys[-1] if len(keys) > limit else None
        return ScanPage(items=items, last_evaluated_key=last_key)

    def iter_all(self, category: Optional[str] = None, page_size: int = 100) -> Iterable[Dict[str, Any]]:
        start_key = None
        while True:
            page = self.scan(category=category, start_key=start_key, limit=page_size)
            yield from page.items
            if page.last_evaluated_key is None:
                break
            start_key = page.last_evaluated_key

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items)

    def count(self, category: Optional[str] = None, start_key: Optional[str] = None) -> int:
        """Count records, optionally of one category and only keys after start_key."""
        with self._lock:
            if category is None and start_key is None:
                return len(self._items)
            return sum(
                1 for key, item in self._items.items()
                if (category is None or item.get('category') == category)
                and (start_key is None or key > start_key)
            )

    def purge_expired(self, now: Optional[float] = None) -> int:
        """
        Reclaim records whose ttl has elapsed.

        Each reclaimed record emits a REMOVE change record.

        Returns:
            Number of records removed
        """
        now = now if now is not None else time.time()

        with self._lock:
            expired = [
                key for key, item in self._items.items()
                if item.get('ttl') and item['ttl'] <= now
            ]
            for key in expired:
                self.delete(key)

        if expired:
            logger.info(f"Purged {len(expired)} expired articles")
        return len(expired)

    def save(self, path: Optional[str] = None) -> None:
        """Persist all records to disk with an atomic write."""
        save_path = path or self.path
        if not save_path:
            raise ValueError("No path configured for article store")

        directory = os.path.dirname(save_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        temp_path = save_path + '.tmp'
        with self._lock:
            snapshot = list(self._items.values())

        try:
            with open(temp_path, 'w', encoding='utf-8') as f:
                json.dump(snapshot, f, ensure_ascii=False)

            # Atomic rename
            os.replace(temp_path, save_path)

        except Exception:
            # Clean up temp file on error
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    def load(self, path: Optional[str] = None) -> bool:
        """
        Load records from disk, replacing the in-memory contents.

        Loading does not emit change records.

        Returns:
            True if a file was loaded
        """
        load_path = path or self.path
        if not load_path or not os.path.exists(load_path):
            return False

        with open(load_path, 'r', encoding='utf-8') as f:
            records = json.load(f)

        with self._lock:
            self._items = {r[PRIMARY_KEY]: r for r in records if r.get(PRIMARY_KEY)}

        logger.info(f"Loaded {len(self._items)} articles from {load_path}")
        return True

    def __len__(self) -> int:
        return self.count()

    def __repr__(self) -> str:
        return f"ArticleStore(articles={self.count()}, path={self.path!r})"
