"""
Backfill Reconciler

Re-derives the vector index from the article store, which is already
deduplicated, so no logical article is embedded twice:

1. Paginated scan of the store (optionally one category)
2. Per record: prepare text, skip empty, embed with a fixed delay
3. Buffer vectors and flush every batch_size with an inter-batch delay
4. Retry failed flushes with capped exponential backoff; on exhaustion the
   batch's tentative successes are moved to the error tally

Every write is a keyed upsert, so the whole run is safe to repeat.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any, Callable

from tqdm import tqdm

from .ingestion_logger import IngestionStatus, IngestionLogger, SUCCESS, ERROR, SKIPPED, utc_now_iso
from .text_processor import prepare_vector_document, build_vector_item, VectorItem, EMBEDDING_TEXT_MAX_CHARS
from ..retry import retry_with_backoff

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    minutes, remaining = divmod(seconds, 60)
    return f"{minutes}m {remaining}s" if minutes > 0 else f"{remaining}s"


@dataclass
class BackfillStats:
    """Running tallies for a backfill run."""
    total: int = 0
    scanned: int = 0
    success: int = 0
    error_count: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    last_key: Optional[str] = None
    completed: bool = False
    flush_failures: int = 0
    dry_run: bool = False

    @property
    def processed(self) -> int:
        return self.success + self.error_count + self.skipped

    @property
    def elapsed(self) -> float:
        return (self.end_time or time.time()) - self.start_time

    @property
    def throughput(self) -> float:
        """Processed records per second."""
        elapsed = self.elapsed
        return self.processed / elapsed if elapsed > 0 else 0.0

    @property
    def eta_seconds(self) -> float:
        rate = self.throughput
        remaining = max(self.total - self.processed, 0)
        return remaining / rate if rate > 0 else 0.0

    def record_error(self, url_hash: str, message: str) -> None:
        self.error_count += 1
        self.errors.append({'url_hash': url_hash, 'error': message})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'scanned': self.scanned,
            'success': self.success,
            'errors': self.error_count,
            'skipped': self.skipped,
            'duration': format_duration(self.elapsed),
            'throughput': round(self.throughput, 2),
            'last_key': self.last_key,
            'completed': self.completed,
            'flush_failures': self.flush_failures,
            'dry_run': self.dry_run,
        }


class BackfillReconciler:
    """Bulk, rate-limited, resumable vector index rebuild."""

    def __init__(
        self,
        store,
        embedder,
        vector_store,
        batch_size: int = 100,
        embedding_delay: float = 0.05,
        batch_delay: float = 2.0,
        max_flush_retries: int = 3,
        flush_base_delay: float = 2.0,
        flush_max_delay: float = 30.0,
        rate_limit_cooldown: float = 60.0,
        ingestion_logger: Optional[IngestionLogger] = None,
        max_chars: int = EMBEDDING_TEXT_MAX_CHARS,
        sleep: Callable[[float], None] = time.sleep,
        show_progress: bool = True
    ):
        """
        Args:
            store: ArticleStore to scan
            embedder: EmbeddingProvider
            vector_store: VectorStore receiving batch upserts
            batch_size: Vectors per flush
            embedding_delay: Pause after each embedding call (seconds)
            batch_delay: Pause after each successful flush (seconds)
            max_flush_retries: Attempts per flush
            flush_base_delay: Backoff after the first failed flush (seconds)
            flush_max_delay: Backoff ceiling (seconds)
            rate_limit_cooldown: Pause after a 429 from the embedder (seconds)
            ingestion_logger: Audit logger for a backfill entry (optional)
            max_chars: Embedding text character limit
            sleep: Sleep function (injectable for tests)
            show_progress: Show a tqdm progress bar
        """
        self.store = store
        self.embedder = embedder
        self.vector_store = vector_store
        self.batch_size = batch_size
        self.embedding_delay = embedding_delay
        self.batch_delay = batch_delay
        self.max_flush_retries = max_flush_retries
        self.flush_base_delay = flush_base_delay
        self.flush_max_delay = flush_max_delay
        self.rate_limit_cooldown = rate_limit_cooldown
        self.ingestion_logger = ingestion_logger
        self.max_chars = max_chars
        self.sleep = sleep
        self.show_progress = show_progress

    def run(
        self,
        category: Optional[str] = None,
        dry_run: bool = False,
        start_key: Optional[str] = None,
        page_size: int = 100
    ) -> BackfillStats:
        """
        Run the backfill.

        Args:
            category: Only backfill this category
            dry_run: Prepare and count records without embedding or writing
            start_key: Resume after this store key (a previous run's last_key)
            page_size: Store scan page size

        Returns:
            BackfillStats
        """
        stats = BackfillStats(total=self.store.count(category, start_key=start_key), dry_run=dry_run)
        statuses: Dict[str, IngestionStatus] = {}
        pending: List[VectorItem] = []
        last_scanned_key = start_key
        # Key preceding the first record of the pending batch
        batch_start_key = start_key

        logger.info(
            f"Backfill starting: {stats.total} articles"
            f"{f' in {category}' if category else ''}"
            f"{' (dry run)' if dry_run else ''}"
        )

        pbar = tqdm(total=stats.total, desc="Backfill", disable=not self.show_progress)
        try:
            scan_key = start_key
            while True:
                page = self.store.scan(category=category, start_key=scan_key, limit=page_size)

                for record in page.items:
                    stats.scanned += 1
                    previous_key = last_scanned_key
                    last_scanned_key = record.get('url_hash') or last_scanned_key
                    item = self._process_record(record, stats, statuses, dry_run)
                    if item is not None:
                        if not pending:
                            batch_start_key = previous_key
                        pending.append(item)

                    pbar.update(1)
                    pbar.set_postfix(ok=stats.success, err=stats.error_count, skip=stats.skipped)

                    if len(pending) >= self.batch_size:
                        self._flush_and_mark(pending, stats, statuses, batch_start_key, last_scanned_key)
                        pending = []

                if page.last_evaluated_key is None:
                    break
                scan_key = page.last_evaluated_key

                if not pending:
                    self._advance(stats, last_scanned_key)

            if pending:
                self._flush_and_mark(pending, stats, statuses, batch_start_key, last_scanned_key)
                pending = []

            self._advance(stats, last_scanned_key)
            stats.completed = True

        finally:
            pbar.close()
            stats.end_time = time.time()

        logger.info(
            f"Backfill complete: scanned={stats.scanned} success={stats.success} "
            f"errors={stats.error_count} skipped={stats.skipped} "
            f"duration={format_duration(stats.elapsed)} throughput={stats.throughput:.1f}/s"
        )

        if self.ingestion_logger is not None and not dry_run:
            self.ingestion_logger.log(list(statuses.values()), execution_type='backfill')

        return stats

    def _process_record(
        self,
        record: Dict[str, Any],
        stats: BackfillStats,
        statuses: Dict[str, IngestionStatus],
        dry_run: bool
    ) -> Optional[VectorItem]:
        url_hash = record.get('url_hash', 'unknown')
        start = time.time()

        def status(value: str, reason: Optional[str] = None) -> None:
            statuses[url_hash] = IngestionStatus(
                url_hash=url_hash,
                vector_key=url_hash if value == SUCCESS else None,
                status=value,
                reason=reason,
                title=record.get('title'),
                category=record.get('category'),
                url=record.get('url'),
                timestamp=utc_now_iso(),
                duration_ms=int((time.time() - start) * 1000),
            )

        try:
            document = prepare_vector_document(record, max_chars=self.max_chars)
            if document.is_empty:
                stats.skipped += 1
                status(SKIPPED, "Empty embedding text")
                return None

            if dry_run:
                stats.success += 1
                return None

            item = build_vector_item(document, self.embedder)
            stats.success += 1
            status(SUCCESS)
            self.sleep(self.embedding_delay)
            return item

        except Exception as e:
            stats.record_error(url_hash, str(e))
            status(ERROR, str(e))
            logger.warning(f"Embedding failed for {url_hash}: {e}")

            if getattr(e, 'rate_limited', False):
                logger.warning(f"Rate limited. Waiting {self.rate_limit_cooldown:.0f} seconds...")
                self.sleep(self.rate_limit_cooldown)
            return None

    def _flush_and_mark(
        self,
        vectors: List[VectorItem],
        stats: BackfillStats,
        statuses: Dict[str, IngestionStatus],
        batch_start_key: Optional[str],
        batch_end_key: Optional[str]
    ) -> None:
        """Flush a batch and move the resume point past it only if it was written."""
        if self._flush(vectors, stats, statuses):
            self._advance(stats, batch_end_key)
            return

        # Resume from just before the first batch that was not written
        if stats.flush_failures == 0:
            stats.last_key = batch_start_key
        stats.flush_failures += 1

    @staticmethod
    def _advance(stats: BackfillStats, key: Optional[str]) -> None:
        if stats.flush_failures == 0:
            stats.last_key = key

    def _flush(
        self,
        vectors: List[VectorItem],
        stats: BackfillStats,
        statuses: Dict[str, IngestionStatus]
    ) -> bool:
        """
        Write buffered vectors with retry.

        Returns:
            True if the batch was written
        """
        try:
            retry_with_backoff(
                lambda: self.vector_store.put_batch(vectors),
                max_attempts=self.max_flush_retries,
                base_delay=self.flush_base_delay,
                max_delay=self.flush_max_delay,
                rate_limit_cooldown=self.rate_limit_cooldown,
                retry_on=(Exception,),
                sleep=self.sleep,
                description=f"Vector batch write ({len(vectors)} vectors)"
            )
        except Exception as e:
            message = f"Vector batch write failed: {str(e)[:100]}"
            logger.error(
                f"Failed to write {len(vectors)} vectors after {self.max_flush_retries} attempts"
            )
            # Tentative successes become errors
            stats.success -= len(vectors)
            for vector in vectors:
                stats.record_error(vector.key, message)
                if vector.key in statuses:
                    statuses[vector.key].status = ERROR
                    statuses[vector.key].reason = message
                    statuses[vector.key].vector_key = None
            return False

        logger.debug(f"Flushed {len(vectors)} vectors")
        self.sleep(self.batch_delay)
        return True

    def verify(self, sample_size: int = 20) -> Dict[str, Any]:
        """
        Compare the article store with the vector index.

        Stale vectors (no matching article, usually after TTL reclamation)
        are reported, never deleted.

        Returns:
            Dictionary with counts and sample keys
        """
        primary_keys = set(self.store.keys())
        vector_keys = set(self.vector_store.keys())

        missing = sorted(primary_keys - vector_keys)
        stale = sorted(vector_keys - primary_keys)

        report = {
            'primary_count': len(primary_keys),
            'vector_count': len(vector_keys),
            'missing_vectors': len(missing),
            'stale_vectors': len(stale),
            'missing_sample': missing[:sample_size],
            'stale_sample': stale[:sample_size],
            'in_sync': not missing and not stale,
        }

        logger.info(
            f"Verify: {report['primary_count']} articles, {report['vector_count']} vectors, "
            f"{report['missing_vectors']} missing, {report['stale_vectors']} stale"
        )
        return report
