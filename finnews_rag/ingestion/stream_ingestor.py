"""
Stream Ingestor

Consumes article store change records and keeps the vector index in sync:
INSERT and MODIFY records are embedded and upserted; REMOVE records are
skipped. Each record is isolated, and one audit log entry is written per
invocation.
"""

import time
import logging
from typing import List, Iterable, Optional

from .ingestion_logger import IngestionStatus, IngestionLogger, SUCCESS, ERROR, SKIPPED, utc_now_iso
from .text_processor import prepare_vector_document, build_vector_item, EMBEDDING_TEXT_MAX_CHARS

logger = logging.getLogger(__name__)

TARGET_EVENTS = ('INSERT', 'MODIFY')


def _elapsed_ms(start: float) -> int:
    return int((time.time() - start) * 1000)


class StreamIngestor:
    """Change-feed driven embedding and indexing."""

    def __init__(
        self,
        embedder,
        vector_store,
        ingestion_logger: Optional[IngestionLogger] = None,
        max_chars: int = EMBEDDING_TEXT_MAX_CHARS
    ):
        """
        Args:
            embedder: EmbeddingProvider
            vector_store: VectorStore receiving upserts
            ingestion_logger: Audit logger (None disables audit logging)
            max_chars: Embedding text character limit
        """
        self.embedder = embedder
        self.vector_store = vector_store
        self.ingestion_logger = ingestion_logger
        self.max_chars = max_chars

    def process_record(self, record) -> IngestionStatus:
        """
        Process one ChangeRecord. Never raises.
        """
        event_name = record.event_name or 'UNKNOWN'
        url_hash = (record.keys or {}).get('url_hash') or 'unknown'
        start = time.time()

        def skipped(reason: str) -> IngestionStatus:
            return IngestionStatus(
                url_hash=url_hash,
                event_name=event_name,
                status=SKIPPED,
                reason=reason,
                timestamp=utc_now_iso(),
                duration_ms=_elapsed_ms(start),
            )

        if event_name not in TARGET_EVENTS:
            return skipped(f"Event type {event_name} is not a target")

        if not record.new_image:
            return skipped("No NewImage in stream record")

        try:
            article = record.new_image
            if not article.get('url'):
                return skipped("No url field in article")

            document = prepare_vector_document(article, max_chars=self.max_chars)
            if document.is_empty:
                return skipped("Empty embedding text")

            item = build_vector_item(document, self.embedder)
            self.vector_store.put(item.key, item.embedding, item.metadata)

            duration = _elapsed_ms(start)
            logger.info(f"OK [{event_name}]: {document.metadata['title'][:60]}... ({duration}ms)")

            return IngestionStatus(
                url_hash=url_hash,
                vector_key=item.key,
                event_name=event_name,
                status=SUCCESS,
                title=document.metadata['title'],
                category=document.metadata['category'],
                url=document.metadata['url'],
                timestamp=utc_now_iso(),
                duration_ms=duration,
            )

        except Exception as e:
            logger.error(f"Error processing {url_hash} [{event_name}]: {e}")
            return IngestionStatus(
                url_hash=url_hash,
                event_name=event_name,
                status=ERROR,
                reason=str(e),
                timestamp=utc_now_iso(),
                duration_ms=_elapsed_ms(start),
            )

    def handle(self, records: Iterable) -> List[IngestionStatus]:
        """
        Process a batch of change records.

        Returns:
            One IngestionStatus per record, in input order
        """
        records = list(records)
        logger.info(f"Processing {len(records)} change record(s)")

        results = [self.process_record(record) for record in records]

        if self.ingestion_logger is not None:
            self.ingestion_logger.log(results, execution_type='event')

        succeeded = sum(1 for r in results if r.status == SUCCESS)
        failed = sum(1 for r in results if r.status == ERROR)
        skipped = sum(1 for r in results if r.status == SKIPPED)
        logger.info(f"Completed: {succeeded} succeeded, {failed} failed, {skipped} skipped")

        return results

    def drain(self, change_feed, batch_size: int = 100) -> List[IngestionStatus]:
        """Poll the change feed until it is empty, handling each batch."""
        results = []
        while True:
            batch = change_feed.poll(batch_size)
            if not batch:
                break
            results.extend(self.handle(batch))
        return results
