"""
Ingestion audit logging.

Every ingestion invocation writes one JSON entry to the audit sink at
{prefix}/{YYYY-MM-DD}/{batch_id}.json with aggregate counts and the outcome
of each record. Audit failures never fail the ingestion itself.
"""

import json
import uuid
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any

logger = logging.getLogger(__name__)

SUCCESS = 'success'
ERROR = 'error'
SKIPPED = 'skipped'

EXECUTION_SOURCES = {
    'event': 'change-feed',
    'backfill': 'backfill',
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class IngestionStatus:
    """Outcome of ingesting one record into the vector index."""
    url_hash: str
    status: str
    timestamp: str
    duration_ms: int = 0
    vector_key: Optional[str] = None
    event_name: Optional[str] = None
    reason: Optional[str] = None
    title: Optional[str] = None
    category: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def generate_batch_id(now: Optional[datetime] = None) -> str:
    """Timestamp with ':' and '.' replaced by '-', plus a 6-char random suffix."""
    now = now or datetime.now(timezone.utc)
    timestamp = now.isoformat().replace(':', '-').replace('.', '-')
    return f"{timestamp}-{uuid.uuid4().hex[:6]}"


def build_log_entry(
    results: List[IngestionStatus],
    execution_type: str = 'event',
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    return {
        'batch_id': generate_batch_id(now),
        'execution_type': execution_type,
        'source': EXECUTION_SOURCES.get(execution_type, execution_type),
        'start_time': results[0].timestamp,
        'end_time': now.isoformat(),
        'total_records': len(results),
        'succeeded': sum(1 for r in results if r.status == SUCCESS),
        'failed': sum(1 for r in results if r.status == ERROR),
        'skipped': sum(1 for r in results if r.status == SKIPPED),
        'records': [r.to_dict() for r in results],
    }


class IngestionLogger:
    """Writes ingestion log entries to an audit sink."""

    def __init__(self, sink, prefix: str = "vectors-log"):
        """
        Args:
            sink: Object with put_object(key, body)
            prefix: Key prefix for log entries
        """
        self.sink = sink
        self.prefix = prefix.rstrip('/')

    def log(
        self,
        results: List[IngestionStatus],
        execution_type: str = 'event'
    ) -> Optional[str]:
        """
        Persist one log entry for an ingestion invocation.

        Args:
            results: Per-record outcomes (nothing is written when empty)
            execution_type: 'event' or 'backfill'

        Returns:
            The log key written, or None if nothing was written
        """
        if not results:
            return None

        now = datetime.now(timezone.utc)
        entry = build_log_entry(results, execution_type, now)
        key = f"{self.prefix}/{now.strftime('%Y-%m-%d')}/{entry['batch_id']}.json"

        try:
            self.sink.put_object(key, json.dumps(entry, indent=2, ensure_ascii=False))
            logger.info(f"Ingestion log written to {key}")
            return key
        except Exception as e:
            logger.error(f"Failed to write ingestion log {key}: {e}")
            return None
