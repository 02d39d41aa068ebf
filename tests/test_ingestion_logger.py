"""
Tests for ingestion audit logging and the local audit sink.
"""

import json
import re
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from finnews_rag.ingestion.ingestion_logger import (
    IngestionLogger,
    IngestionStatus,
    build_log_entry,
    generate_batch_id,
    SUCCESS,
    ERROR,
    SKIPPED,
)
from finnews_rag.storage.audit_sink import LocalAuditSink


def status(url_hash, value, reason=None):
    return IngestionStatus(
        url_hash=url_hash,
        status=value,
        timestamp="2024-05-01T00:00:00+00:00",
        reason=reason,
    )


class TestLocalAuditSink:
    """Filesystem object sink."""

    def test_put_and_get(self, tmp_path):
        sink = LocalAuditSink(str(tmp_path))
        sink.put_object("vectors-log/2024-05-01/a.json", '{"ok": true}')
        assert sink.get_object("vectors-log/2024-05-01/a.json") == '{"ok": true}'

    def test_get_missing(self, tmp_path):
        assert LocalAuditSink(str(tmp_path)).get_object("nope.json") is None

    def test_list_keys_by_prefix(self, tmp_path):
        sink = LocalAuditSink(str(tmp_path))
        sink.put_object("vectors-log/2024-05-01/b.json", "{}")
        sink.put_object("vectors-log/2024-05-01/a.json", "{}")
        sink.put_object("other/c.json", "{}")

        assert sink.list_keys("vectors-log/") == [
            "vectors-log/2024-05-01/a.json",
            "vectors-log/2024-05-01/b.json",
        ]

    def test_rejects_escaping_keys(self, tmp_path):
        sink = LocalAuditSink(str(tmp_path / "audit"))
        with pytest.raises(ValueError):
            sink.put_object("../outside.json", "{}")

    def test_list_keys_missing_dir(self, tmp_path):
        assert LocalAuditSink(str(tmp_path / "missing")).list_keys() == []


class TestBatchId:
    """Batch id format."""

    def test_format(self):
        now = datetime(2024, 5, 1, 12, 30, 45, 123456, tzinfo=timezone.utc)
        batch_id = generate_batch_id(now)
        assert batch_id.startswith("2024-05-01T12-30-45-123456+00-00-")
        assert re.fullmatch(r"[0-9a-f]{6}", batch_id.rsplit('-', 1)[1])
        assert ':' not in batch_id and '.' not in batch_id

    def test_unique(self):
        now = datetime(2024, 5, 1, tzinfo=timezone.utc)
        assert generate_batch_id(now) != generate_batch_id(now)


class TestBuildLogEntry:
    """Log entry contents."""

    def test_counts(self):
        results = [status("a", SUCCESS), status("b", ERROR, "boom"), status("c", SKIPPED, "REMOVE")]
        entry = build_log_entry(results, 'event')

        assert entry['execution_type'] == 'event'
        assert entry['source'] == 'change-feed'
        assert entry['total_records'] == 3
        assert entry['succeeded'] == 1
        assert entry['failed'] == 1
        assert entry['skipped'] == 1
        assert entry['start_time'] == "2024-05-01T00:00:00+00:00"

    def test_backfill_source(self):
        assert build_log_entry([status("a", SUCCESS)], 'backfill')['source'] == 'backfill'

    def test_records_drop_empty_fields(self):
        entry = build_log_entry([status("a", SUCCESS)])
        assert 'reason' not in entry['records'][0]
        assert entry['records'][0]['url_hash'] == "a"


class TestIngestionLogger:
    """Writing entries to the sink."""

    def test_writes_dated_key(self, tmp_path):
        sink = LocalAuditSink(str(tmp_path))
        ingestion_logger = IngestionLogger(sink, prefix="vectors-log")

        key = ingestion_logger.log([status("a", SUCCESS)], 'backfill')

        assert re.fullmatch(r"vectors-log/\d{4}-\d{2}-\d{2}/.+\.json", key)
        entry = json.loads(sink.get_object(key))
        assert entry['execution_type'] == 'backfill'
        assert entry['succeeded'] == 1

    def test_empty_results_not_logged(self):
        sink = Mock()
        assert IngestionLogger(sink).log([]) is None
        sink.put_object.assert_not_called()

    def test_sink_failure_swallowed(self):
        sink = Mock()
        sink.put_object.side_effect = IOError("disk full")
        assert IngestionLogger(sink).log([status("a", SUCCESS)]) is None

    def test_prefix_trailing_slash(self):
        sink = Mock()
        key = IngestionLogger(sink, prefix="logs/").log([status("a", SUCCESS)])
        assert key.startswith("logs/") and not key.startswith("logs//")
