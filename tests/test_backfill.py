"""
Tests for the backfill reconciler.
"""

from unittest.mock import Mock

import pytest

from finnews_rag.errors import TransientProviderError
from finnews_rag.ingestion.backfill import BackfillReconciler, BackfillStats, format_duration
from finnews_rag.ingestion.ingestion_logger import SUCCESS, ERROR


def make_backfill(store, embedder, vector_store, sleep, **kwargs):
    options = dict(
        batch_size=3,
        embedding_delay=0.05,
        batch_delay=2.0,
        max_flush_retries=3,
        flush_base_delay=2.0,
        sleep=sleep,
        show_progress=False,
    )
    options.update(kwargs)
    return BackfillReconciler(store, embedder, vector_store, **options)


@pytest.fixture
def populated(store, record_factory):
    for i in range(7):
        store.put(record_factory(f"k{i}", category="market" if i % 2 else "finance"))
    store.change_feed.poll(1000)
    return store


class TestFormatDuration:
    """Human readable durations."""

    def test_seconds(self):
        assert format_duration(42) == "42s"

    def test_minutes(self):
        assert format_duration(125) == "2m 5s"

    def test_long_runs_stay_in_minutes(self):
        assert format_duration(3725) == "62m 5s"


class TestBackfillStats:
    """Derived statistics."""

    def test_eta_and_throughput(self):
        stats = BackfillStats(total=10, start_time=100.0)
        stats.success = 4
        stats.skipped = 1
        stats.end_time = 110.0

        assert stats.processed == 5
        assert stats.throughput == pytest.approx(0.5)
        assert stats.eta_seconds == pytest.approx(10.0)


class TestRun:
    """End-to-end backfill runs."""

    def test_indexes_every_article(self, populated, embedder, vector_store, no_sleep):
        stats = make_backfill(populated, embedder, vector_store, no_sleep).run()

        assert stats.completed
        assert stats.total == 7
        assert stats.scanned == 7
        assert stats.success == 7
        assert stats.error_count == 0
        assert vector_store.count() == 7
        assert stats.last_key == "k6"

    def test_category_filter(self, populated, embedder, vector_store, no_sleep):
        stats = make_backfill(populated, embedder, vector_store, no_sleep).run(category="market")

        assert stats.total == 3
        assert stats.success == 3
        assert sorted(vector_store.keys()) == ["k1", "k3", "k5"]

    def test_dry_run_writes_nothing(self, populated, embedder, vector_store, no_sleep):
        ingestion_logger = Mock()
        stats = make_backfill(
            populated, embedder, vector_store, no_sleep, ingestion_logger=ingestion_logger
        ).run(dry_run=True)

        assert stats.success == 7
        assert stats.dry_run
        assert embedder.calls == []
        assert vector_store.count() == 0
        ingestion_logger.log.assert_not_called()

    def test_resume_after_start_key(self, populated, embedder, vector_store, no_sleep):
        stats = make_backfill(populated, embedder, vector_store, no_sleep).run(start_key="k3")

        assert stats.scanned == 3
        assert stats.total == 3
        assert sorted(vector_store.keys()) == ["k4", "k5", "k6"]

    def test_small_scan_pages(self, populated, embedder, vector_store, no_sleep):
        stats = make_backfill(populated, embedder, vector_store, no_sleep).run(page_size=2)
        assert stats.success == 7
        assert vector_store.count() == 7

    def test_flushes_in_batches_with_delay(self, populated, embedder, no_sleep):
        vector_store = Mock()
        vector_store.put_batch.side_effect = lambda items: len(items)

        make_backfill(populated, embedder, vector_store, no_sleep).run()

        sizes = [len(call.args[0]) for call in vector_store.put_batch.call_args_list]
        assert sizes == [3, 3, 1]
        assert no_sleep.delays.count(2.0) == 3
        assert no_sleep.delays.count(0.05) == 7

    def test_empty_records_skipped(self, store, embedder, vector_store, no_sleep, record_factory):
        empty = record_factory("empty", content="")
        empty['title'] = ""
        store.put(empty)
        store.put(record_factory("full"))

        stats = make_backfill(store, embedder, vector_store, no_sleep).run()

        assert stats.skipped == 1
        assert stats.success == 1
        assert vector_store.keys() == ["full"]

    def test_embedding_error_isolated(self, populated, vector_store, no_sleep):
        embedder = Mock()
        embedder.embed.side_effect = [[1.0] + [0.0] * 7, RuntimeError("bad text")] + [[0.0, 1.0] + [0.0] * 6] * 5

        stats = make_backfill(populated, embedder, vector_store, no_sleep).run()

        assert stats.success == 6
        assert stats.error_count == 1
        assert stats.errors[0] == {'url_hash': 'k1', 'error': 'bad text'}
        assert vector_store.count() == 6

    def test_rate_limit_triggers_cooldown(self, store, vector_store, no_sleep, record_factory):
        store.put(record_factory("a"))
        embedder = Mock()
        embedder.embed.side_effect = TransientProviderError("429", status_code=429)

        stats = make_backfill(store, embedder, vector_store, no_sleep, rate_limit_cooldown=60.0).run()

        assert stats.error_count == 1
        assert 60.0 in no_sleep.delays

    def test_flush_retries_then_succeeds(self, populated, embedder, no_sleep):
        vector_store = Mock()
        vector_store.put_batch.side_effect = [IOError("throttled"), IOError("throttled"), 3, 3, 1]

        stats = make_backfill(populated, embedder, vector_store, no_sleep).run()

        assert stats.error_count == 0
        assert stats.success == 7
        assert vector_store.put_batch.call_count == 5
        assert no_sleep.delays[:5].count(2.0) >= 1
        assert 4.0 in no_sleep.delays

    def test_flush_exhaustion_converts_successes(self, populated, embedder, no_sleep):
        vector_store = Mock()
        vector_store.put_batch.side_effect = IOError("index unavailable")
        ingestion_logger = Mock()

        stats = make_backfill(
            populated, embedder, vector_store, no_sleep, ingestion_logger=ingestion_logger
        ).run()

        assert stats.success == 0
        assert stats.error_count == 7
        assert all(e['error'].startswith("Vector batch write failed") for e in stats.errors)

        logged = ingestion_logger.log.call_args.args[0]
        assert all(s.status == ERROR for s in logged)
        assert all(s.vector_key is None for s in logged)

    def test_failed_batch_holds_resume_key(self, populated, embedder, vector_store, no_sleep):
        failing = Mock()
        failing.put_batch.side_effect = [3, IOError("down"), IOError("down"), IOError("down"), 1]

        stats = make_backfill(populated, embedder, failing, no_sleep).run()

        assert stats.completed
        assert stats.flush_failures == 1
        assert stats.last_key == "k2"
        assert stats.to_dict()['flush_failures'] == 1

        resumed = make_backfill(populated, embedder, vector_store, no_sleep).run(start_key=stats.last_key)
        assert sorted(vector_store.keys()) == ["k3", "k4", "k5", "k6"]
        assert resumed.error_count == 0

    def test_failed_first_batch_resumes_from_start(self, populated, embedder, no_sleep):
        vector_store = Mock()
        vector_store.put_batch.side_effect = [IOError("down")] * 3 + [3, 1]

        stats = make_backfill(populated, embedder, vector_store, no_sleep).run()

        assert stats.error_count == 3
        assert stats.success == 4
        assert stats.last_key is None

    def test_audit_entry(self, populated, embedder, vector_store, no_sleep):
        ingestion_logger = Mock()
        make_backfill(populated, embedder, vector_store, no_sleep, ingestion_logger=ingestion_logger).run()

        ingestion_logger.log.assert_called_once()
        statuses = ingestion_logger.log.call_args.args[0]
        assert ingestion_logger.log.call_args.kwargs['execution_type'] == 'backfill'
        assert len(statuses) == 7
        assert all(s.status == SUCCESS for s in statuses)

    def test_empty_store(self, store, embedder, vector_store, no_sleep):
        stats = make_backfill(store, embedder, vector_store, no_sleep).run()
        assert stats.completed
        assert stats.scanned == 0

    def test_to_dict(self, populated, embedder, vector_store, no_sleep):
        result = make_backfill(populated, embedder, vector_store, no_sleep).run().to_dict()
        assert result['success'] == 7
        assert result['errors'] == 0
        assert result['completed'] is True


class TestVerify:
    """Store/index reconciliation report."""

    def test_in_sync(self, populated, embedder, vector_store, no_sleep):
        backfill = make_backfill(populated, embedder, vector_store, no_sleep)
        backfill.run()

        report = backfill.verify()
        assert report['in_sync']
        assert report['primary_count'] == report['vector_count'] == 7

    def test_missing_and_stale(self, populated, embedder, vector_store, no_sleep):
        backfill = make_backfill(populated, embedder, vector_store, no_sleep)
        backfill.run()
        populated.delete("k0")
        populated.put({**populated.get("k1"), 'url_hash': 'new'})

        report = backfill.verify()
        assert not report['in_sync']
        assert report['missing_sample'] == ["new"]
        assert report['stale_sample'] == ["k0"]
