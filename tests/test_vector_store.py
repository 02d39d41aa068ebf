"""
Test Suite for the keyed FAISS HNSW Vector Store

Covers upsert semantics, category filtering, batch writes, compaction and
persistence.
"""

import os

import numpy as np
import pytest

from finnews_rag.ingestion.text_processor import VectorItem
from finnews_rag.storage.vector_store import VectorStore

DIM = 8


def unit(index: int, dim: int = DIM):
    """Basis vector e_index."""
    vector = np.zeros(dim, dtype=np.float32)
    vector[index] = 1.0
    return vector.tolist()


class TestVectorStoreInitialization:
    """Index construction."""

    def test_creates_hnsw_index(self):
        store = VectorStore(dimension=DIM)
        assert 'HNSW' in type(store.index).__name__

    def test_starts_empty(self):
        store = VectorStore(dimension=DIM)
        assert store.count() == 0
        assert store.keys() == []
        assert store.query(unit(0), top_k=5) == []

    def test_default_dimension(self):
        assert VectorStore().dimension == 3072


class TestPut:
    """Single-vector upserts."""

    def test_put_and_query(self, vector_store):
        vector_store.put("a", unit(0), {'category': 'finance'})
        hits = vector_store.query(unit(0), top_k=1)

        assert len(hits) == 1
        assert hits[0].key == "a"
        assert hits[0].distance == pytest.approx(0.0, abs=1e-5)
        assert hits[0].metadata == {'category': 'finance'}

    def test_same_key_twice_keeps_latest(self, vector_store):
        vector_store.put("a", unit(0), {'title': 'old'})
        vector_store.put("a", unit(1), {'title': 'new'})

        assert vector_store.count() == 1
        hits = vector_store.query(unit(1), top_k=5)
        assert [h.key for h in hits] == ["a"]
        assert hits[0].distance == pytest.approx(0.0, abs=1e-5)
        assert hits[0].metadata['title'] == 'new'

    def test_upsert_leaves_tombstone(self, vector_store):
        vector_store.put("a", unit(0))
        vector_store.put("a", unit(1))
        assert vector_store.tombstone_count() == 1

    def test_dimension_mismatch(self, vector_store):
        with pytest.raises(ValueError):
            vector_store.put("a", [1.0, 0.0])

    def test_empty_key(self, vector_store):
        with pytest.raises(ValueError):
            vector_store.put("", unit(0))

    def test_vectors_are_normalized(self, vector_store):
        vector_store.put("a", [3.0] + [0.0] * (DIM - 1))
        stored = vector_store.get_by_keys(["a"], return_data=True)[0]['embedding']
        assert np.linalg.norm(stored) == pytest.approx(1.0, abs=1e-5)


class TestQuery:
    """Nearest neighbour search."""

    def test_ordered_by_distance(self, vector_store):
        vector_store.put("exact", unit(0))
        vector_store.put("close", (np.array(unit(0)) + 0.5 * np.array(unit(1))).tolist())
        vector_store.put("far", unit(2))

        hits = vector_store.query(unit(0), top_k=3)
        assert [h.key for h in hits] == ["exact", "close", "far"]
        distances = [h.distance for h in hits]
        assert distances == sorted(distances)

    def test_cosine_distance_scale(self, vector_store):
        vector_store.put("orthogonal", unit(1))
        vector_store.put("opposite", (-np.array(unit(0))).tolist())

        hits = {h.key: h.distance for h in vector_store.query(unit(0), top_k=2)}
        assert hits["orthogonal"] == pytest.approx(1.0, abs=1e-4)
        assert hits["opposite"] == pytest.approx(2.0, abs=1e-4)

    def test_category_filter(self, vector_store):
        vector_store.put("f1", unit(0), {'category': 'finance'})
        vector_store.put("m1", unit(0), {'category': 'market'})
        vector_store.put("m2", unit(1), {'category': 'market'})

        hits = vector_store.query(unit(0), top_k=5, category='market')
        assert {h.key for h in hits} == {"m1", "m2"}
        assert all(h.metadata['category'] == 'market' for h in hits)

    def test_category_filter_no_match(self, vector_store):
        vector_store.put("f1", unit(0), {'category': 'finance'})
        assert vector_store.query(unit(0), top_k=5, category='capital') == []

    def test_filter_reaches_past_nearer_rows(self, vector_store):
        rng = np.random.default_rng(7)
        for i in range(12):
            nearby = np.array(unit(0)) + 0.05 * rng.standard_normal(DIM)
            vector_store.put(f"f{i}", nearby.tolist(), {'category': 'finance'})
        vector_store.put("m", unit(1), {'category': 'market'})

        hits = vector_store.query(unit(0), top_k=1, category='market')
        assert [h.key for h in hits] == ["m"]

    def test_top_k_limits(self, vector_store):
        for i in range(DIM):
            vector_store.put(f"k{i}", unit(i))
        assert len(vector_store.query(unit(0), top_k=3)) == 3

    def test_top_k_zero(self, vector_store):
        vector_store.put("a", unit(0))
        assert vector_store.query(unit(0), top_k=0) == []

    def test_negative_top_k(self, vector_store):
        with pytest.raises(ValueError):
            vector_store.query(unit(0), top_k=-1)

    def test_tombstones_never_returned(self, vector_store):
        vector_store.put("a", unit(0))
        vector_store.put("a", unit(1))
        vector_store.put("b", unit(2))

        keys = [h.key for h in vector_store.query(unit(0), top_k=10)]
        assert sorted(keys) == ["a", "b"]


class TestPutBatch:
    """Chunked batch writes."""

    def test_vector_items(self, vector_store):
        items = [VectorItem(key=f"k{i}", embedding=unit(i), metadata={'n': str(i)}) for i in range(4)]
        assert vector_store.put_batch(items) == 4
        assert vector_store.count() == 4

    def test_dict_items(self, vector_store):
        written = vector_store.put_batch([{'key': 'a', 'embedding': unit(0)}])
        assert written == 1
        assert vector_store.get_by_keys(["a"])[0]['metadata'] == {}

    def test_empty_batch(self, vector_store):
        assert vector_store.put_batch([]) == 0

    def test_chunked_above_max_batch(self, monkeypatch, vector_store):
        monkeypatch.setattr(VectorStore, 'MAX_BATCH_SIZE', 3)
        calls = []
        original = vector_store._append_rows

        def spy(keys, vectors, metadata):
            calls.append(len(keys))
            return original(keys, vectors, metadata)

        monkeypatch.setattr(vector_store, '_append_rows', spy)
        items = [VectorItem(key=f"k{i}", embedding=unit(i % DIM), metadata={}) for i in range(7)]

        assert vector_store.put_batch(items) == 7
        assert calls == [3, 3, 1]

    def test_duplicate_keys_in_batch(self, vector_store):
        items = [
            VectorItem(key="a", embedding=unit(0), metadata={'v': '1'}),
            VectorItem(key="a", embedding=unit(1), metadata={'v': '2'}),
        ]
        vector_store.put_batch(items)
        assert vector_store.count() == 1
        assert vector_store.get_by_keys(["a"])[0]['metadata'] == {'v': '2'}


class TestGetByKeys:
    """Fetching stored vectors."""

    def test_unknown_keys_omitted(self, vector_store):
        vector_store.put("a", unit(0), {'category': 'finance'})
        results = vector_store.get_by_keys(["a", "zzz"])
        assert [r['key'] for r in results] == ["a"]
        assert 'embedding' not in results[0]

    def test_return_data(self, vector_store):
        vector_store.put("a", unit(3))
        entry = vector_store.get_by_keys(["a"], return_data=True)[0]
        assert np.allclose(entry['embedding'], unit(3), atol=1e-5)


class TestCompactAndPersistence:
    """Compaction and atomic save/load."""

    def test_compact_drops_tombstones(self, vector_store):
        vector_store.put("a", unit(0))
        vector_store.put("a", unit(1))
        vector_store.put("b", unit(2))

        assert vector_store.compact() == 1
        assert vector_store.tombstone_count() == 0
        assert vector_store.index.ntotal == 2
        assert vector_store.query(unit(1), top_k=1)[0].key == "a"

    def test_compact_noop(self, vector_store):
        vector_store.put("a", unit(0))
        assert vector_store.compact() == 0

    def test_save_and_load(self, tmp_path):
        path = str(tmp_path / "index" / "articles.faiss")
        store = VectorStore(index_path=path, dimension=DIM)
        store.put("a", unit(0), {'category': 'finance'})
        store.put("a", unit(1), {'category': 'market'})
        store.put("b", unit(2), {'category': 'finance'})
        store.save_index()

        assert os.path.exists(path)
        assert os.path.exists(path + '.metadata')

        reloaded = VectorStore(index_path=path, dimension=DIM)
        assert reloaded.count() == 2
        assert reloaded.tombstone_count() == 0
        hits = reloaded.query(unit(1), top_k=1)
        assert hits[0].key == "a"
        assert hits[0].metadata == {'category': 'market'}

    def test_load_missing_file(self, tmp_path):
        store = VectorStore(dimension=DIM)
        assert store.load_index(str(tmp_path / "missing.faiss")) is False
        assert store.count() == 0

    def test_save_without_path(self, vector_store):
        with pytest.raises(ValueError):
            vector_store.save_index()

    def test_clear(self, vector_store):
        vector_store.put("a", unit(0))
        vector_store.clear()
        assert vector_store.count() == 0
        assert vector_store.index.ntotal == 0

    def test_stats(self, vector_store):
        vector_store.put("a", unit(0))
        stats = vector_store.get_stats()
        assert stats['total_vectors'] == 1
        assert stats['dimension'] == DIM
        assert stats['index_type'] == 'IndexHNSWFlat'
