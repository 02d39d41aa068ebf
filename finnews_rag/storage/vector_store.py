"""
Vector Store with FAISS HNSW Indexing

Keyed approximate nearest neighbor store for article embeddings using FAISS
HNSW (Hierarchical Navigable Small World).

HNSW indexes cannot remove vectors, so upserts append a new row and
tombstone the row previously owned by the key. Searches skip tombstoned
rows; compact() rebuilds the graph from live rows only.

Vectors are L2-normalized on insert, so the squared L2 distance reported by
FAISS maps directly to cosine distance (d / 2). Lower = more similar.
"""

import os
import pickle
import logging
import threading
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any, Iterable

import faiss
import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class VectorHit:
    """A search result: vector key, cosine distance, stored metadata."""
    key: str
    distance: float
    metadata: Dict[str, Any] = field(default_factory=dict)


def _normalize(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (vectors / norms).astype(np.float32)


class VectorStore:
    """
    Keyed vector store using FAISS HNSW indexing.

    Features:
    - Upsert semantics: writing an existing key replaces its vector and metadata
    - Exact-match category filtering at query time
    - Batch writes chunked to MAX_BATCH_SIZE
    - Atomic save/load with synchronization checks
    """

    MAX_BATCH_SIZE = 500

    def __init__(
        self,
        index_path: Optional[str] = None,
        dimension: int = 3072,
        M: int = 32,
        efConstruction: int = 200,
        efSearch: int = 128,
        autoload: bool = True
    ):
        """
        Initialize the HNSW vector store.

        Args:
            index_path: Path to save/load FAISS index (None keeps it in memory)
            dimension: Dimension of embedding vectors
            M: Number of connections per node in HNSW graph (16-48, default: 32)
            efConstruction: Search depth during index construction (default: 200)
            efSearch: Search depth during queries (default: 128)
            autoload: Load an existing index from index_path on startup
        """
        self.index_path = index_path
        self.dimension = dimension
        self.M = M
        self.efConstruction = efConstruction
        self.efSearch = efSearch

        # Row bookkeeping: row_keys[row] is None for tombstoned rows
        self.row_keys: List[Optional[str]] = []
        self.key_rows: Dict[str, int] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}

        self._lock = threading.RLock()
        self.index = None
        self._initialize_index()

        if self.index_path and autoload and os.path.exists(self.index_path):
            self.load_index()

    def _initialize_index(self) -> None:
        """Initialize a new HNSW index with optimized parameters."""
        self.index = faiss.IndexHNSWFlat(self.dimension, self.M)
        self.index.hnsw.efConstruction = self.efConstruction
        self.index.hnsw.efSearch = self.efSearch

    def _as_matrix(self, embeddings: Iterable) -> np.ndarray:
        vectors = np.array(list(embeddings), dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[1] != self.dimension:
            got = vectors.shape[-1] if vectors.ndim >= 1 and vectors.size else 0
            raise ValueError(
                f"Embedding dimension ({got}) must match "
                f"index dimension ({self.dimension})"
            )
        return _normalize(vectors)

    def _append_rows(self, keys: List[str], vectors: np.ndarray, metadata: List[Dict]) -> None:
        """Append normalized rows, tombstoning rows previously owned by the keys."""
        with self._lock:
            start = self.index.ntotal
            self.index.add(vectors)

            for offset, (key, md) in enumerate(zip(keys, metadata)):
                previous = self.key_rows.get(key)
                if previous is not None:
                    self.row_keys[previous] = None
                self.row_keys.append(key)
                self.key_rows[key] = start + offset
                self.metadata[key] = dict(md or {})

            # Verify synchronization
            assert self.index.ntotal == len(self.row_keys), \
                "CRITICAL: Row keys out of sync with index"

    def put(self, key: str, embedding: List[float], metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Insert or overwrite one vector.

        Raises:
            ValueError: If key is empty or the dimension is wrong
        """
        if not key:
            raise ValueError("Vector key must not be empty")
        vectors = self._as_matrix([embedding])
        self._append_rows([key], vectors, [metadata or {}])

    def put_batch(self, items: List[Any]) -> int:
        """
        Insert or overwrite many vectors, MAX_BATCH_SIZE per index write.

        Args:
            items: Objects with key/embedding/metadata attributes
                (VectorItem) or dictionaries with those fields

        Returns:
            Number of vectors written
        """
        if not items:
            return 0

        written = 0
        for i in range(0, len(items), self.MAX_BATCH_SIZE):
            batch = items[i:i + self.MAX_BATCH_SIZE]
            keys, embeddings, metadata = [], [], []
            for item in batch:
                if isinstance(item, dict):
                    key, embedding, md = item['key'], item['embedding'], item.get('metadata')
                else:
                    key, embedding, md = item.key, item.embedding, item.metadata
                if not key:
                    raise ValueError("Vector key must not be empty")
                keys.append(key)
                embeddings.append(embedding)
                metadata.append(md or {})

            self._append_rows(keys, self._as_matrix(embeddings), metadata)
            written += len(batch)
            logger.debug(f"Batch {i // self.MAX_BATCH_SIZE + 1}: {len(batch)} vectors written")

        return written

    def query(
        self,
        query_embedding: List[float],
        top_k: int = 5,
        category: Optional[str] = None
    ) -> List[VectorHit]:
        """
        Search for the nearest live vectors.

        Args:
            query_embedding: Query vector
            top_k: Number of results to return
            category: Only return vectors whose metadata category equals this

        Returns:
            VectorHits ordered by ascending cosine distance

        Raises:
            ValueError: If the query dimension is wrong or top_k is negative
        """
        if top_k < 0:
            raise ValueError(f"top_k must be non-negative, got {top_k}")

        query_vector = self._as_matrix([query_embedding])

        with self._lock:
            total = self.index.ntotal
            if top_k == 0 or not self.key_rows:
                return []

            # Widen the candidate set until enough live rows survive filtering
            k_fetch = min(total, max(top_k * 2, top_k + self.tombstone_count()))
            while True:
                distances, indices = self.index.search(query_vector, k_fetch)

                hits = []
                for dist, idx in zip(distances[0], indices[0]):
                    if idx < 0:
                        continue
                    key = self.row_keys[idx]
                    if key is None:
                        continue
                    md = self.metadata.get(key, {})
                    if category is not None and md.get('category') != category:
                        continue
                    hits.append(VectorHit(key=key, distance=float(dist) / 2.0, metadata=dict(md)))
                    if len(hits) >= top_k:
                        break

                if len(hits) >= top_k or k_fetch >= total:
                    return hits
                k_fetch = min(total, k_fetch * 2)

    def get_by_keys(self, keys: List[str], return_data: bool = False) -> List[Dict[str, Any]]:
        """
        Fetch stored vectors by key; unknown keys are omitted.

        Args:
            keys: Vector keys
            return_data: Include the (normalized) embedding

        Returns:
            List of {'key', 'metadata'[, 'embedding']} dictionaries
        """
        results = []
        with self._lock:
            for key in keys:
                row = self.key_rows.get(key)
                if row is None:
                    continue
                entry = {'key': key, 'metadata': dict(self.metadata.get(key, {}))}
                if return_data:
                    entry['embedding'] = self.index.reconstruct(row).tolist()
                results.append(entry)
        return results

    def keys(self) -> List[str]:
        with self._lock:
            return list(self.key_rows)

    def count(self) -> int:
        """Number of live (non-tombstoned) vectors."""
        return len(self.key_rows)

    def tombstone_count(self) -> int:
        return self.index.ntotal - len(self.key_rows)

    def compact(self) -> int:
        """
        Rebuild the index from live rows only.

        Returns:
            Number of tombstoned rows dropped
        """
        with self._lock:
            dropped = self.tombstone_count()
            if dropped == 0:
                return 0

            live = [(row, key) for row, key in enumerate(self.row_keys) if key is not None]
            if live:
                all_vectors = self.index.reconstruct_n(0, self.index.ntotal)
                vectors = np.array([all_vectors[row] for row, _ in live], dtype=np.float32)
            else:
                vectors = np.zeros((0, self.dimension), dtype=np.float32)

            self._initialize_index()
            if len(vectors):
                self.index.add(vectors)

            self.row_keys = [key for _, key in live]
            self.key_rows = {key: row for row, key in enumerate(self.row_keys)}

        logger.info(f"Compacted vector index: dropped {dropped} stale rows")
        return dropped

    def save_index(self, path: Optional[str] = None) -> None:
        """
        Save FAISS index and key/metadata sidecar to disk with atomic write.

        Tombstoned rows are compacted away before writing.
        """
        save_path = path or self.index_path
        if not save_path:
            raise ValueError("No path configured for vector index")

        directory = os.path.dirname(save_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with self._lock:
            self.compact()
            faiss.write_index(self.index, save_path)

            metadata_path = save_path + '.metadata'
            temp_metadata_path = metadata_path + '.tmp'
            sidecar = {'row_keys': self.row_keys, 'metadata': self.metadata}

            try:
                with open(temp_metadata_path, 'wb') as f:
                    pickle.dump(sidecar, f, protocol=pickle.HIGHEST_PROTOCOL)

                # Atomic rename
                os.replace(temp_metadata_path, metadata_path)

            except Exception:
                # Clean up temp file on error
                if os.path.exists(temp_metadata_path):
                    os.remove(temp_metadata_path)
                raise

    def load_index(self, path: Optional[str] = None) -> bool:
        """
        Load FAISS index and sidecar from disk.

        Returns:
            True if successful, False otherwise (the store is left empty)
        """
        load_path = path or self.index_path

        try:
            if not load_path or not os.path.exists(load_path):
                return False

            loaded_index = faiss.read_index(load_path)
            if not isinstance(loaded_index, faiss.IndexHNSWFlat):
                raise ValueError(
                    f"Loaded index is not IndexHNSWFlat, got {type(loaded_index)}"
                )

            metadata_path = load_path + '.metadata'
            if os.path.exists(metadata_path):
                with open(metadata_path, 'rb') as f:
                    sidecar = pickle.load(f)
            else:
                sidecar = {'row_keys': [], 'metadata': {}}

            row_keys = sidecar['row_keys']
            if loaded_index.ntotal != len(row_keys):
                raise ValueError(
                    f"Index has {loaded_index.ntotal} vectors but "
                    f"sidecar has {len(row_keys)} keys"
                )

            with self._lock:
                self.index = loaded_index
                self.dimension = self.index.d
                self.index.hnsw.efSearch = self.efSearch
                self.row_keys = row_keys
                self.key_rows = {key: row for row, key in enumerate(row_keys) if key is not None}
                self.metadata = sidecar['metadata']

            logger.info(f"Loaded {self.count()} vectors from {load_path}")
            return True

        except Exception as e:
            logger.error(f"Failed to load vector index from {load_path}: {e}")
            self.clear()
            return False

    def clear(self) -> None:
        """Clear all vectors and metadata, resetting to empty state."""
        with self._lock:
            self._initialize_index()
            self.row_keys = []
            self.key_rows = {}
            self.metadata = {}

    def get_stats(self) -> Dict:
        return {
            'total_vectors': self.count(),
            'tombstoned_rows': self.tombstone_count(),
            'dimension': self.dimension,
            'M': self.M,
            'efConstruction': self.efConstruction,
            'efSearch': self.index.hnsw.efSearch,
            'index_type': 'IndexHNSWFlat'
        }

    def __repr__(self) -> str:
        return (
            f"VectorStore(vectors={self.count()}, "
            f"dimension={self.dimension}, "
            f"M={self.M}, "
            f"efSearch={self.index.hnsw.efSearch})"
        )
