"""
Vector retrieval and multi-query search.

VectorRetriever runs ANN queries against the vector index. ArticleSearcher
chains embed -> retrieve -> hydrate for one query, and fans several queries
out concurrently, merging their documents by article identity.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from langchain_core.documents import Document

from ..storage.vector_store import VectorHit

logger = logging.getLogger(__name__)


class VectorRetriever:
    """ANN query with an optional exact-match category filter."""

    def __init__(self, vector_store):
        self.vector_store = vector_store

    def retrieve(
        self,
        query_vector: List[float],
        top_k: int = 10,
        category: Optional[str] = None
    ) -> List[VectorHit]:
        """
        Returns:
            Hits ordered by ascending cosine distance
        """
        hits = self.vector_store.query(query_vector, top_k=top_k, category=category)
        logger.debug(f"Retrieved {len(hits)} hits (top_k={top_k}, category={category})")
        return hits


def merge_documents(result_sets: List[List[Document]]) -> List[Document]:
    """
    Merge document lists by article identity.

    The first occurrence wins, so earlier result sets take precedence.
    Identity is metadata['article_id'], falling back to metadata['url'].
    """
    seen = set()
    merged = []
    for documents in result_sets:
        for doc in documents:
            identity = doc.metadata.get('article_id') or doc.metadata.get('url')
            if identity in seen:
                continue
            seen.add(identity)
            merged.append(doc)
    return merged


class ArticleSearcher:
    """Query text to hydrated documents."""

    def __init__(self, embedder, retriever: VectorRetriever, hydrator, max_workers: int = 4):
        """
        Args:
            embedder: EmbeddingProvider used for query vectors
            retriever: VectorRetriever
            hydrator: ResultHydrator
            max_workers: Thread pool size for multi-query search
        """
        self.embedder = embedder
        self.retriever = retriever
        self.hydrator = hydrator
        self.max_workers = max_workers

    def search(self, query: str, top_k: int = 10, category: Optional[str] = None) -> List[Document]:
        """
        Embed a query, retrieve nearest vectors and hydrate them.

        Raises:
            Whatever the embedder or vector store raises
        """
        query_vector = self.embedder.embed(query)
        hits = self.retriever.retrieve(query_vector, top_k=top_k, category=category)
        if not hits:
            return []
        return self.hydrator.hydrate(hits)

    def _safe_search(self, query: str, top_k: int, category: Optional[str]) -> List[Document]:
        try:
            return self.search(query, top_k=top_k, category=category)
        except Exception as e:
            logger.error(f"Query failed: '{query[:40]}': {e}")
            return []

    def search_many(
        self,
        queries: List[str],
        top_k: int = 10,
        category: Optional[str] = None
    ) -> List[Document]:
        """
        Run several queries concurrently and merge the results.

        A failing query contributes no documents; the others are unaffected.
        """
        queries = [q for q in queries if q]
        if not queries:
            return []

        workers = max(1, min(self.max_workers, len(queries)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self._safe_search, q, top_k, category) for q in queries]
            # Collected in submission order so the most direct query wins ties
            result_sets = [future.result() for future in futures]

        merged = merge_documents(result_sets)
        logger.info(f"Merged {sum(len(r) for r in result_sets)} results into {len(merged)} documents")
        return merged
