"""
Embedding-similarity reranker.

ANN distances come from the coarse ingestion-time embedding (title plus
snippet). Balanced and quality modes re-score hydrated documents against the
rewritten query, drop weak matches and re-sort. Fast mode keeps ANN order.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity
from langchain_core.documents import Document

from .modes import get_search_params, normalize_mode, QUALITY

logger = logging.getLogger(__name__)


class Reranker:
    """Cosine-similarity reranking with mode-dependent thresholds."""

    def __init__(
        self,
        embedder,
        threshold: float = 0.3,
        quality_threshold: float = 0.35,
        max_workers: int = 4
    ):
        """
        Args:
            embedder: EmbeddingProvider for query and document vectors
            threshold: Minimum similarity for balanced mode (exclusive)
            quality_threshold: Minimum similarity for quality mode; never
                looser than threshold
            max_workers: Concurrent document embedding calls
        """
        self.embedder = embedder
        self.threshold = threshold
        self.quality_threshold = quality_threshold
        self.max_workers = max_workers

    def threshold_for(self, mode: str) -> float:
        if normalize_mode(mode) == QUALITY:
            return max(self.threshold, self.quality_threshold)
        return self.threshold

    def _embed_safe(self, text: str) -> Optional[List[float]]:
        try:
            return self.embedder.embed(text)
        except Exception as e:
            logger.warning(f"Document embedding failed during rerank: {e}")
            return None

    def rerank(
        self,
        query: str,
        documents: List[Document],
        mode: str = 'balanced',
        threshold: Optional[float] = None
    ) -> List[Document]:
        """
        Rerank documents for a query.

        Args:
            query: Rewritten search query
            documents: Hydrated documents in ANN order
            mode: Depth mode (fast keeps ANN order)
            threshold: Override the mode's similarity threshold

        Returns:
            At most max_docs documents; reranked ones carry
            metadata['similarity']
        """
        params = get_search_params(mode)
        if not documents:
            return []

        if not params.rerank:
            return documents[:params.max_docs]

        candidates = [doc for doc in documents if doc.page_content]
        if not candidates:
            return []

        try:
            query_embedding = self.embedder.embed(query)
        except Exception as e:
            logger.warning(f"Query embedding failed, keeping ANN order: {e}")
            return documents[:params.max_docs]

        workers = max(1, min(self.max_workers, len(candidates)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            doc_embeddings = list(executor.map(self._embed_safe, [d.page_content for d in candidates]))

        scored = [(doc, emb) for doc, emb in zip(candidates, doc_embeddings) if emb is not None]
        if not scored:
            return []

        similarities = cosine_similarity(
            np.array([query_embedding], dtype=np.float32),
            np.array([emb for _, emb in scored], dtype=np.float32)
        )[0]

        cutoff = threshold if threshold is not None else self.threshold_for(mode)

        ranked = [
            (float(sim), index) for index, sim in enumerate(similarities)
            if sim > cutoff
        ]
        ranked.sort(key=lambda pair: (-pair[0], pair[1]))

        results = []
        for sim, index in ranked[:params.max_docs]:
            doc = scored[index][0]
            doc.metadata['similarity'] = sim
            results.append(doc)

        logger.info(f"[{normalize_mode(mode)}] Reranked to {len(results)} documents (threshold={cutoff})")
        return results
