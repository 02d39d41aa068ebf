"""
Main Pipeline System

Wires every component into one system for article ingestion, vector
indexing and retrieval-augmented answering.

Long-lived clients (article store, vector index, embedding provider, cache,
chat models) are constructed once here and passed by reference into the
components that use them.
"""

import os
import json
import logging
from pathlib import Path
from typing import List, Dict, Optional, Any, Iterator

from langchain_ollama import ChatOllama

from .config import Config, get_config
from .cache.cache_service import CacheService
from .discover import DiscoverService
from .embeddings.providers import create_embedding_provider
from .ingestion.backfill import BackfillReconciler, BackfillStats
from .ingestion.dedup_writer import DedupWriter, BatchWriteSummary, INSERTED
from .ingestion.ingestion_logger import IngestionLogger, IngestionStatus
from .ingestion.stream_ingestor import StreamIngestor
from .query.answer_streamer import AnswerStreamer
from .query.hydrator import ResultHydrator
from .query.query_rewriter import QueryRewriter
from .query.reranker import Reranker
from .query.retriever import VectorRetriever, ArticleSearcher
from .storage.article_store import ArticleStore
from .storage.audit_sink import LocalAuditSink
from .storage.vector_store import VectorStore

logger = logging.getLogger(__name__)


class NewsRAGSystem:
    """
    Financial news RAG system.

    Provides high-level methods for:
    - Feed ingestion with deduplication (items, JSON files, feed directories)
    - Change-feed vector sync and bulk backfill
    - Streamed and collected question answering
    - Cached topic listings and article details
    - Persistence and statistics
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[ArticleStore] = None,
        vector_store: Optional[VectorStore] = None,
        embedder=None,
        cache: Optional[CacheService] = None,
        audit_sink=None,
        llm=None,
        rewriter_llm=None,
        auto_sync: bool = True
    ):
        """
        Initialize the system.

        Args:
            config: Config instance (default: global config)
            store: ArticleStore (default: file-backed at article_store_path)
            vector_store: VectorStore (default: FAISS index at faiss_index_path)
            embedder: EmbeddingProvider (default: from EMBEDDING_PROVIDER)
            cache: CacheService (default: Redis when configured, plus memory)
            audit_sink: Object sink for ingestion logs (default: local directory)
            llm: Chat model for answers (default: ChatOllama)
            rewriter_llm: Chat model for query rewriting (default: ChatOllama, temperature 0)
            auto_sync: Index new articles right after ingestion
        """
        self.config = config or get_config()
        self.auto_sync = auto_sync

        self.store = store if store is not None else ArticleStore(path=self.config.article_store_path)
        self.vector_store = vector_store if vector_store is not None else VectorStore(
            index_path=self.config.faiss_index_path,
            dimension=self.config.embedding_dimension
        )
        self.embedder = embedder or create_embedding_provider(self.config)
        self.cache = cache or CacheService.from_config(self.config)
        self.ingestion_logger = IngestionLogger(
            audit_sink or LocalAuditSink(self.config.audit_log_dir),
            prefix=self.config.audit_log_prefix
        )

        self.llm = llm or ChatOllama(
            model=self.config.llm_model,
            temperature=self.config.llm_temperature,
            base_url=self.config.ollama_base_url
        )
        self.rewriter_llm = rewriter_llm or ChatOllama(
            model=self.config.llm_model,
            temperature=0,
            base_url=self.config.ollama_base_url
        )

        # Ingestion path
        self.writer = DedupWriter(
            self.store,
            cache=self.cache,
            ttl_days=self.config.article_ttl_days,
            items_prefix=self.config.items_prefix
        )
        self.stream_ingestor = StreamIngestor(
            self.embedder,
            self.vector_store,
            ingestion_logger=self.ingestion_logger,
            max_chars=self.config.embedding_text_max_chars
        )

        # Query path
        self.searcher = ArticleSearcher(
            self.embedder,
            VectorRetriever(self.vector_store),
            ResultHydrator(self.store, max_chars=self.config.hydrated_content_max_chars),
            max_workers=self.config.max_workers
        )
        self.reranker = Reranker(
            self.embedder,
            threshold=self.config.rerank_threshold,
            quality_threshold=self.config.quality_rerank_threshold,
            max_workers=self.config.max_workers
        )
        self.answer_streamer = AnswerStreamer(
            self.llm,
            QueryRewriter(self.rewriter_llm),
            self.searcher,
            self.reranker,
            response_language=self.config.response_language
        )
        self.discover = DiscoverService(
            self.store,
            self.cache,
            list_ttl=self.config.cache_default_ttl,
            article_ttl=self.config.article_cache_ttl,
            max_workers=self.config.max_workers
        )

        logger.info("NewsRAGSystem initialized successfully")

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest_items(self, items: List[Any]) -> Dict[str, Any]:
        """
        Write feed items through the dedup writer, then sync vectors.

        Returns:
            Batch summary plus vector sync counts
        """
        summary: BatchWriteSummary = self.writer.write_batch(items)
        result = summary.to_dict()
        if self.auto_sync:
            result['vectors'] = self._summarize(self.sync_vectors())
        return result

    def ingest_file(self, path: str) -> Dict[str, Any]:
        """Ingest a JSON file holding one feed item or a list of them."""
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        items = data if isinstance(data, list) else [data]
        return self.ingest_items([(item, str(path)) for item in items])

    def ingest_directory(self, root: str) -> Dict[str, Any]:
        """
        Ingest every feed object below a directory.

        Object keys are paths relative to root; only .json keys under the
        configured items prefix are processed.
        """
        root_path = Path(root)
        results = []
        categories = []

        for path in sorted(p for p in root_path.rglob('*') if p.is_file()):
            key = path.relative_to(root_path).as_posix()
            result = self.writer.process_object(key, path.read_text(encoding='utf-8'))
            if result is None:
                continue
            results.append(result)
            if result.status == INSERTED and result.category and result.category not in categories:
                categories.append(result.category)

        for category in categories:
            self.cache.invalidate_topic(category)

        summary = BatchWriteSummary(results=results, invalidated_categories=categories)
        result = summary.to_dict()
        if self.auto_sync:
            result['vectors'] = self._summarize(self.sync_vectors())
        return result

    def sync_vectors(self, batch_size: int = 100) -> List[IngestionStatus]:
        """Drain pending change records into the vector index."""
        return self.stream_ingestor.drain(self.store.change_feed, batch_size=batch_size)

    def backfill(
        self,
        category: Optional[str] = None,
        dry_run: bool = False,
        start_key: Optional[str] = None,
        show_progress: bool = True
    ) -> BackfillStats:
        """Rebuild vectors for every stored article (or one category)."""
        return self.create_backfill(show_progress).run(
            category=category,
            dry_run=dry_run,
            start_key=start_key
        )

    def create_backfill(self, show_progress: bool = True) -> BackfillReconciler:
        backfill_config = self.config.get_backfill_config()
        return BackfillReconciler(
            self.store,
            self.embedder,
            self.vector_store,
            batch_size=backfill_config['batch_size'],
            embedding_delay=backfill_config['embedding_delay'],
            batch_delay=backfill_config['batch_delay'],
            max_flush_retries=backfill_config['max_flush_retries'],
            flush_max_delay=self.config.retry_max_delay,
            rate_limit_cooldown=backfill_config['rate_limit_cooldown'],
            ingestion_logger=self.ingestion_logger,
            max_chars=self.config.embedding_text_max_chars,
            show_progress=show_progress
        )

    def verify(self) -> Dict[str, Any]:
        return self.create_backfill(show_progress=False).verify()

    def purge_expired(self) -> Dict[str, Any]:
        """
        Reclaim expired articles.

        Vectors of purged articles are left in place; verify() reports them.
        """
        purged = self.store.purge_expired()
        statuses = self.sync_vectors() if self.auto_sync else []
        return {'purged': purged, 'vectors': self._summarize(statuses)}

    @staticmethod
    def _summarize(statuses: List[IngestionStatus]) -> Dict[str, int]:
        summary = {'success': 0, 'error': 0, 'skipped': 0}
        for status in statuses:
            summary[status.status] = summary.get(status.status, 0) + 1
        return summary

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def stream_answer(
        self,
        question: str,
        history: Optional[List[Dict[str, str]]] = None,
        focus: str = 'all',
        mode: str = 'balanced'
    ) -> Iterator[Dict[str, Any]]:
        return self.answer_streamer.stream(question, history, focus, mode)

    def ask(
        self,
        question: str,
        history: Optional[List[Dict[str, str]]] = None,
        focus: str = 'all',
        mode: str = 'balanced'
    ) -> Dict[str, Any]:
        return self.answer_streamer.answer(question, history, focus, mode)

    def list_articles(self, topic: str = 'all', limit: int = 50) -> List[Dict[str, Any]]:
        return self.discover.list_articles(topic, limit=limit)

    def get_article(self, url: str) -> Optional[Dict[str, Any]]:
        return self.discover.get_article(url)

    # ------------------------------------------------------------------
    # Persistence and stats
    # ------------------------------------------------------------------

    def save(self) -> None:
        """Persist the article store and the vector index."""
        if self.store.path:
            self.store.save()
        if self.vector_store.index_path:
            self.vector_store.save_index()
        logger.info(f"Saved {self.store.count()} articles and {self.vector_store.count()} vectors")

    def get_stats(self) -> Dict[str, Any]:
        """
        Get system statistics.

        Returns:
            Dictionary with article, vector, category and cache statistics
        """
        categories: Dict[str, int] = {}
        for record in self.store.iter_all():
            category = record.get('category') or 'unknown'
            categories[category] = categories.get(category, 0) + 1

        embedder_stats = {}
        inner = getattr(self.embedder, 'provider', self.embedder)
        if hasattr(inner, 'get_cache_stats'):
            embedder_stats = inner.get_cache_stats()

        return {
            'total_articles': self.store.count(),
            'total_vectors': self.vector_store.count(),
            'categories': categories,
            'vector_store_stats': self.vector_store.get_stats(),
            'cache_stats': self.cache.stats(),
            'embedding_cache_stats': embedder_stats,
            'pending_changes': len(self.store.change_feed),
            'storage': {
                'article_store_path': self.store.path,
                'index_path': self.vector_store.index_path,
                'index_exists': bool(self.vector_store.index_path) and os.path.exists(self.vector_store.index_path),
            },
        }
