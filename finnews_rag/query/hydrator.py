"""
Result Hydrator

Turns lightweight vector hits into full documents by batch-reading the
article store. Hits whose article is gone (stale vectors) or whose batch
read fails degrade to a title-only document; order and count always match
the input hits.
"""

import logging
from typing import List, Dict, Any

from langchain_core.documents import Document

from ..ingestion.text_processor import strip_html

logger = logging.getLogger(__name__)

HYDRATED_CONTENT_MAX_CHARS = 4000


class ResultHydrator:
    """Batched full-content fetch for vector hits."""

    def __init__(self, store, max_chars: int = HYDRATED_CONTENT_MAX_CHARS, batch_size: int = 100):
        """
        Args:
            store: ArticleStore (batch_get limited to batch_size keys)
            max_chars: Cap on 'title\\n\\ncontent' page content
            batch_size: Keys per batch_get call
        """
        self.store = store
        self.max_chars = max_chars
        self.batch_size = batch_size

    def _fetch(self, article_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        articles: Dict[str, Dict[str, Any]] = {}
        for i in range(0, len(article_ids), self.batch_size):
            batch = article_ids[i:i + self.batch_size]
            try:
                for item in self.store.batch_get(batch):
                    articles[item['url_hash']] = item
            except Exception as e:
                logger.error(f"Batch read of {len(batch)} articles failed: {e}")
        return articles

    def hydrate(self, hits: List) -> List[Document]:
        """
        Build one Document per hit, in hit order.

        Args:
            hits: VectorHits from the retriever

        Returns:
            Documents whose metadata carries title, url, category, pub_date,
            distance and article_id (plus img_src when a thumbnail exists)
        """
        if not hits:
            return []

        article_ids = list(dict.fromkeys(
            hit.metadata.get('article_id') or hit.key for hit in hits
        ))
        articles = self._fetch(article_ids)

        documents = []
        for hit in hits:
            article_id = hit.metadata.get('article_id') or hit.key
            article = articles.get(article_id)

            metadata = {
                'title': hit.metadata.get('title', ''),
                'url': hit.metadata.get('url', ''),
                'category': hit.metadata.get('category', ''),
                'pub_date': hit.metadata.get('pub_date', ''),
                'distance': hit.distance,
                'article_id': article_id,
            }

            if article is None:
                logger.debug(f"No article for vector {article_id}, using metadata only")
                documents.append(Document(page_content=metadata['title'], metadata=metadata))
                continue

            title = article.get('title') or metadata['title']
            content = strip_html(article.get('content') or '')
            metadata['title'] = title
            metadata['url'] = article.get('url') or metadata['url']
            if article.get('thumbnail'):
                metadata['img_src'] = article['thumbnail']

            documents.append(Document(
                page_content=f"{title}\n\n{content}"[:self.max_chars],
                metadata=metadata,
            ))

        return documents
