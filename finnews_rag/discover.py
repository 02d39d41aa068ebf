"""
Discover Article Service

Cached read views over the article store:
- Topic listings (newest first) via category-pubDateEpoch-index
- The merged 'all' listing across every topic
- Article detail by URL

Listings are keyed per topic and day, so the dedup writer's topic
invalidation removes exactly the entries it made stale.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import List, Dict, Optional, Any

from .cache.cache_keys import discover_list_key, article_detail_key, META_LAST_UPDATED, ALL_TOPICS
from .ingestion.identity import hash_url
from .query.modes import FOCUS_MODES
from .storage.article_store import CATEGORY_DATE_INDEX

logger = logging.getLogger(__name__)

DISCOVER_TOPICS = [key for key in FOCUS_MODES if key != ALL_TOPICS]

TOPIC_FETCH_LIMIT = 50

ARTICLE_FIELDS = (
    'url_hash', 'url', 'title', 'content', 'thumbnail',
    'pub_date', 'pub_date_epoch', 'author', 'category',
)


def _project(record: Dict[str, Any]) -> Dict[str, Any]:
    return {field: record.get(field) for field in ARTICLE_FIELDS}


class DiscoverService:
    """Topic listings and article details with read-through caching."""

    def __init__(
        self,
        store,
        cache,
        topics: Optional[List[str]] = None,
        list_ttl: int = 300,
        article_ttl: int = 3600,
        max_workers: int = 4,
        fetch_limit: int = TOPIC_FETCH_LIMIT
    ):
        """
        Args:
            store: ArticleStore
            cache: CacheService
            topics: Valid topic names (default: every focus category)
            list_ttl: TTL for listings (seconds)
            article_ttl: TTL for article details (seconds)
            max_workers: Threads used to build the 'all' listing
            fetch_limit: Articles fetched and cached per topic; every
                listing is a prefix of this cached list
        """
        self.store = store
        self.cache = cache
        self.topics = topics or list(DISCOVER_TOPICS)
        self.list_ttl = list_ttl
        self.article_ttl = article_ttl
        self.max_workers = max_workers
        self.fetch_limit = fetch_limit

    def _fetch_topic(self, topic: str, limit: int) -> List[Dict[str, Any]]:
        return [_project(r) for r in self.store.query_index(CATEGORY_DATE_INDEX, topic, limit=limit)]

    def _fetch_all(self, limit_per_topic: int) -> List[Dict[str, Any]]:
        workers = max(1, min(self.max_workers, len(self.topics)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(lambda t: self._fetch_topic(t, limit_per_topic), self.topics))

        articles = [article for topic_articles in results for article in topic_articles]
        articles.sort(key=lambda a: a.get('pub_date_epoch') or 0, reverse=True)

        seen = set()
        merged = []
        for article in articles:
            if article['url_hash'] in seen:
                continue
            seen.add(article['url_hash'])
            merged.append(article)
        return merged

    def list_articles(self, topic: str = ALL_TOPICS, limit: int = 50) -> List[Dict[str, Any]]:
        """
        List a topic's articles, newest first.

        Args:
            topic: A topic name, or 'all' to merge every topic
            limit: Maximum articles returned (at most fetch_limit)

        Raises:
            ValueError: If the topic is unknown
        """
        if topic != ALL_TOPICS and topic not in self.topics:
            raise ValueError(f"Invalid topic: {topic}")

        key = discover_list_key(topic)
        cached = self.cache.get(key)
        if cached is not None:
            return cached[:limit]

        if topic == ALL_TOPICS:
            articles = self._fetch_all(self.fetch_limit)
        else:
            articles = self._fetch_topic(topic, self.fetch_limit)

        self.cache.set(key, articles, ttl=self.list_ttl)
        self.cache.set(META_LAST_UPDATED, datetime.now(timezone.utc).isoformat(), ttl=self.list_ttl)
        logger.info(f"Loaded {len(articles)} articles for topic '{topic}'")
        return articles[:limit]

    def get_article(self, url: str) -> Optional[Dict[str, Any]]:
        """
        Fetch an article by its URL (any query string or trailing slash).

        Returns:
            Article fields, or None if the article does not exist
        """
        key = article_detail_key(url)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        record = self.store.get(hash_url(url))
        if record is None:
            return None

        article = _project(record)
        self.cache.set(key, article, ttl=self.article_ttl)
        return article

    def last_updated(self) -> Optional[str]:
        return self.cache.get(META_LAST_UPDATED)
