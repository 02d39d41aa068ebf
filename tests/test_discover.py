"""
Tests for the discover listings and article detail views.
"""

from unittest.mock import Mock

import pytest

from finnews_rag.cache.cache_keys import discover_list_key, article_detail_key
from finnews_rag.discover import DiscoverService, DISCOVER_TOPICS
from finnews_rag.ingestion.identity import hash_url


@pytest.fixture
def populated(store, record_factory):
    store.put(record_factory("f-old", category="finance", pub_date_epoch=1000))
    store.put(record_factory("f-new", category="finance", pub_date_epoch=3000))
    store.put(record_factory("m-mid", category="market", pub_date_epoch=2000))
    store.put(record_factory("r-1", category="real_estate", pub_date_epoch=1500))
    return store


class TestListArticles:
    """Topic listings."""

    def test_topics_exclude_all(self):
        assert 'all' not in DISCOVER_TOPICS
        assert 'finance' in DISCOVER_TOPICS

    def test_topic_newest_first(self, populated, cache):
        articles = DiscoverService(populated, cache).list_articles("finance")

        assert [a['url_hash'] for a in articles] == ["f-new", "f-old"]
        assert set(articles[0]) >= {'url', 'title', 'content', 'pub_date', 'category'}
        assert 'title_hash' not in articles[0]

    def test_limit(self, populated, cache):
        articles = DiscoverService(populated, cache).list_articles("finance", limit=1)
        assert [a['url_hash'] for a in articles] == ["f-new"]

    def test_cached_listing_serves_any_limit(self, store, cache, record_factory):
        for i in range(20):
            store.put(record_factory(f"f{i:02d}", category="finance", pub_date_epoch=1000 + i))
        service = DiscoverService(store, cache)

        assert len(service.list_articles("finance", limit=3)) == 3
        articles = service.list_articles("finance", limit=20)

        assert len(articles) == 20
        assert articles[0]['url_hash'] == "f19"
        assert len(cache.get(discover_list_key("finance"))) == 20

    def test_limit_capped_by_fetch_limit(self, store, cache, record_factory):
        for i in range(5):
            store.put(record_factory(f"f{i}", category="finance", pub_date_epoch=1000 + i))
        service = DiscoverService(store, cache, fetch_limit=2)

        assert [a['url_hash'] for a in service.list_articles("finance", limit=10)] == ["f4", "f3"]

    def test_invalid_topic(self, populated, cache):
        with pytest.raises(ValueError):
            DiscoverService(populated, cache).list_articles("crypto")

    def test_all_merges_newest_first(self, populated, cache):
        articles = DiscoverService(populated, cache).list_articles("all")
        assert [a['url_hash'] for a in articles] == ["f-new", "m-mid", "r-1", "f-old"]

    def test_all_dedups_by_url_hash(self, cache, record_factory):
        store = Mock()
        store.query_index.side_effect = lambda index, topic, limit: (
            [record_factory("shared", category=topic)] if topic in ("finance", "market") else []
        )

        articles = DiscoverService(store, cache).list_articles("all")
        assert [a['url_hash'] for a in articles] == ["shared"]

    def test_read_through_cache(self, populated, cache):
        service = DiscoverService(populated, cache)
        first = service.list_articles("finance")

        populated.delete("f-new")
        second = service.list_articles("finance")

        assert second == first
        assert cache.get(discover_list_key("finance")) == first

    def test_invalidation_refreshes(self, populated, cache, record_factory):
        service = DiscoverService(populated, cache)
        service.list_articles("finance")

        populated.put(record_factory("f-newest", category="finance", pub_date_epoch=4000))
        cache.invalidate_topic("finance")

        assert service.list_articles("finance")[0]['url_hash'] == "f-newest"

    def test_last_updated(self, populated, cache):
        service = DiscoverService(populated, cache)
        assert service.last_updated() is None

        service.list_articles("market")
        assert service.last_updated() is not None

    def test_empty_topic(self, store, cache):
        assert DiscoverService(store, cache).list_articles("capital") == []


class TestGetArticle:
    """Article detail by URL."""

    URL = "https://news.example.com/acme-earnings"

    @pytest.fixture
    def article_store(self, store, record_factory):
        store.put(record_factory(hash_url(self.URL), url=self.URL, title="Acme Earnings"))
        return store

    def test_by_url(self, article_store, cache):
        article = DiscoverService(article_store, cache).get_article(self.URL)
        assert article['title'] == "Acme Earnings"

    def test_query_string_and_trailing_slash_ignored(self, article_store, cache):
        service = DiscoverService(article_store, cache)
        assert service.get_article(self.URL + "/?utm_source=feed")['title'] == "Acme Earnings"

    def test_cached(self, article_store, cache):
        service = DiscoverService(article_store, cache)
        service.get_article(self.URL)

        assert cache.get(article_detail_key(self.URL))['title'] == "Acme Earnings"

        article_store.delete(hash_url(self.URL))
        assert service.get_article(self.URL)['title'] == "Acme Earnings"

    def test_missing(self, store, cache):
        service = DiscoverService(store, cache)
        assert service.get_article("https://news.example.com/nope") is None
        assert cache.get(article_detail_key("https://news.example.com/nope")) is None
