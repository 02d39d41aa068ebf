"""
Shared fixtures for the financial news pipeline tests.
"""

import hashlib
from datetime import datetime, timezone
from typing import List

import numpy as np
import pytest

from finnews_rag.storage.article_store import ArticleStore
from finnews_rag.storage.vector_store import VectorStore
from finnews_rag.cache.cache_service import CacheService, MemoryCacheBackend


TEST_DIMENSION = 8


class FakeEmbedder:
    """Deterministic embedder: the same text always maps to the same unit vector."""

    def __init__(self, dimension: int = TEST_DIMENSION):
        self.dimension = dimension
        self.calls: List[str] = []

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        seed = int(hashlib.sha256(text.encode('utf-8')).hexdigest()[:8], 16)
        rng = np.random.default_rng(seed)
        vector = rng.standard_normal(self.dimension)
        vector = vector / np.linalg.norm(vector)
        return vector.tolist()


def make_record(url_hash: str, category: str = 'finance', title: str = None,
                content: str = 'Some article content', pub_date_epoch: int = 1714521600,
                url: str = None, ttl: int = 4102444800):
    """Build an article store record with sensible defaults."""
    return {
        'url_hash': url_hash,
        'title_hash': f"t-{url_hash}",
        'url': url or f"https://news.example.com/{url_hash}",
        'title': title or f"Title {url_hash}",
        'content': content,
        'thumbnail': '',
        'pub_date': datetime.fromtimestamp(pub_date_epoch, tz=timezone.utc).isoformat(),
        'pub_date_epoch': pub_date_epoch,
        'author': 'PR Newswire',
        'category': category,
        'source_key': 'items/test.json',
        'created_at': '2024-05-01T00:00:00+00:00',
        'updated_at': '2024-05-01T00:00:00+00:00',
        'ttl': ttl,
    }


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def store():
    return ArticleStore()


@pytest.fixture
def vector_store():
    return VectorStore(dimension=TEST_DIMENSION)


@pytest.fixture
def cache():
    return CacheService([MemoryCacheBackend(max_size=100)])


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    delays = []

    def sleep(seconds):
        delays.append(seconds)

    sleep.delays = delays
    return sleep


@pytest.fixture
def record_factory():
    return make_record
