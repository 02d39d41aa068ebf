"""
Embedding Providers

Text -> fixed-dimension vector behind a one-method interface:
- GeminiEmbeddingProvider: gemini-embedding-001 over HTTP (API-key auth)
- OllamaEmbeddingProvider: local Ollama model with in-memory caching
- BedrockEmbeddingProvider: placeholder, not yet available
- RetryingEmbeddingProvider: bounded retry with backoff around any provider

HTTP failures are mapped onto the error taxonomy in finnews_rag.errors so
callers can decide between retrying, cooling down and giving up.
"""

import time
import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import List, Dict, Optional, Callable

import requests

from ..errors import (
    EmbeddingValidationError,
    ProviderError,
    TransientProviderError,
    ProviderPermissionError,
)
from ..retry import retry_with_backoff

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    """Statistics for cache performance tracking."""
    hits: int = 0
    misses: int = 0
    total_requests: int = 0
    cache_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        return self.hits / self.total_requests if self.total_requests > 0 else 0.0

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            **asdict(self),
            'hit_rate': self.hit_rate
        }


def _validate_text(text: str) -> None:
    if not text or not text.strip():
        raise EmbeddingValidationError("Embedding text must not be empty")


def _raise_for_status(response: requests.Response, provider: str) -> None:
    """Map a non-2xx response onto the provider error taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return

    detail = response.text[:200] if response.text else ''
    message = f"{provider} embedding API error: {status} {detail}".strip()

    if status == 429 or status >= 500:
        raise TransientProviderError(message, status_code=status)
    if status in (401, 403):
        raise ProviderPermissionError(message, status_code=status)
    raise ProviderError(message, status_code=status)


class EmbeddingProvider(ABC):
    """Interface for text embedding providers."""

    dimension: int = 0

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """
        Embed a single text.

        Raises:
            EmbeddingValidationError: If text is empty
            TransientProviderError: Timeout, 5xx or 429
            ProviderPermissionError: 401/403
            ProviderError: Any other failure
        """


class GeminiEmbeddingProvider(EmbeddingProvider):
    """
    Google Gemini embedding API client.

    Uses the embedContent endpoint with outputDimensionality so the model's
    Matryoshka embeddings can be truncated to the configured dimension.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-embedding-001",
        dimension: int = 3072,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: int = 30,
        session: Optional[requests.Session] = None
    ):
        self.api_key = api_key
        self.model = model
        self.dimension = dimension
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def embed(self, text: str) -> List[float]:
        _validate_text(text)

        if not self.api_key:
            raise ProviderPermissionError("EMBEDDING_API_KEY is not set")

        url = f"{self.base_url}/models/{self.model}:embedContent"
        payload = {
            'model': f"models/{self.model}",
            'content': {'parts': [{'text': text}]},
            'outputDimensionality': self.dimension,
        }

        try:
            response = self.session.post(
                url,
                json=payload,
                headers={'x-goog-api-key': self.api_key},
                timeout=self.timeout
            )
        except requests.exceptions.Timeout:
            raise TransientProviderError(f"Gemini request timed out after {self.timeout}s")
        except requests.exceptions.ConnectionError as e:
            raise TransientProviderError(f"Unable to connect to Gemini API: {e}")
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Gemini request failed: {e}")

        _raise_for_status(response, 'Gemini')

        try:
            data = response.json()
        except ValueError:
            raise ProviderError(f"Invalid JSON from Gemini: {response.text[:200]}")

        values = (data.get('embedding') or {}).get('values')
        if not isinstance(values, list) or not values:
            raise ProviderError(f"Unexpected Gemini response: {str(data)[:200]}")

        return [float(v) for v in values]


class OllamaEmbeddingProvider(EmbeddingProvider):
    """
    Embeddings from a local Ollama model.

    Results are cached in memory by text hash; repeated texts (common in
    reranking) skip the API call.
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str = "http://localhost:11434",
        dimension: int = 768,
        timeout: int = 30,
        enable_cache: bool = True
    ):
        self.model = model
        self.base_url = base_url.rstrip('/')
        self.dimension = dimension
        self.timeout = timeout
        self.enable_cache = enable_cache

        self._memory_cache: Dict[str, List[float]] = {}
        self._cache_stats = CacheStats()
        self._lock = threading.Lock()

        logger.info(f"Initialized OllamaEmbeddingProvider with model: {self.model}")

    def _compute_hash(self, text: str) -> str:
        return hashlib.sha256(text.encode('utf-8')).hexdigest()

    def verify_connection(self) -> bool:
        """
        Verify the Ollama server is reachable and the model is pulled.

        Raises:
            TransientProviderError: If the server is unreachable
            ProviderError: If the model is not available
        """
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(
                f"Unable to connect to Ollama at {self.base_url}. "
                f"Please ensure Ollama is running (try: ollama serve). {e}"
            )

        _raise_for_status(response, 'Ollama')

        available_models = [m['name'] for m in response.json().get('models', [])]
        if self.model not in available_models and f"{self.model}:latest" not in available_models:
            raise ProviderError(
                f"Model '{self.model}' not found. Available models: {available_models}. "
                f"Try: ollama pull {self.model}"
            )

        logger.info(f"✓ Model '{self.model}' is available")
        return True

    def embed(self, text: str) -> List[float]:
        _validate_text(text)

        text_hash = self._compute_hash(text)
        with self._lock:
            self._cache_stats.total_requests += 1
            if self.enable_cache and text_hash in self._memory_cache:
                self._cache_stats.hits += 1
                return self._memory_cache[text_hash]
            self._cache_stats.misses += 1

        try:
            response = requests.post(
                f"{self.base_url}/api/embeddings",
                json={'model': self.model, 'prompt': text},
                timeout=self.timeout
            )
        except requests.exceptions.Timeout:
            raise TransientProviderError(f"Request timed out after {self.timeout}s")
        except requests.exceptions.ConnectionError:
            raise TransientProviderError(
                f"Unable to connect to Ollama at {self.base_url}. "
                "Please ensure Ollama is running."
            )
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Error generating embedding: {e}")

        _raise_for_status(response, 'Ollama')

        try:
            embedding = [float(v) for v in response.json()['embedding']]
        except (KeyError, ValueError, TypeError) as e:
            raise ProviderError(f"Unexpected API response format: {e}")

        if self.enable_cache:
            with self._lock:
                self._memory_cache[text_hash] = embedding
                self._cache_stats.cache_size = len(self._memory_cache)

        return embedding

    def get_cache_stats(self) -> Dict:
        return self._cache_stats.to_dict()

    def clear_cache(self) -> None:
        with self._lock:
            self._memory_cache.clear()
            self._cache_stats = CacheStats()
        logger.info("Cleared memory cache")


class BedrockEmbeddingProvider(EmbeddingProvider):
    """Placeholder for Amazon Titan embeddings on Bedrock."""

    def __init__(self, dimension: int = 1024):
        self.dimension = dimension

    def embed(self, text: str) -> List[float]:
        _validate_text(text)
        raise ProviderError(
            "Bedrock embedding provider is not yet implemented. Use EMBEDDING_PROVIDER=gemini"
        )


class RetryingEmbeddingProvider(EmbeddingProvider):
    """
    Wraps a provider with bounded retry.

    Only TransientProviderError is retried; a 429 adds the rate-limit
    cooldown to the backoff. Validation and permission errors propagate
    immediately.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        rate_limit_cooldown: float = 60.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.provider = provider
        self.dimension = provider.dimension
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.rate_limit_cooldown = rate_limit_cooldown
        self.sleep = sleep

    def embed(self, text: str) -> List[float]:
        _validate_text(text)
        return retry_with_backoff(
            lambda: self.provider.embed(text),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            rate_limit_cooldown=self.rate_limit_cooldown,
            sleep=self.sleep,
            description=f"{type(self.provider).__name__}.embed"
        )


def create_embedding_provider(config, with_retry: bool = True) -> EmbeddingProvider:
    """
    Build the provider selected by EMBEDDING_PROVIDER.

    Args:
        config: Config instance
        with_retry: Wrap the provider in RetryingEmbeddingProvider

    Returns:
        EmbeddingProvider
    """
    name = config.embedding_provider

    if name == 'gemini':
        provider = GeminiEmbeddingProvider(
            api_key=config.embedding_api_key,
            model=config.embedding_model,
            dimension=config.embedding_dimension,
            base_url=config.embedding_base_url,
            timeout=config.embedding_timeout
        )
    elif name == 'ollama':
        provider = OllamaEmbeddingProvider(
            model=config.ollama_embedding_model,
            base_url=config.ollama_base_url,
            dimension=config.embedding_dimension,
            timeout=config.embedding_timeout
        )
    elif name == 'bedrock':
        provider = BedrockEmbeddingProvider(dimension=config.embedding_dimension)
    else:
        raise ValueError(f"Unsupported embedding provider: {name}")

    logger.info(f"Using {name} embedding provider ({provider.dimension} dimensions)")

    if not with_retry:
        return provider

    retry_config = config.get_retry_config()
    return RetryingEmbeddingProvider(
        provider,
        max_attempts=retry_config['max_attempts'],
        base_delay=retry_config['base_delay'],
        max_delay=retry_config['max_delay'],
        rate_limit_cooldown=retry_config['rate_limit_cooldown']
    )
