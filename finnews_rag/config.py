"""
Centralized Configuration Module

Provides a single source of truth for all pipeline configuration parameters.
Loads settings from environment variables with sensible defaults and validation.
"""

import os
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, Optional
from urllib.parse import urlparse
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


SUPPORTED_EMBEDDING_PROVIDERS = ('gemini', 'ollama', 'bedrock')


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


@dataclass
class Config:
    """
    Centralized configuration for the financial news RAG pipeline.

    All configuration parameters are loaded from environment variables
    with sensible defaults. Validation is performed on initialization.
    """

    # Embedding Provider Settings
    embedding_provider: str = field(default="gemini")
    embedding_api_key: str = field(default="")
    embedding_model: str = field(default="gemini-embedding-001")
    embedding_dimension: int = field(default=3072)
    embedding_base_url: str = field(default="https://generativelanguage.googleapis.com/v1beta")
    embedding_timeout: int = field(default=30)

    # Ollama Settings (local embeddings and chat model)
    ollama_base_url: str = field(default="http://localhost:11434")
    ollama_embedding_model: str = field(default="nomic-embed-text")
    llm_model: str = field(default="llama3.1:latest")
    llm_temperature: float = field(default=0.7)

    # Text Processing
    embedding_text_max_chars: int = field(default=8000)
    hydrated_content_max_chars: int = field(default=4000)
    article_ttl_days: int = field(default=30)

    # Storage Paths
    article_store_path: str = field(default="data/articles/articles.json")
    faiss_index_path: str = field(default="data/embeddings/articles.index")
    audit_log_dir: str = field(default="data/audit")
    audit_log_prefix: str = field(default="vectors-log")
    items_prefix: str = field(default="items/")

    # Cache Settings
    redis_url: Optional[str] = field(default=None)
    cache_default_ttl: int = field(default=300)
    article_cache_ttl: int = field(default=3600)
    memory_cache_max_size: int = field(default=100)

    # Backfill Settings
    backfill_batch_size: int = field(default=100)
    backfill_embedding_delay_ms: int = field(default=50)
    backfill_batch_delay_ms: int = field(default=2000)
    backfill_flush_retries: int = field(default=3)

    # Retry Settings
    retry_max_attempts: int = field(default=3)
    retry_base_delay: float = field(default=1.0)
    retry_max_delay: float = field(default=30.0)
    rate_limit_cooldown: float = field(default=60.0)

    # Retrieval Settings
    rerank_threshold: float = field(default=0.3)
    quality_rerank_threshold: float = field(default=0.35)
    max_workers: int = field(default=4)
    response_language: str = field(default="English")

    def __post_init__(self):
        """Load configuration from environment and validate."""
        self._load_from_environment()
        self._validate()

    def _load_from_environment(self):
        """Load configuration from environment variables."""
        # Embedding Provider Settings
        self.embedding_provider = self._get_env_str('EMBEDDING_PROVIDER', self.embedding_provider).lower()
        self.embedding_api_key = (
            os.getenv('EMBEDDING_API_KEY')
            or os.getenv('GEMINI_API_KEY')
            or os.getenv('GOOGLE_API_KEY')
            or self.embedding_api_key
        ).strip()
        self.embedding_model = self._get_env_str('EMBEDDING_MODEL', self.embedding_model)
        self.embedding_dimension = self._get_env_int('EMBEDDING_DIMENSION', self.embedding_dimension)
        self.embedding_base_url = self._get_env_str('EMBEDDING_BASE_URL', self.embedding_base_url)
        self.embedding_timeout = self._get_env_int('EMBEDDING_TIMEOUT', self.embedding_timeout)

        # Ollama Settings
        self.ollama_base_url = self._get_env_str('OLLAMA_BASE_URL', self.ollama_base_url)
        self.ollama_embedding_model = self._get_env_str('OLLAMA_EMBEDDING_MODEL', self.ollama_embedding_model)
        self.llm_model = self._get_env_str('LLM_MODEL', self.llm_model)
        self.llm_temperature = self._get_env_float('LLM_TEMPERATURE', self.llm_temperature)

        # Text Processing
        self.embedding_text_max_chars = self._get_env_int('EMBEDDING_TEXT_MAX_CHARS', self.embedding_text_max_chars)
        self.hydrated_content_max_chars = self._get_env_int('HYDRATED_CONTENT_MAX_CHARS', self.hydrated_content_max_chars)
        self.article_ttl_days = self._get_env_int('ARTICLE_TTL_DAYS', self.article_ttl_days)

        # Storage Paths
        self.article_store_path = self._get_env_path('ARTICLE_STORE_PATH', self.article_store_path)
        self.faiss_index_path = self._get_env_path('FAISS_INDEX_PATH', self.faiss_index_path)
        self.audit_log_dir = self._get_env_path('AUDIT_LOG_DIR', self.audit_log_dir)
        self.audit_log_prefix = self._get_env_str('AUDIT_LOG_PREFIX', self.audit_log_prefix)
        self.items_prefix = self._get_env_str('ITEMS_PREFIX', self.items_prefix)

        # Cache Settings
        self.redis_url = self._get_env_str('REDIS_URL', self.redis_url or '') or None
        self.cache_default_ttl = self._get_env_int('CACHE_DEFAULT_TTL', self.cache_default_ttl)
        self.article_cache_ttl = self._get_env_int('ARTICLE_CACHE_TTL', self.article_cache_ttl)
        self.memory_cache_max_size = self._get_env_int('MEMORY_CACHE_MAX_SIZE', self.memory_cache_max_size)

        # Backfill Settings
        self.backfill_batch_size = self._get_env_int('BACKFILL_BATCH_SIZE', self.backfill_batch_size)
        self.backfill_embedding_delay_ms = self._get_env_int('BACKFILL_EMBEDDING_DELAY_MS', self.backfill_embedding_delay_ms)
        self.backfill_batch_delay_ms = self._get_env_int('BACKFILL_BATCH_DELAY_MS', self.backfill_batch_delay_ms)
        self.backfill_flush_retries = self._get_env_int('BACKFILL_FLUSH_RETRIES', self.backfill_flush_retries)

        # Retry Settings
        self.retry_max_attempts = self._get_env_int('RETRY_MAX_ATTEMPTS', self.retry_max_attempts)
        self.retry_base_delay = self._get_env_float('RETRY_BASE_DELAY', self.retry_base_delay)
        self.retry_max_delay = self._get_env_float('RETRY_MAX_DELAY', self.retry_max_delay)
        self.rate_limit_cooldown = self._get_env_float('RATE_LIMIT_COOLDOWN', self.rate_limit_cooldown)

        # Retrieval Settings
        self.rerank_threshold = self._get_env_float('RERANK_THRESHOLD', self.rerank_threshold)
        self.quality_rerank_threshold = self._get_env_float('QUALITY_RERANK_THRESHOLD', self.quality_rerank_threshold)
        self.max_workers = self._get_env_int('MAX_WORKERS', self.max_workers)
        self.response_language = self._get_env_str('RESPONSE_LANGUAGE', self.response_language)

    def _get_env_str(self, key: str, default: str) -> str:
        """Get string value from environment."""
        value = os.getenv(key, default)
        if isinstance(value, str):
            value = value.strip()
        return value

    def _get_env_int(self, key: str, default: int) -> int:
        """Get integer value from environment."""
        value = os.getenv(key)
        if value is None:
            return default

        try:
            return int(value)
        except ValueError:
            raise ConfigValidationError(
                f"Invalid integer value for {key}: '{value}'"
            )

    def _get_env_float(self, key: str, default: float) -> float:
        """Get float value from environment."""
        value = os.getenv(key)
        if value is None:
            return default

        try:
            return float(value)
        except ValueError:
            raise ConfigValidationError(
                f"Invalid float value for {key}: '{value}'"
            )

    def _get_env_path(self, key: str, default: str) -> str:
        """Get path value from environment with expansion."""
        value = os.getenv(key, default)
        if isinstance(value, str):
            value = value.strip()
            # Expand ~ to home directory
            value = os.path.expanduser(value)
        return value

    def _validate(self):
        """Validate configuration parameters."""
        if self.embedding_provider not in SUPPORTED_EMBEDDING_PROVIDERS:
            raise ConfigValidationError(
                f"embedding_provider must be one of {SUPPORTED_EMBEDDING_PROVIDERS}, "
                f"got '{self.embedding_provider}'"
            )

        if not self.embedding_model:
            raise ConfigValidationError("embedding_model cannot be empty")

        # Validate positive integers
        positive_int_fields = [
            ('embedding_dimension', self.embedding_dimension),
            ('embedding_text_max_chars', self.embedding_text_max_chars),
            ('hydrated_content_max_chars', self.hydrated_content_max_chars),
            ('article_ttl_days', self.article_ttl_days),
            ('cache_default_ttl', self.cache_default_ttl),
            ('article_cache_ttl', self.article_cache_ttl),
            ('memory_cache_max_size', self.memory_cache_max_size),
            ('backfill_batch_size', self.backfill_batch_size),
            ('backfill_flush_retries', self.backfill_flush_retries),
            ('retry_max_attempts', self.retry_max_attempts),
            ('max_workers', self.max_workers),
        ]

        for field_name, value in positive_int_fields:
            if value <= 0:
                raise ConfigValidationError(
                    f"{field_name} must be positive, got {value}"
                )

        non_negative_fields = [
            ('backfill_embedding_delay_ms', self.backfill_embedding_delay_ms),
            ('backfill_batch_delay_ms', self.backfill_batch_delay_ms),
            ('retry_base_delay', self.retry_base_delay),
            ('retry_max_delay', self.retry_max_delay),
            ('rate_limit_cooldown', self.rate_limit_cooldown),
        ]

        for field_name, value in non_negative_fields:
            if value < 0:
                raise ConfigValidationError(
                    f"{field_name} must not be negative, got {value}"
                )

        # Validate timeouts (at least 1 second)
        if self.embedding_timeout < 1:
            raise ConfigValidationError(
                f"embedding_timeout must be at least 1, got {self.embedding_timeout}"
            )

        # Rerank thresholds are cosine similarities
        for field_name, value in (
            ('rerank_threshold', self.rerank_threshold),
            ('quality_rerank_threshold', self.quality_rerank_threshold),
        ):
            if not -1.0 <= value <= 1.0:
                raise ConfigValidationError(
                    f"{field_name} must be between -1 and 1, got {value}"
                )

        # Validate URL format
        for field_name, url in (
            ('embedding_base_url', self.embedding_base_url),
            ('ollama_base_url', self.ollama_base_url),
        ):
            parsed = urlparse(url)
            if not all([parsed.scheme, parsed.netloc]):
                raise ConfigValidationError(
                    f"Invalid URL for {field_name}: {url}"
                )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return asdict(self)

    def __repr__(self) -> str:
        """String representation of configuration with secrets masked."""
        items = []
        for key, value in self.to_dict().items():
            if key == 'embedding_api_key' and value:
                value = '***'
            items.append(f"{key}={value!r}")
        return f"Config({', '.join(items)})"

    def update(self, **kwargs):
        """
        Update configuration values with validation.

        Args:
            **kwargs: Configuration parameters to update

        Raises:
            ConfigValidationError: If validation fails
        """
        # Store original values for rollback
        original_values = {}

        try:
            for key, value in kwargs.items():
                if not hasattr(self, key):
                    raise ConfigValidationError(f"Unknown configuration parameter: {key}")
                original_values[key] = getattr(self, key)
                setattr(self, key, value)

            self._validate()

        except Exception:
            # Rollback on validation failure
            for key, value in original_values.items():
                setattr(self, key, value)
            raise

    def get_backfill_config(self) -> Dict[str, Any]:
        """Get backfill-related configuration."""
        return {
            'batch_size': self.backfill_batch_size,
            'embedding_delay': self.backfill_embedding_delay_ms / 1000.0,
            'batch_delay': self.backfill_batch_delay_ms / 1000.0,
            'max_flush_retries': self.backfill_flush_retries,
            'rate_limit_cooldown': self.rate_limit_cooldown,
        }

    def get_retry_config(self) -> Dict[str, Any]:
        """Get retry-related configuration."""
        return {
            'max_attempts': self.retry_max_attempts,
            'base_delay': self.retry_base_delay,
            'max_delay': self.retry_max_delay,
            'rate_limit_cooldown': self.rate_limit_cooldown,
        }

    def get_storage_config(self) -> Dict[str, Any]:
        """Get storage-related configuration."""
        return {
            'article_store_path': self.article_store_path,
            'faiss_index_path': self.faiss_index_path,
            'audit_log_dir': self.audit_log_dir,
        }


# Singleton instance
_config_instance: Optional[Config] = None


def get_config() -> Config:
    """
    Get the global configuration instance (singleton pattern).

    Returns:
        Config: Global configuration instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance


def reset_config():
    """Reset the global configuration instance."""
    global _config_instance
    _config_instance = None
