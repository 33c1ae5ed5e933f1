"""Application configuration and constants."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_PACKAGE_DIR = Path(__file__).resolve().parent


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value is not None else default


def _get_bool(name: str, default: str) -> bool:
    return _get_env(name, default).lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    """Simple settings container with environment variable overrides."""

    es_host: str = _get_env("ES_HOST", "http://localhost:9200")
    es_username: str = _get_env("ES_USERNAME", "")
    es_password: str = _get_env("ES_PASSWORD", "")
    es_index_prefix: str = _get_env("ES_INDEX_PREFIX", "marketplace")
    mapping_path: str = _get_env("MAPPING_PATH", str(_PACKAGE_DIR / "product-mapping.json"))
    synonyms_path: str = _get_env("SYNONYMS_PATH", str(_PACKAGE_DIR / "synonyms.txt"))
    catalog_path: str = _get_env("CATALOG_PATH", "catalog.json")
    experiments_path: str = _get_env("EXPERIMENTS_PATH", "experiments.json")
    redis_host: str = _get_env("REDIS_HOST", "localhost")
    redis_port: int = int(_get_env("REDIS_PORT", "6379"))
    cache_ttl_seconds: int = int(_get_env("CACHE_TTL_SECONDS", "300"))
    experiment_cache_ttl_seconds: int = int(_get_env("EXPERIMENT_CACHE_TTL_SECONDS", "300"))
    assignment_ttl_seconds: int = int(_get_env("ASSIGNMENT_TTL_SECONDS", "3600"))
    bulk_size: int = int(_get_env("BULK_SIZE", "500"))
    default_page_size: int = int(_get_env("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(_get_env("MAX_PAGE_SIZE", "100"))
    low_stock_threshold: int = int(_get_env("LOW_STOCK_THRESHOLD", "10"))
    health_timeout_seconds: float = float(_get_env("HEALTH_TIMEOUT_SECONDS", "5"))
    slow_query_ms: int = int(_get_env("SEARCH_SLOW_QUERY_MS", "1000"))
    default_currency: str = _get_env("DEFAULT_CURRENCY", "INR")
    default_locale: str = _get_env("DEFAULT_LOCALE", "en-IN")
    use_redis: bool = _get_bool("USE_REDIS", "true")
    log_level: str = _get_env("LOG_LEVEL", "INFO")

    @property
    def products_index(self) -> str:
        return f"{self.es_index_prefix}_products"

    @property
    def products_alias(self) -> str:
        return f"{self.es_index_prefix}_products_alias"


settings = Settings()
