"""Environment-driven configuration.

Settings are read from environment variables (the CLI loads a ``.env`` file
first) into frozen pydantic sections. Required values raise ``ConfigError``;
malformed optional integers fall back to their defaults with a warning.
"""

import os
from collections.abc import Mapping

import structlog
from pydantic import BaseModel, ConfigDict, Field

from sitekb.errors import ConfigError
from sitekb.models.enums import ChunkingStrategy

_TRUE_VALUES = frozenset({"1", "true", "yes", "y", "on"})

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; sitekb/0.1; +https://github.com/sitekb)"

logger = structlog.get_logger(__name__)


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class DatabaseConfig(_Section):
    url: str


class VectorConfig(_Section):
    path: str = ".sitekb/vectors"


class EmbeddingsConfig(_Section):
    api_key: str
    max_retries: int = Field(default=5, ge=0)
    initial_backoff_ms: int = Field(default=1000, ge=0)
    batch_size: int = Field(default=100, ge=1)


class CrawlConfig(_Section):
    max_pages: int = Field(default=100, ge=1)
    max_depth: int = Field(default=3, ge=0)
    concurrency: int = Field(default=5, ge=1)
    min_chars: int = Field(default=500, ge=0)
    enable_sitemap: bool = True
    content_wait_selector: str | None = None
    renderer: str = "http"
    page_timeout_ms: int = Field(default=15000, ge=0)
    user_agent: str = DEFAULT_USER_AGENT


class ChunkingConfig(_Section):
    chunk_size_tokens: int = Field(default=900, ge=1)
    chunk_overlap_tokens: int = Field(default=150, ge=0)
    strategy: ChunkingStrategy = ChunkingStrategy.PARAGRAPH


class AppConfig(_Section):
    database: DatabaseConfig
    vectors: VectorConfig
    embeddings: EmbeddingsConfig
    crawl: CrawlConfig
    chunking: ChunkingConfig
    log_level: str = "info"


def load_config(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Build an AppConfig from environment variables.

    Args:
        environ: Mapping to read from. Defaults to ``os.environ``.

    Raises:
        ConfigError: If a required variable is missing or values are inconsistent.
    """
    env = os.environ if environ is None else environ

    chunk_size = _int_env(env, "CHUNK_SIZE_TOKENS", 900)
    chunk_overlap = _int_env(env, "CHUNK_OVERLAP_TOKENS", 150)
    if chunk_size < 1:
        raise ConfigError("CHUNK_SIZE_TOKENS must be at least 1")
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ConfigError("CHUNK_OVERLAP_TOKENS must be between 0 and CHUNK_SIZE_TOKENS - 1")

    strategy_raw = env.get("CHUNK_STRATEGY", ChunkingStrategy.PARAGRAPH.value).strip().lower()
    try:
        strategy = ChunkingStrategy(strategy_raw)
    except ValueError as exc:
        raise ConfigError(f"unknown CHUNK_STRATEGY: {strategy_raw}") from exc

    renderer = env.get("CRAWL_RENDERER", "http").strip().lower()
    if renderer not in {"http", "playwright"}:
        raise ConfigError(f"unknown CRAWL_RENDERER: {renderer}")

    selector = env.get("CRAWL_CONTENT_WAIT_SELECTOR", "").strip() or None

    try:
        return AppConfig(
            database=DatabaseConfig(url=_require(env, "DATABASE_URL")),
            vectors=VectorConfig(path=env.get("CHROMA_PATH", "").strip() or ".sitekb/vectors"),
            embeddings=EmbeddingsConfig(
                api_key=_require(env, "OPENAI_API_KEY"),
                max_retries=_int_env(env, "EMBEDDINGS_MAX_RETRIES", 5),
                initial_backoff_ms=_int_env(env, "EMBEDDINGS_INITIAL_BACKOFF_MS", 1000),
                batch_size=_int_env(env, "EMBEDDINGS_BATCH_SIZE", 100),
            ),
            crawl=CrawlConfig(
                max_pages=_int_env(env, "CRAWL_MAX_PAGES", 100),
                max_depth=_int_env(env, "CRAWL_MAX_DEPTH", 3),
                concurrency=_int_env(env, "CRAWL_CONCURRENCY", 5),
                min_chars=_int_env(env, "CRAWL_MIN_CHARS", 500),
                enable_sitemap=_bool_env(env, "ENABLE_SITEMAP", True),
                content_wait_selector=selector,
                renderer=renderer,
                page_timeout_ms=_int_env(env, "CRAWL_PAGE_TIMEOUT_MS", 15000),
                user_agent=env.get("CRAWL_USER_AGENT", "").strip() or DEFAULT_USER_AGENT,
            ),
            chunking=ChunkingConfig(
                chunk_size_tokens=chunk_size,
                chunk_overlap_tokens=chunk_overlap,
                strategy=strategy,
            ),
            log_level=env.get("LOG_LEVEL", "info").strip().lower() or "info",
        )
    except ValueError as exc:
        # pydantic's ValidationError subclasses ValueError
        raise ConfigError(str(exc)) from exc


def _require(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "").strip()
    if not value:
        raise ConfigError(f"missing required environment variable {name}")
    return value


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("config_invalid_integer", name=name, value=raw, default=default)
        return default


def _bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES
