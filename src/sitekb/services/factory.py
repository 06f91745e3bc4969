"""Factory functions for creating and wiring sitekb services.

Provides production factories backed by the configured database and a
persistent Chroma directory, and test factories that use in-memory stores
for fast, isolated tests.
"""

from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path
from uuid import uuid4

import chromadb
import httpx
import structlog

from sitekb.config import AppConfig, ChunkingConfig, CrawlConfig, EmbeddingsConfig
from sitekb.services.chunk_tables import CHUNK_TABLES
from sitekb.services.chunker import Chunker
from sitekb.services.crawler import CrawlDependencies, CrawlProgressSink, NullProgressSink
from sitekb.services.embedder import Embedder, OpenAIEmbedder
from sitekb.services.knowledge_store import KnowledgeStore, create_engine_from_url
from sitekb.services.renderers import HttpPageRenderer, PageRenderer, PlaywrightPageRenderer
from sitekb.services.sitemaps import SitemapDiscoverer
from sitekb.services.tokenizer import Tokenizer
from sitekb.services.vector_store import VectorStore

_TEST_COLLECTION_ID_LENGTH = 8
_COLLECTION_NAMES = tuple(table.name for table in CHUNK_TABLES)


def create_knowledge_store(database_url: str, vector_path: str | Path) -> KnowledgeStore:
    """Create a KnowledgeStore with persistent storage.

    Args:
        database_url: SQLAlchemy async URL or SQLite file path.
        vector_path: Directory for the Chroma persistent client.
    """
    logger = structlog.get_logger(__name__)

    vector_path = Path(vector_path)
    vector_path.mkdir(parents=True, exist_ok=True)

    engine = create_engine_from_url(database_url)
    vector_store = VectorStore(
        client=chromadb.PersistentClient(path=str(vector_path)),
        collection_names=_COLLECTION_NAMES,
        logger=logger,
    )
    return KnowledgeStore(engine=engine, vector_store=vector_store, logger=logger)


def create_test_knowledge_store(collection_prefix: str | None = None) -> KnowledgeStore:
    """Create a KnowledgeStore with in-memory storage for testing.

    Each call gets its own SQLite database and its own collection prefix on
    the shared ephemeral Chroma client, so tests don't interfere.
    """
    logger = structlog.get_logger(__name__)

    engine = create_engine_from_url(":memory:")
    prefix = collection_prefix or f"test_{uuid4().hex[:_TEST_COLLECTION_ID_LENGTH]}_"
    vector_store = VectorStore(
        client=chromadb.EphemeralClient(),
        collection_names=_COLLECTION_NAMES,
        collection_prefix=prefix,
        logger=logger,
    )
    return KnowledgeStore(engine=engine, vector_store=vector_store, logger=logger)


def create_embedder(config: EmbeddingsConfig) -> OpenAIEmbedder:
    return OpenAIEmbedder(
        api_key=config.api_key,
        max_retries=config.max_retries,
        initial_backoff_ms=config.initial_backoff_ms,
        batch_size=config.batch_size,
    )


def create_chunker(config: ChunkingConfig, tokenizer: Tokenizer | None = None) -> Chunker:
    return Chunker(
        chunk_size_tokens=config.chunk_size_tokens,
        chunk_overlap_tokens=config.chunk_overlap_tokens,
        strategy=config.strategy,
        tokenizer=tokenizer,
    )


def create_http_client(config: CrawlConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": config.user_agent},
        timeout=httpx.Timeout(config.page_timeout_ms / 1000),
        follow_redirects=True,
    )


@asynccontextmanager
async def open_crawl_dependencies(
    config: AppConfig,
    store: KnowledgeStore,
    embedder: Embedder,
    chunker: Chunker | None = None,
    progress: CrawlProgressSink | None = None,
) -> AsyncIterator[CrawlDependencies]:
    """Wire the collaborators of a crawl and release them afterwards.

    Opens one shared HTTP client for sitemaps and page fetches and, when the
    Playwright renderer is configured, a headless browser.
    """
    async with AsyncExitStack() as stack:
        http_client = await stack.enter_async_context(create_http_client(config.crawl))

        renderer: PageRenderer
        if config.crawl.renderer == "playwright":
            renderer = await stack.enter_async_context(
                PlaywrightPageRenderer(
                    content_wait_selector=config.crawl.content_wait_selector,
                    timeout_ms=config.crawl.page_timeout_ms,
                    user_agent=config.crawl.user_agent,
                )
            )
        else:
            renderer = HttpPageRenderer(http_client)

        yield CrawlDependencies(
            store=store,
            embedder=embedder,
            chunker=chunker or create_chunker(config.chunking),
            renderer=renderer,
            config=config.crawl,
            sitemaps=SitemapDiscoverer(http_client),
            progress=progress or NullProgressSink(),
        )
