"""Crawl orchestrator: bounded-concurrency, breadth-first crawl of one domain.

Seeds are the site root plus sitemap pages. A fixed pool of asyncio workers
drains a FIFO queue, so pages are visited roughly in depth order. Each page
is rendered, parsed, ingested and mined for same-host links, which are
normalized, filtered and admitted into a discovered-URL set capped at
``max_pages``. Progress counters and a never-decreasing page estimate are
reported to an optional progress sink.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import openai
import structlog
from chromadb.errors import ChromaError
from sqlalchemy.exc import SQLAlchemyError

from sitekb.config import CrawlConfig
from sitekb.errors import DataIntegrityError, FetchError
from sitekb.models.client import Client
from sitekb.models.crawl_job import CrawlProgress, CrawlResult
from sitekb.services.chunker import Chunker
from sitekb.services.embedder import Embedder
from sitekb.services.html_parser import extract_links, parse_html_to_text
from sitekb.services.ingestion import ingest_text_for_client
from sitekb.services.knowledge_store import KnowledgeStore
from sitekb.services.renderers import PageRenderer
from sitekb.services.sitemaps import SitemapDiscoverer
from sitekb.services.url_normalizer import (
    extract_domain,
    normalize_domain_to_start_url,
    normalize_url_for_dedup,
    should_skip_crawl_url,
)

TOTALS_REPORT_INTERVAL_SECONDS = 1.0
TOTALS_REPORT_MIN_DELTA = 5

# Errors that lose one page but leave the crawl running.
_PAGE_INGEST_ERRORS = (openai.OpenAIError, SQLAlchemyError, ChromaError)


class CrawlProgressSink(Protocol):
    async def on_totals_known(self, total_pages_estimated: int | None) -> None: ...

    async def on_progress(self, progress: CrawlProgress) -> None: ...


class NullProgressSink:
    async def on_totals_known(self, total_pages_estimated: int | None) -> None:
        return None

    async def on_progress(self, progress: CrawlProgress) -> None:
        return None


class DiscoveredUrlSet:
    """Normalized URLs seen during one crawl, with atomic insert-if-absent."""

    def __init__(self) -> None:
        self._urls: set[str] = set()
        self._lock = asyncio.Lock()

    async def admit(self, url: str, cap: int | None = None) -> bool:
        """Add ``url`` unless already present or the set has reached ``cap``."""
        async with self._lock:
            if url in self._urls:
                return False
            if cap is not None and len(self._urls) >= cap:
                return False
            self._urls.add(url)
            return True

    def __contains__(self, url: object) -> bool:
        return url in self._urls

    def __len__(self) -> int:
        return len(self._urls)


class TotalsReporter:
    """Rate-limits page-estimate reports and keeps them non-decreasing.

    A report goes out when forced, or when the estimate grew and either
    ``interval_seconds`` have passed since the last report or it grew by at
    least ``min_delta``.
    """

    def __init__(
        self,
        sink: CrawlProgressSink,
        interval_seconds: float = TOTALS_REPORT_INTERVAL_SECONDS,
        min_delta: int = TOTALS_REPORT_MIN_DELTA,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._interval = interval_seconds
        self._min_delta = min_delta
        self._clock = clock
        self._lock = asyncio.Lock()
        self._current = 0
        self._last_reported: int | None = None
        self._last_time = 0.0

    @property
    def current(self) -> int:
        return self._current

    async def report(self, estimate: int, force: bool = False) -> bool:
        async with self._lock:
            self._current = max(self._current, estimate)
            delta = self._current - (self._last_reported or 0)
            now = self._clock()
            if not force:
                if delta <= 0:
                    return False
                if now - self._last_time < self._interval and delta < self._min_delta:
                    return False
            await self._sink.on_totals_known(self._current)
            self._last_reported = self._current
            self._last_time = now
            return True


@dataclass
class CrawlDependencies:
    store: KnowledgeStore
    embedder: Embedder
    chunker: Chunker
    renderer: PageRenderer
    config: CrawlConfig
    sitemaps: SitemapDiscoverer | None = None
    progress: CrawlProgressSink = field(default_factory=NullProgressSink)
    clock: Callable[[], float] = time.monotonic


@dataclass(frozen=True)
class CrawlRequest:
    url: str
    depth: int


class _CrawlState:
    """Counters shared by the workers of one crawl."""

    def __init__(self, max_requests: int) -> None:
        self._lock = asyncio.Lock()
        self._max_requests = max_requests
        self.requests_started = 0
        self.pages_visited = 0
        self.pages_stored = 0
        self.chunks_stored = 0

    async def claim_request(self) -> bool:
        async with self._lock:
            if self.requests_started >= self._max_requests:
                return False
            self.requests_started += 1
            return True

    async def page_visited(self) -> None:
        async with self._lock:
            self.pages_visited += 1

    async def page_stored(self, chunks: int) -> None:
        async with self._lock:
            self.pages_stored += 1
            self.chunks_stored += chunks

    def snapshot(self) -> CrawlProgress:
        return CrawlProgress(
            pages_visited=self.pages_visited,
            pages_stored=self.pages_stored,
            chunks_stored=self.chunks_stored,
        )


class CrawlOrchestrator:
    """Runs one domain crawl for one client.

    All collaborators are injected through ``CrawlDependencies`` so tests can
    substitute fakes for the renderer, embedder and store.
    """

    def __init__(
        self,
        deps: CrawlDependencies,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._deps = deps
        self._config = deps.config
        self._logger = logger or structlog.get_logger(__name__)

    async def crawl(self, domain_input: str, client: Client) -> CrawlResult:
        """Crawl ``domain_input`` and store its pages for ``client``.

        Raises:
            DataIntegrityError: If embeddings do not fit the client's chunk table.
        """
        start_url = normalize_domain_to_start_url(domain_input)
        domain = extract_domain(start_url)
        config = self._config

        self._logger.info(
            "crawl_started",
            client_id=client.id,
            domain=domain,
            max_pages=config.max_pages,
            max_depth=config.max_depth,
            concurrency=config.concurrency,
        )

        sitemap_urls: list[str] = []
        if self._deps.sitemaps is not None:
            sitemap_urls = await self._deps.sitemaps.discover(start_url, domain, enabled=config.enable_sitemap)

        discovered = DiscoveredUrlSet()
        queue: asyncio.Queue[CrawlRequest] = asyncio.Queue()
        for url in [start_url, *sitemap_urls]:
            if should_skip_crawl_url(url):
                continue
            key = normalize_url_for_dedup(url)
            if key and await discovered.admit(key):
                queue.put_nowait(CrawlRequest(url=key, depth=0))

        reporter = TotalsReporter(self._deps.progress, clock=self._deps.clock)
        await reporter.report(min(config.max_pages, len(discovered)), force=True)

        state = _CrawlState(max_requests=config.max_pages)
        await self._run_workers(queue, client, domain, discovered, reporter, state)

        await reporter.report(min(config.max_pages, len(discovered)), force=True)
        result = CrawlResult(
            domain=domain,
            start_url=start_url,
            pages_visited=state.pages_visited,
            pages_stored=state.pages_stored,
            chunks_stored=state.chunks_stored,
            total_pages_estimated=reporter.current,
        )
        self._logger.info(
            "crawl_completed",
            client_id=client.id,
            domain=domain,
            pages_visited=result.pages_visited,
            pages_stored=result.pages_stored,
            chunks_stored=result.chunks_stored,
            discovered=len(discovered),
        )
        return result

    async def _run_workers(
        self,
        queue: asyncio.Queue[CrawlRequest],
        client: Client,
        domain: str,
        discovered: DiscoveredUrlSet,
        reporter: TotalsReporter,
        state: _CrawlState,
    ) -> None:
        workers = [
            asyncio.create_task(self._worker(queue, client, domain, discovered, reporter, state))
            for _ in range(self._config.concurrency)
        ]
        drained = asyncio.create_task(queue.join())
        try:
            done, _ = await asyncio.wait([drained, *workers], return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task is not drained and task.exception() is not None:
                    raise task.exception()
        finally:
            for task in [drained, *workers]:
                task.cancel()
            await asyncio.gather(drained, *workers, return_exceptions=True)

    async def _worker(
        self,
        queue: asyncio.Queue[CrawlRequest],
        client: Client,
        domain: str,
        discovered: DiscoveredUrlSet,
        reporter: TotalsReporter,
        state: _CrawlState,
    ) -> None:
        while True:
            request = await queue.get()
            try:
                if await state.claim_request():
                    await self._process(request, client, domain, queue, discovered, reporter, state)
                else:
                    self._logger.debug("request_dropped_limit", url=request.url)
            except DataIntegrityError:
                raise
            except Exception:
                # Any other failure abandons only this page.
                self._logger.exception("page_failed", url=request.url, depth=request.depth)
            finally:
                queue.task_done()

    async def _process(
        self,
        request: CrawlRequest,
        client: Client,
        domain: str,
        queue: asyncio.Queue[CrawlRequest],
        discovered: DiscoveredUrlSet,
        reporter: TotalsReporter,
        state: _CrawlState,
    ) -> None:
        config = self._config
        if request.depth > config.max_depth:
            self._logger.debug("page_skipped_depth", url=request.url, depth=request.depth)
            return

        try:
            page = await self._deps.renderer.render(request.url)
        except FetchError as exc:
            self._logger.warning("page_fetch_failed", url=request.url, error=exc.reason)
            return

        await state.page_visited()
        text = parse_html_to_text(page.html)

        if len(text) < config.min_chars:
            self._logger.debug("page_skipped_short", url=request.url, chars=len(text), min_chars=config.min_chars)
        else:
            try:
                result = await ingest_text_for_client(
                    text,
                    url=request.url,
                    domain=domain,
                    client=client,
                    store=self._deps.store,
                    embedder=self._deps.embedder,
                    chunker=self._deps.chunker,
                )
            except _PAGE_INGEST_ERRORS as exc:
                self._logger.warning("page_ingest_failed", url=request.url, error=str(exc))
            else:
                if result.chunks_created > 0:
                    await state.page_stored(result.chunks_stored)

        if request.depth < config.max_depth:
            await self._enqueue_links(page.html, page.final_url, request, domain, queue, discovered)
            await reporter.report(min(config.max_pages, len(discovered)))

        await self._deps.progress.on_progress(state.snapshot())

    async def _enqueue_links(
        self,
        html: str,
        base_url: str,
        request: CrawlRequest,
        domain: str,
        queue: asyncio.Queue[CrawlRequest],
        discovered: DiscoveredUrlSet,
    ) -> None:
        added = 0
        for link in extract_links(html, base_url):
            if extract_domain(link) != domain or should_skip_crawl_url(link):
                continue
            key = normalize_url_for_dedup(link)
            if key is None:
                continue
            if await discovered.admit(key, cap=self._config.max_pages):
                queue.put_nowait(CrawlRequest(url=key, depth=request.depth + 1))
                added += 1
        if added:
            self._logger.debug("links_enqueued", url=request.url, added=added, discovered=len(discovered))


async def crawl_domain(domain_input: str, client: Client, deps: CrawlDependencies) -> CrawlResult:
    return await CrawlOrchestrator(deps).crawl(domain_input, client)
