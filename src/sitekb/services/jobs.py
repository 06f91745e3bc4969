"""Job runners that wrap crawls and document uploads in crawl-job bookkeeping.

A job moves ``queued -> running -> completed | failed``. Any exception that
aborts a run marks the job failed with a truncated message and is re-raised
to the caller.
"""

import dataclasses
from urllib.parse import quote

import structlog
from pydantic import BaseModel, Field

from sitekb.models.client import Client
from sitekb.models.crawl_job import CrawlJob, CrawlProgress
from sitekb.models.enums import CrawlJobStatus, JobType
from sitekb.services.chunker import Chunker
from sitekb.services.crawler import CrawlDependencies, CrawlProgressSink, NullProgressSink, crawl_domain
from sitekb.services.documents import extract_clean_text
from sitekb.services.embedder import Embedder
from sitekb.services.ingestion import ingest_text_for_client
from sitekb.services.knowledge_store import KnowledgeStore
from sitekb.services.url_normalizer import extract_domain, normalize_domain_to_start_url

UPLOADED_DOCS_DOMAIN = "uploaded-docs"

logger = structlog.get_logger(__name__)


class JobProgressRecorder:
    """Progress sink that writes crawl estimates and counters to the job row.

    Reports are forwarded to ``downstream`` as well, so a CLI or caller can
    still observe the crawl.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        job_id: str,
        downstream: CrawlProgressSink | None = None,
    ) -> None:
        self._store = store
        self._job_id = job_id
        self._downstream = downstream or NullProgressSink()

    async def on_totals_known(self, total_pages_estimated: int | None) -> None:
        await self._store.update_crawl_job_totals(self._job_id, total_pages_estimated)
        await self._downstream.on_totals_known(total_pages_estimated)

    async def on_progress(self, progress: CrawlProgress) -> None:
        await self._store.update_crawl_job_progress(self._job_id, progress)
        await self._downstream.on_progress(progress)


async def run_crawl_job(client: Client, domain_input: str, deps: CrawlDependencies) -> CrawlJob:
    """Create a domain job for ``client``, crawl it and return the final job."""
    start_url = normalize_domain_to_start_url(domain_input)
    store = deps.store
    job = await store.create_crawl_job(client.id, extract_domain(start_url), start_url, job_type=JobType.DOMAIN)

    job_deps = dataclasses.replace(deps, progress=JobProgressRecorder(store, job.id, downstream=deps.progress))
    try:
        await store.mark_crawl_job_running(job.id)
        result = await crawl_domain(domain_input, client, job_deps)
        await store.update_crawl_job_progress(
            job.id,
            CrawlProgress(
                pages_visited=result.pages_visited,
                pages_stored=result.pages_stored,
                chunks_stored=result.chunks_stored,
            ),
        )
        completed = await store.mark_crawl_job_completed(job.id)
    except Exception as exc:
        await _fail(store, job.id, exc)
        raise

    logger.info("crawl_job_completed", job_id=job.id, client_id=client.id, pages_stored=result.pages_stored)
    return completed or job


class DocumentIngestOutcome(BaseModel):
    job: CrawlJob
    status: str
    domain: str
    url: str
    chars: int = Field(ge=0)
    chunks_created: int = Field(default=0, ge=0)
    chunks_stored: int = Field(default=0, ge=0)
    reason: str | None = None

    model_config = {"frozen": True}


async def ingest_document(
    client: Client,
    filename: str,
    data: bytes,
    store: KnowledgeStore,
    embedder: Embedder,
    chunker: Chunker,
    min_chars: int,
    domain: str | None = None,
) -> DocumentIngestOutcome:
    """Ingest one uploaded document as a ``docs`` job.

    The chunks are filed under ``domain``, else the client's main domain,
    else ``uploaded-docs``, with a ``file://<domain>/<name>`` URL. Documents
    whose text is shorter than ``min_chars`` are skipped; the job still
    completes.

    Raises:
        UnsupportedDocumentError: If the file cannot be read. The job is marked failed.
    """
    source_domain = (domain or client.main_domain or UPLOADED_DOCS_DOMAIN).strip().lower()
    source_url = f"file://{source_domain}/{quote(filename, safe='')}"

    job = await store.create_crawl_job(
        client.id,
        source_domain,
        source_url,
        job_type=JobType.DOCS,
        initial_status=CrawlJobStatus.RUNNING,
    )
    try:
        text = extract_clean_text(data, filename)
        if len(text) < min_chars:
            reason = f"Document text too short ({len(text)} chars, min={min_chars})"
            await store.update_crawl_job_progress(job.id, CrawlProgress(pages_visited=1))
            finished = await store.mark_crawl_job_completed(job.id)
            logger.info("document_skipped_short", job_id=job.id, file_name=filename, chars=len(text))
            return DocumentIngestOutcome(
                job=finished or job,
                status="skipped",
                domain=source_domain,
                url=source_url,
                chars=len(text),
                reason=reason,
            )

        result = await ingest_text_for_client(
            text,
            url=source_url,
            domain=source_domain,
            client=client,
            store=store,
            embedder=embedder,
            chunker=chunker,
        )
        await store.update_crawl_job_progress(
            job.id,
            CrawlProgress(
                pages_visited=1,
                pages_stored=1 if result.chunks_created > 0 else 0,
                chunks_stored=result.chunks_stored,
            ),
        )
        finished = await store.mark_crawl_job_completed(job.id)
    except Exception as exc:
        await _fail(store, job.id, exc)
        raise

    logger.info("document_ingested", job_id=job.id, file_name=filename, chunks_stored=result.chunks_stored)
    return DocumentIngestOutcome(
        job=finished or job,
        status="ok" if result.chunks_created > 0 else "skipped",
        domain=source_domain,
        url=source_url,
        chars=len(text),
        chunks_created=result.chunks_created,
        chunks_stored=result.chunks_stored,
        reason=None if result.chunks_created > 0 else "No chunks produced from document",
    )


async def _fail(store: KnowledgeStore, job_id: str, exc: BaseException) -> None:
    message = str(exc) or type(exc).__name__
    logger.error("job_failed", job_id=job_id, error=message, error_type=type(exc).__name__)
    await store.mark_crawl_job_failed(job_id, message)
