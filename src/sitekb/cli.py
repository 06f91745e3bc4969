"""sitekb command line interface.

Creates clients, crawls their sites, uploads documents, searches the stored
chunks and reports job and token-usage status.
"""

import asyncio
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import structlog
import typer
from dotenv import load_dotenv

from sitekb.config import AppConfig, load_config
from sitekb.errors import ClientNotFoundError, ConfigError, DuplicateMainDomainError, SchemaError, SitekbError
from sitekb.models.base import utcnow
from sitekb.models.client import Client
from sitekb.models.crawl_job import CrawlProgress
from sitekb.models.enums import EmbeddingModel
from sitekb.services.documents import estimate_document
from sitekb.services.factory import create_chunker, create_embedder, create_knowledge_store, open_crawl_dependencies
from sitekb.services.jobs import ingest_document, run_crawl_job
from sitekb.services.knowledge_store import KnowledgeStore
from sitekb.services.search import search_client_content

load_dotenv()

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, os.environ.get("LOG_LEVEL", "info").upper(), logging.INFO)
    ),
    logger_factory=lambda *args: structlog.PrintLogger(file=sys.stderr),
    context_class=dict,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="sitekb",
    help="""Crawl client websites and documents into a searchable knowledge base.

Examples:

  # Create tables and vector collections
  uv run sitekb init-db

  # Register a client and crawl its site
  uv run sitekb create-client "Acme" --domain acme.com
  uv run sitekb crawl <client-id> acme.com

  # Search what was stored
  uv run sitekb search <client-id> "opening hours\"""",
    rich_markup_mode="markdown",
)


class _LoggingProgress:
    async def on_totals_known(self, total_pages_estimated: int | None) -> None:
        logger.info("crawl_estimate", total_pages_estimated=total_pages_estimated)

    async def on_progress(self, progress: CrawlProgress) -> None:
        logger.info("crawl_progress", **progress.model_dump())


def _load_config() -> AppConfig:
    try:
        return load_config()
    except ConfigError as exc:
        logger.error("config_invalid", error=str(exc))
        raise typer.Exit(1) from exc


def _open_store(config: AppConfig) -> KnowledgeStore:
    return create_knowledge_store(config.database.url, config.vectors.path)


async def _ready_store(config: AppConfig) -> KnowledgeStore:
    store = _open_store(config)
    await store.initialize_schema()
    await store.verify_schema()
    return store


async def _require_client(store: KnowledgeStore, client_id: str) -> Client:
    client = await store.get_client(client_id)
    if client is None:
        raise ClientNotFoundError(client_id)
    return client


def _parse_datetime(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        logger.error("invalid_datetime", option=name, value=value)
        raise typer.Exit(1) from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _run(coro):
    try:
        return asyncio.run(coro)
    except SitekbError as exc:
        logger.error("command_failed", error=str(exc), error_type=type(exc).__name__)
        raise typer.Exit(1) from exc


@app.command("init-db")
def init_db() -> None:
    """Create the database tables and vector collections."""
    config = _load_config()

    async def run() -> None:
        store = _open_store(config)
        try:
            await store.initialize_schema()
        finally:
            await store.close()

    _run(run())
    typer.echo("Schema initialized")


@app.command()
def check() -> None:
    """Verify the database and vector backend are ready."""
    config = _load_config()

    async def run() -> None:
        store = _open_store(config)
        try:
            await store.verify_schema()
        finally:
            await store.close()

    try:
        asyncio.run(run())
    except SchemaError as exc:
        logger.error("schema_check_failed", error=str(exc))
        typer.echo("Schema check failed. Run 'sitekb init-db' first.")
        raise typer.Exit(1) from exc
    typer.echo("Schema OK")


@app.command("create-client")
def create_client(
    name: str = typer.Argument(..., help="Client display name"),
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Main domain owned by the client"),
    model: EmbeddingModel = typer.Option(EmbeddingModel.SMALL, "--model", "-m", help="Embedding model"),
) -> None:
    """Register a new client."""
    config = _load_config()

    async def run() -> Client:
        store = await _ready_store(config)
        try:
            return await store.create_client(name, embedding_model=model, main_domain=domain)
        finally:
            await store.close()

    try:
        client = asyncio.run(run())
    except DuplicateMainDomainError as exc:
        typer.echo(f"[{exc.code}] {exc}")
        raise typer.Exit(1) from exc
    except SitekbError as exc:
        logger.error("command_failed", error=str(exc), error_type=type(exc).__name__)
        raise typer.Exit(1) from exc
    typer.echo(f"Created client {client.id} ({client.embedding_model.value})")


@app.command("delete-client")
def delete_client(client_id: str = typer.Argument(..., help="Client id")) -> None:
    """Delete a client with all of its jobs, chunks and usage."""
    config = _load_config()

    async def run() -> bool:
        store = await _ready_store(config)
        try:
            return await store.delete_client(client_id)
        finally:
            await store.close()

    if not _run(run()):
        typer.echo(f"Client {client_id} not found")
        raise typer.Exit(1)
    typer.echo(f"Deleted client {client_id}")


@app.command()
def crawl(
    client_id: str = typer.Argument(..., help="Client id"),
    domain: str = typer.Argument(..., help="Domain or URL to crawl"),
) -> None:
    """Crawl a domain and store its pages for a client."""
    config = _load_config()

    async def run():
        store = await _ready_store(config)
        try:
            client = await _require_client(store, client_id)
            async with open_crawl_dependencies(
                config, store, create_embedder(config.embeddings), progress=_LoggingProgress()
            ) as deps:
                return await run_crawl_job(client, domain, deps)
        finally:
            await store.close()

    job = _run(run())
    typer.echo(
        f"Job {job.id} {job.status.value}: {job.pages_visited} visited, "
        f"{job.pages_stored} stored, {job.chunks_stored} chunks"
    )


@app.command()
def upload(
    client_id: str = typer.Argument(..., help="Client id"),
    files: List[Path] = typer.Argument(..., help="PDF, DOCX, TXT or Markdown files"),
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Domain to file the chunks under"),
) -> None:
    """Ingest uploaded documents for a client."""
    config = _load_config()
    missing = [str(path) for path in files if not path.is_file()]
    if missing:
        logger.error("files_not_found", files=missing)
        raise typer.Exit(1)

    async def run():
        store = await _ready_store(config)
        embedder = create_embedder(config.embeddings)
        chunker = create_chunker(config.chunking)
        try:
            client = await _require_client(store, client_id)
            outcomes = []
            for path in files:
                outcomes.append(
                    await ingest_document(
                        client,
                        path.name,
                        path.read_bytes(),
                        store=store,
                        embedder=embedder,
                        chunker=chunker,
                        min_chars=config.crawl.min_chars,
                        domain=domain,
                    )
                )
            return outcomes
        finally:
            await store.close()

    for outcome in _run(run()):
        detail = outcome.reason or f"{outcome.chunks_stored}/{outcome.chunks_created} chunks stored"
        typer.echo(f"{outcome.url}: {outcome.status} ({detail})")


@app.command("estimate-docs")
def estimate_docs(files: List[Path] = typer.Argument(..., help="Documents to estimate")) -> None:
    """Estimate chunks and embedding tokens for documents without storing them."""
    config = _load_config()
    chunker = create_chunker(config.chunking)
    total_tokens = 0
    for path in files:
        estimate = estimate_document(path.name, path.read_bytes(), chunker, config.crawl.min_chars)
        total_tokens += estimate.tokens_estimated
        if estimate.skipped:
            typer.echo(f"{estimate.file_name}: skipped ({estimate.reason})")
        else:
            typer.echo(
                f"{estimate.file_name}: {estimate.chars} chars, {estimate.chunks} chunks, "
                f"~{estimate.tokens_estimated} tokens"
            )
    typer.echo(f"Total: ~{total_tokens} tokens")


@app.command()
def search(
    client_id: str = typer.Argument(..., help="Client id"),
    query: str = typer.Argument(..., help="Search query"),
    domain: Optional[str] = typer.Option(None, "--domain", "-d", help="Restrict to one domain"),
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum number of results to return"),
) -> None:
    """Search a client's stored content."""
    config = _load_config()

    async def run():
        store = await _ready_store(config)
        try:
            client = await _require_client(store, client_id)
            return await search_client_content(
                store, create_embedder(config.embeddings), client, query, domain=domain, limit=limit
            )
        finally:
            await store.close()

    hits = _run(run())
    if not hits:
        typer.echo("No results")
    for rank, hit in enumerate(hits, start=1):
        snippet = hit.chunk_text[:200].replace("\n", " ")
        typer.echo(f"{rank}. [{hit.score:.3f}] {hit.url}#{hit.chunk_index}\n   {snippet}")


@app.command()
def jobs(
    client_id: str = typer.Argument(..., help="Client id"),
    page: int = typer.Option(1, "--page", "-p", help="Page number"),
    page_size: int = typer.Option(20, "--page-size", "-s", help="Jobs per page (max 50)"),
    active_only: bool = typer.Option(False, "--active-only", help="Hide deactivated jobs"),
) -> None:
    """List a client's crawl jobs, newest first."""
    config = _load_config()

    async def run():
        store = await _ready_store(config)
        try:
            return await store.list_crawl_jobs(client_id, page=page, page_size=page_size, active_only=active_only)
        finally:
            await store.close()

    result = _run(run())
    typer.echo(f"{result.total_items} jobs (page {result.page}, {result.page_size} per page)")
    for job in result.items:
        percent = job.progress_percent()
        progress = f"{percent}%" if percent is not None else "-"
        typer.echo(
            f"{job.id} {job.job_type.value:6} {job.status.value:9} {progress:>4} "
            f"{job.pages_stored}/{job.pages_visited} pages {job.chunks_stored} chunks {job.domain}"
        )


@app.command()
def usage(
    client_id: Optional[str] = typer.Argument(None, help="Client id; omit for all clients"),
    since: Optional[str] = typer.Option(None, "--from", help="ISO-8601 start (inclusive)"),
    until: Optional[str] = typer.Option(None, "--to", help="ISO-8601 end (exclusive)"),
    limit: int = typer.Option(50, "--limit", "-n", help="Clients to list when no id is given"),
    recent_days: int = typer.Option(30, "--recent-days", min=1, help="Trailing window for a client's recent total"),
) -> None:
    """Report embedding token usage."""
    config = _load_config()
    start = _parse_datetime(since, "--from")
    end = _parse_datetime(until, "--to")

    if client_id is None:

        async def run_all():
            store = await _ready_store(config)
            try:
                return await store.get_all_clients_usage_summary(limit=limit, start=start, end=end)
            finally:
                await store.close()

        for row in _run(run_all()):
            typer.echo(f"{row.client_id} {row.name}: {row.total_tokens} tokens")
        return

    async def run():
        store = await _ready_store(config)
        try:
            now = utcnow()
            recent = await store.sum_client_tokens_between(client_id, now - timedelta(days=recent_days), now)
            return await store.get_client_usage_summary(client_id, start, end), recent
        finally:
            await store.close()

    summary, recent = _run(run())
    typer.echo(f"Total: {summary.total_tokens} tokens ({summary.total_prompt_tokens} prompt)")
    for name, totals in sorted(summary.by_model.items()):
        typer.echo(f"  model {name}: {totals.total_tokens}")
    for name, totals in sorted(summary.by_operation.items()):
        typer.echo(f"  operation {name}: {totals.total_tokens}")
    typer.echo(f"Last {recent_days} days: {recent} tokens")


@app.command()
def deactivate(
    client_id: str = typer.Argument(..., help="Client id"),
    url: Optional[str] = typer.Option(None, "--url", help="Deactivate chunks of one URL"),
    domain: Optional[str] = typer.Option(None, "--domain", help="Deactivate chunks of a whole domain"),
) -> None:
    """Hide stored chunks from search without deleting them."""
    if bool(url) == bool(domain):
        typer.echo("Pass exactly one of --url or --domain")
        raise typer.Exit(1)
    config = _load_config()

    async def run() -> int:
        store = await _ready_store(config)
        try:
            client = await _require_client(store, client_id)
            if url:
                return await store.deactivate_chunks_by_url(client.id, client.embedding_model, url)
            return await store.deactivate_chunks_by_domain(client.id, client.embedding_model, domain)
        finally:
            await store.close()

    typer.echo(f"Deactivated {_run(run())} chunks")


@app.command()
def version() -> None:
    """Show version information."""
    from sitekb import __version__

    typer.echo(f"sitekb {__version__}")
