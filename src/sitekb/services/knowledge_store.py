"""Knowledge store: clients, crawl jobs, chunks and token usage.

Relational state (rows, active flags, uniqueness, job bookkeeping, usage)
lives in SQL through SQLModel and SQLAlchemy's native async support. Chunk
embeddings live in the ChromaDB collection named after the chunk table.
Each operation opens its own AsyncSession and releases it before returning.
"""

from datetime import datetime, timezone
from uuid import uuid4

import structlog
from sqlalchemy import and_, delete, func, inspect, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from sitekb.errors import DuplicateMainDomainError, SchemaError
from sitekb.models.base import utcnow
from sitekb.models.chunk import StoredChunk, TextChunk
from sitekb.models.client import Client
from sitekb.models.crawl_job import CrawlJob, CrawlJobPage, CrawlProgress
from sitekb.models.enums import CrawlJobStatus, EmbeddingModel, InsertOutcome, JobType, UsageOperation
from sitekb.models.hit import SearchHit
from sitekb.models.tables import (
    REQUIRED_TABLES,
    ChunkRecordBase,
    ClientRecord,
    ClientUsageRecord,
    CrawlJobRecord,
)
from sitekb.models.usage import ClientUsageTotal, TokenUsage, UsageSummary
from sitekb.services.chunk_tables import CHUNK_TABLES, ChunkTable, chunk_id_for, chunk_table_for
from sitekb.services.vector_store import VectorStore

MAX_ERROR_MESSAGE_BYTES = 2000
MAX_JOB_PAGE_SIZE = 50


def truncate_error_message(message: str, limit: int = MAX_ERROR_MESSAGE_BYTES) -> str:
    """Cut a message to ``limit`` UTF-8 bytes without splitting a character."""
    encoded = message.encode("utf-8")
    if len(encoded) <= limit:
        return message
    return encoded[:limit].decode("utf-8", errors="ignore")


class KnowledgeStore:
    """Persists tenants, job progress and embedded chunks.

    Accepts an AsyncEngine and a VectorStore via dependency injection so tests
    can run against in-memory SQLite and an ephemeral Chroma client.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        vector_store: VectorStore,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._engine = engine
        self._vectors = vector_store
        self._logger = logger or structlog.get_logger(__name__)

    # -- schema -------------------------------------------------------------

    async def initialize_schema(self) -> None:
        """Create tables and vector collections if they don't exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        await self._vectors.initialize()
        self._logger.info("knowledge_store_initialized")

    async def verify_schema(self) -> None:
        """Fail fast when required tables or vector collections are missing.

        Raises:
            SchemaError: If the database or vector backend is not ready.
        """
        async with self._engine.connect() as conn:
            existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            raise SchemaError(f"missing tables: {', '.join(missing)}")
        await self._vectors.verify()
        self._logger.info("knowledge_store_verified")

    async def close(self) -> None:
        await self._engine.dispose()

    # -- clients ------------------------------------------------------------

    async def create_client(
        self,
        name: str,
        embedding_model: EmbeddingModel = EmbeddingModel.SMALL,
        main_domain: str | None = None,
    ) -> Client:
        """Register a tenant.

        Raises:
            DuplicateMainDomainError: If another client owns ``main_domain``.
        """
        client = Client(
            id=str(uuid4()),
            name=name,
            embedding_model=embedding_model,
            main_domain=main_domain,
            created_at=utcnow(),
        )
        record = ClientRecord.model_validate(client.to_record())
        async with AsyncSession(self._engine) as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateMainDomainError(client.main_domain or "") from exc
        self._logger.info("client_created", client_id=client.id, main_domain=client.main_domain)
        return client

    async def get_client(self, client_id: str) -> Client | None:
        async with AsyncSession(self._engine) as session:
            record = await session.get(ClientRecord, client_id)
            return Client.from_record(record) if record else None

    async def get_client_by_main_domain(self, main_domain: str) -> Client | None:
        async with AsyncSession(self._engine) as session:
            result = await session.execute(
                select(ClientRecord).where(ClientRecord.main_domain == main_domain.strip().lower())
            )
            record = result.scalar_one_or_none()
            return Client.from_record(record) if record else None

    async def delete_client(self, client_id: str) -> bool:
        """Delete a client together with its jobs, chunks, vectors and usage rows.

        Returns:
            True if the client existed.
        """
        async with AsyncSession(self._engine) as session:
            client = await session.get(ClientRecord, client_id)
            if client is None:
                return False
            for table in CHUNK_TABLES:
                record_type = table.record_type
                await session.execute(delete(record_type).where(record_type.client_id == client_id))
            await session.execute(delete(CrawlJobRecord).where(CrawlJobRecord.client_id == client_id))
            await session.execute(delete(ClientUsageRecord).where(ClientUsageRecord.client_id == client_id))
            await session.delete(client)
            await session.commit()

        for table in CHUNK_TABLES:
            await self._vectors.delete_where(table.name, {"client_id": client_id})
        self._logger.info("client_deleted", client_id=client_id)
        return True

    # -- chunks -------------------------------------------------------------

    async def insert_chunk(
        self,
        client_id: str,
        embedding_model: EmbeddingModel,
        chunk: TextChunk,
        embedding: list[float],
    ) -> InsertOutcome:
        """Store a chunk keyed by ``(client_id, chunk_hash)``.

        An existing row with the same hash is reactivated rather than
        duplicated; its text and embedding are left as they are.

        Raises:
            EmbeddingDimensionError: If the vector does not fit the client's table.
        """
        table = chunk_table_for(embedding_model)
        table.validate_dimensions(embedding)
        record_type = table.record_type

        async with AsyncSession(self._engine) as session:
            result = await session.execute(
                select(record_type).where(
                    record_type.client_id == client_id,
                    record_type.chunk_hash == chunk.chunk_hash,
                )
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                return await self._reactivate(session, table, existing)

            record = record_type(
                id=chunk_id_for(client_id, chunk.chunk_hash),
                client_id=client_id,
                domain=chunk.domain,
                url=chunk.url,
                chunk_index=chunk.chunk_index,
                chunk_text=chunk.text,
                chunk_hash=chunk.chunk_hash,
                is_active=True,
                created_at=utcnow(),
            )
            # The id is derived from the hash, so writing the vector first is
            # idempotent if the row insert then loses a race.
            await self._vectors.upsert(
                table.name,
                ids=[record.id],
                embeddings=[embedding],
                documents=[chunk.text],
                metadatas=[_vector_metadata(record)],
            )
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                await session.execute(
                    update(record_type)
                    .where(record_type.client_id == client_id, record_type.chunk_hash == chunk.chunk_hash)
                    .values(is_active=True)
                )
                await session.commit()
                self._logger.debug("chunk_insert_conflict", client_id=client_id, chunk_hash=chunk.chunk_hash)
                return InsertOutcome.REACTIVATED

        return InsertOutcome.INSERTED

    async def _reactivate(self, session: AsyncSession, table: ChunkTable, existing: ChunkRecordBase) -> InsertOutcome:
        if existing.is_active:
            return InsertOutcome.DUPLICATE
        chunk_id = existing.id
        existing.is_active = True
        session.add(existing)
        await session.commit()
        await self._vectors.set_active(table.name, [chunk_id], True)
        self._logger.debug("chunk_reactivated", chunk_id=chunk_id, table=table.name)
        return InsertOutcome.REACTIVATED

    async def search_chunks(
        self,
        client_id: str,
        embedding_model: EmbeddingModel,
        query_embedding: list[float],
        domain: str | None = None,
        limit: int = 10,
    ) -> list[SearchHit]:
        """Active chunks nearest to ``query_embedding``, best first.

        Scores are ``1 / (1 + distance)`` with Euclidean distance.

        Raises:
            EmbeddingDimensionError: If the query vector does not fit the table.
        """
        table = chunk_table_for(embedding_model)
        table.validate_dimensions(query_embedding)
        if limit < 1:
            return []

        conditions: list[dict] = [{"client_id": client_id}, {"is_active": True}]
        if domain:
            conditions.append({"domain": domain})
        matches = await self._vectors.query(table.name, query_embedding, limit, where={"$and": conditions})
        if not matches:
            return []

        record_type = table.record_type
        async with AsyncSession(self._engine) as session:
            result = await session.execute(
                select(record_type).where(
                    record_type.id.in_([match.id for match in matches]),
                    record_type.is_active.is_(True),
                )
            )
            rows = {record.id: record for record in result.scalars()}

        hits: list[SearchHit] = []
        for match in sorted(matches, key=lambda m: m.distance):
            record = rows.get(match.id)
            if record is None:
                continue
            hits.append(
                SearchHit(
                    id=record.id,
                    client_id=record.client_id,
                    domain=record.domain,
                    url=record.url,
                    chunk_index=record.chunk_index,
                    chunk_text=record.chunk_text,
                    score=1.0 / (1.0 + match.distance),
                    created_at=_as_utc(record.created_at),
                )
            )
        return hits

    async def list_chunks_by_url(self, client_id: str, embedding_model: EmbeddingModel, url: str) -> list[StoredChunk]:
        record_type = chunk_table_for(embedding_model).record_type
        return await self._list_chunks(record_type, record_type.client_id == client_id, record_type.url == url)

    async def list_chunks_by_domain(
        self, client_id: str, embedding_model: EmbeddingModel, domain: str
    ) -> list[StoredChunk]:
        record_type = chunk_table_for(embedding_model).record_type
        return await self._list_chunks(record_type, record_type.client_id == client_id, record_type.domain == domain)

    async def _list_chunks(self, record_type: type[ChunkRecordBase], *conditions) -> list[StoredChunk]:
        async with AsyncSession(self._engine) as session:
            result = await session.execute(
                select(record_type)
                .where(*conditions, record_type.is_active.is_(True))
                .order_by(record_type.url, record_type.chunk_index)
            )
            return [StoredChunk.from_record(record) for record in result.scalars()]

    async def deactivate_chunks_by_url(self, client_id: str, embedding_model: EmbeddingModel, url: str) -> int:
        table = chunk_table_for(embedding_model)
        record_type = table.record_type
        return await self._deactivate(table, record_type.client_id == client_id, record_type.url == url)

    async def deactivate_chunks_by_domain(self, client_id: str, embedding_model: EmbeddingModel, domain: str) -> int:
        table = chunk_table_for(embedding_model)
        record_type = table.record_type
        return await self._deactivate(table, record_type.client_id == client_id, record_type.domain == domain)

    async def _deactivate(self, table: ChunkTable, *conditions) -> int:
        """Hide matching chunks from search and listing. Returns the number affected."""
        record_type = table.record_type
        async with AsyncSession(self._engine) as session:
            result = await session.execute(
                select(record_type.id).where(*conditions, record_type.is_active.is_(True))
            )
            ids = list(result.scalars())
            if not ids:
                return 0
            await session.execute(update(record_type).where(record_type.id.in_(ids)).values(is_active=False))
            await session.commit()

        await self._vectors.set_active(table.name, ids, False)
        self._logger.info("chunks_deactivated", table=table.name, count=len(ids))
        return len(ids)

    # -- crawl jobs ---------------------------------------------------------

    async def create_crawl_job(
        self,
        client_id: str,
        domain: str,
        start_url: str,
        job_type: JobType = JobType.DOMAIN,
        initial_status: CrawlJobStatus = CrawlJobStatus.QUEUED,
    ) -> CrawlJob:
        now = utcnow()
        job = CrawlJob(
            id=str(uuid4()),
            client_id=client_id,
            domain=domain,
            start_url=start_url,
            status=initial_status,
            job_type=job_type,
            created_at=now,
            started_at=now if initial_status != CrawlJobStatus.QUEUED else None,
            finished_at=now if initial_status.is_terminal else None,
            updated_at=now,
        )
        async with AsyncSession(self._engine) as session:
            session.add(CrawlJobRecord.model_validate(job.to_record()))
            await session.commit()
        self._logger.info("crawl_job_created", job_id=job.id, client_id=client_id, job_type=job_type.value)
        return job

    async def get_crawl_job(self, job_id: str) -> CrawlJob | None:
        async with AsyncSession(self._engine) as session:
            record = await session.get(CrawlJobRecord, job_id)
            return CrawlJob.from_record(record) if record else None

    async def mark_crawl_job_running(self, job_id: str) -> CrawlJob | None:
        def apply(record: CrawlJobRecord, now: datetime) -> None:
            record.status = CrawlJobStatus.RUNNING.value
            record.started_at = record.started_at or now
            record.finished_at = None
            record.error_message = None

        return await self._update_job(job_id, apply)

    async def update_crawl_job_totals(self, job_id: str, total_pages_estimated: int | None) -> CrawlJob | None:
        """Record a page estimate. A lower estimate than the stored one is ignored."""

        def apply(record: CrawlJobRecord, now: datetime) -> None:
            if total_pages_estimated is None:
                return
            current = record.total_pages_estimated
            record.total_pages_estimated = (
                total_pages_estimated if current is None else max(current, total_pages_estimated)
            )

        return await self._update_job(job_id, apply)

    async def update_crawl_job_progress(self, job_id: str, progress: CrawlProgress) -> CrawlJob | None:
        def apply(record: CrawlJobRecord, now: datetime) -> None:
            record.pages_visited = progress.pages_visited
            record.pages_stored = progress.pages_stored
            record.chunks_stored = progress.chunks_stored

        return await self._update_job(job_id, apply)

    async def mark_crawl_job_completed(self, job_id: str) -> CrawlJob | None:
        def apply(record: CrawlJobRecord, now: datetime) -> None:
            record.status = CrawlJobStatus.COMPLETED.value
            record.finished_at = now

        return await self._update_job(job_id, apply)

    async def mark_crawl_job_failed(self, job_id: str, error_message: str) -> CrawlJob | None:
        def apply(record: CrawlJobRecord, now: datetime) -> None:
            record.status = CrawlJobStatus.FAILED.value
            record.error_message = truncate_error_message(error_message)
            record.finished_at = now

        return await self._update_job(job_id, apply)

    async def deactivate_crawl_job(self, job_id: str) -> CrawlJob | None:
        def apply(record: CrawlJobRecord, now: datetime) -> None:
            record.is_active = False

        return await self._update_job(job_id, apply)

    async def _update_job(self, job_id: str, apply) -> CrawlJob | None:
        async with AsyncSession(self._engine) as session:
            record = await session.get(CrawlJobRecord, job_id)
            if record is None:
                self._logger.warning("crawl_job_not_found", job_id=job_id)
                return None
            now = utcnow()
            apply(record, now)
            record.updated_at = now
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return CrawlJob.from_record(record)

    async def count_crawl_jobs(self, client_id: str, active_only: bool = False) -> int:
        conditions = [CrawlJobRecord.client_id == client_id]
        if active_only:
            conditions.append(CrawlJobRecord.is_active.is_(True))
        async with AsyncSession(self._engine) as session:
            result = await session.execute(select(func.count()).select_from(CrawlJobRecord).where(*conditions))
            return int(result.scalar_one())

    async def list_crawl_jobs(
        self,
        client_id: str,
        page: int = 1,
        page_size: int = 20,
        active_only: bool = False,
    ) -> CrawlJobPage:
        """Newest-first page of a client's jobs. ``page_size`` is clamped to 1..50."""
        page = max(1, page)
        page_size = min(MAX_JOB_PAGE_SIZE, max(1, page_size))
        conditions = [CrawlJobRecord.client_id == client_id]
        if active_only:
            conditions.append(CrawlJobRecord.is_active.is_(True))

        total = await self.count_crawl_jobs(client_id, active_only=active_only)
        async with AsyncSession(self._engine) as session:
            result = await session.execute(
                select(CrawlJobRecord)
                .where(*conditions)
                .order_by(CrawlJobRecord.created_at.desc(), CrawlJobRecord.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            items = [CrawlJob.from_record(record) for record in result.scalars()]
        return CrawlJobPage(items=items, total_items=total, page=page, page_size=page_size)

    # -- usage --------------------------------------------------------------

    async def record_usage(
        self,
        client_id: str,
        model: EmbeddingModel | str,
        operation: UsageOperation,
        usage: TokenUsage,
    ) -> bool:
        """Append a usage row. Returns False (and writes nothing) for empty usage."""
        if usage.prompt_tokens <= 0 and usage.total_tokens <= 0:
            return False
        record = ClientUsageRecord(
            id=str(uuid4()),
            client_id=client_id,
            model=str(model),
            operation=UsageOperation(operation).value,
            prompt_tokens=usage.prompt_tokens,
            total_tokens=usage.total_tokens,
            created_at=utcnow(),
        )
        async with AsyncSession(self._engine) as session:
            session.add(record)
            await session.commit()
        self._logger.debug(
            "usage_recorded",
            client_id=client_id,
            operation=operation,
            total_tokens=usage.total_tokens,
        )
        return True

    async def get_client_usage_summary(
        self,
        client_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> UsageSummary:
        """Token totals for a client within ``[start, end)``, by model and by operation."""
        conditions = [ClientUsageRecord.client_id == client_id, *_window(ClientUsageRecord.created_at, start, end)]
        statement = (
            select(
                ClientUsageRecord.model,
                ClientUsageRecord.operation,
                func.sum(ClientUsageRecord.prompt_tokens),
                func.sum(ClientUsageRecord.total_tokens),
            )
            .where(*conditions)
            .group_by(ClientUsageRecord.model, ClientUsageRecord.operation)
        )
        async with AsyncSession(self._engine) as session:
            rows = (await session.execute(statement)).all()

        by_model: dict[str, TokenUsage] = {}
        by_operation: dict[str, TokenUsage] = {}
        total = TokenUsage()
        for model, operation, prompt_tokens, total_tokens in rows:
            usage = TokenUsage(prompt_tokens=int(prompt_tokens or 0), total_tokens=int(total_tokens or 0))
            by_model[model] = by_model.get(model, TokenUsage()) + usage
            by_operation[operation] = by_operation.get(operation, TokenUsage()) + usage
            total = total + usage

        return UsageSummary(
            client_id=client_id,
            total_prompt_tokens=total.prompt_tokens,
            total_tokens=total.total_tokens,
            by_model=by_model,
            by_operation=by_operation,
        )

    async def get_all_clients_usage_summary(
        self,
        limit: int = 50,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ClientUsageTotal]:
        """Per-client totals, highest usage first. Clients without usage report zero."""
        join_on = and_(
            ClientUsageRecord.client_id == ClientRecord.id,
            *_window(ClientUsageRecord.created_at, start, end),
        )
        prompt_sum = func.coalesce(func.sum(ClientUsageRecord.prompt_tokens), 0)
        total_sum = func.coalesce(func.sum(ClientUsageRecord.total_tokens), 0)
        statement = (
            select(ClientRecord.id, ClientRecord.name, prompt_sum, total_sum)
            .select_from(ClientRecord)
            .outerjoin(ClientUsageRecord, join_on)
            .group_by(ClientRecord.id, ClientRecord.name)
            .order_by(total_sum.desc(), ClientRecord.name)
            .limit(max(1, limit))
        )
        async with AsyncSession(self._engine) as session:
            rows = (await session.execute(statement)).all()
        return [
            ClientUsageTotal(
                client_id=client_id,
                name=name,
                total_prompt_tokens=int(prompt_tokens),
                total_tokens=int(total_tokens),
            )
            for client_id, name, prompt_tokens, total_tokens in rows
        ]

    async def sum_client_tokens_between(self, client_id: str, start: datetime, end: datetime) -> int:
        statement = select(func.coalesce(func.sum(ClientUsageRecord.total_tokens), 0)).where(
            ClientUsageRecord.client_id == client_id,
            *_window(ClientUsageRecord.created_at, start, end),
        )
        async with AsyncSession(self._engine) as session:
            return int((await session.execute(statement)).scalar_one())


def _window(column, start: datetime | None, end: datetime | None) -> list:
    conditions = []
    if start is not None:
        conditions.append(column >= start)
    if end is not None:
        conditions.append(column < end)
    return conditions


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _vector_metadata(record: ChunkRecordBase) -> dict[str, str | int | bool]:
    return {
        "client_id": record.client_id,
        "domain": record.domain,
        "url": record.url,
        "chunk_index": record.chunk_index,
        "chunk_hash": record.chunk_hash,
        "is_active": record.is_active,
    }


def create_engine_from_url(database_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Args:
        database_url: A SQLAlchemy async URL, a SQLite file path, or ":memory:".

    Returns:
        AsyncEngine; plain paths and ":memory:" use aiosqlite.
    """
    if database_url == ":memory:":
        # A single shared connection keeps the in-memory database alive
        # across sessions.
        return create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    if "://" not in database_url:
        return create_async_engine(f"sqlite+aiosqlite:///{database_url}")
    return create_async_engine(database_url)
