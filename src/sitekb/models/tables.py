"""SQLModel table definitions for the knowledge store.

Table classes are kept apart from the frozen pydantic domain models: the ORM
needs mutable rows for updates (reactivation, job progress) while the domain
models stay immutable. Field names match the domain models so rows convert
with ``model_dump()`` / ``model_validate()``.

The two chunk tables share one column layout and differ only in the embedding
model they serve. Vectors themselves live in the Chroma collection of the same
name; the rows here carry identity, the active flag and the
``(client_id, chunk_hash)`` uniqueness rule.
"""

from datetime import datetime

from sqlalchemy import Index, UniqueConstraint
from sqlmodel import Field, SQLModel


class ClientRecord(SQLModel, table=True):
    __tablename__ = "clients"

    id: str = Field(primary_key=True)
    name: str
    embedding_model: str
    main_domain: str | None = Field(default=None, unique=True)
    created_at: datetime


class CrawlJobRecord(SQLModel, table=True):
    __tablename__ = "crawl_jobs"
    __table_args__ = (Index("ix_crawl_jobs_client_created", "client_id", "created_at"),)

    id: str = Field(primary_key=True)
    client_id: str = Field(foreign_key="clients.id")
    domain: str
    start_url: str
    status: str = Field(index=True)
    job_type: str = "domain"
    is_active: bool = True
    total_pages_estimated: int | None = None
    pages_visited: int = 0
    pages_stored: int = 0
    chunks_stored: int = 0
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    updated_at: datetime


class ChunkRecordBase(SQLModel):
    """Columns shared by both chunk tables."""

    id: str = Field(primary_key=True)
    client_id: str = Field(foreign_key="clients.id", index=True)
    domain: str = Field(index=True)
    url: str = Field(index=True)
    chunk_index: int
    chunk_text: str
    chunk_hash: str
    is_active: bool = True
    created_at: datetime


class SmallChunkRecord(ChunkRecordBase, table=True):
    __tablename__ = "page_chunks_small"
    __table_args__ = (UniqueConstraint("client_id", "chunk_hash", name="uq_page_chunks_small_client_hash"),)


class LargeChunkRecord(ChunkRecordBase, table=True):
    __tablename__ = "page_chunks_large"
    __table_args__ = (UniqueConstraint("client_id", "chunk_hash", name="uq_page_chunks_large_client_hash"),)


class ClientUsageRecord(SQLModel, table=True):
    __tablename__ = "client_usage"
    __table_args__ = (Index("ix_client_usage_client_created", "client_id", "created_at"),)

    id: str = Field(primary_key=True)
    client_id: str = Field(foreign_key="clients.id")
    model: str
    operation: str
    prompt_tokens: int = 0
    total_tokens: int = 0
    created_at: datetime


REQUIRED_TABLES = (
    ClientRecord.__tablename__,
    CrawlJobRecord.__tablename__,
    SmallChunkRecord.__tablename__,
    LargeChunkRecord.__tablename__,
    ClientUsageRecord.__tablename__,
)
