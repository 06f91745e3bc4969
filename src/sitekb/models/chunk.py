from datetime import datetime
from typing import Any, ClassVar

from pydantic import Field, ValidationInfo, field_validator

from sitekb.models.base import (
    RecordModel,
    ensure_non_empty_text,
    ensure_sha256_hex,
    ensure_timezone_aware,
    ensure_uuid_str,
)


class TextChunk(RecordModel):
    """A bounded passage of page or document text, before embedding."""

    SCHEMA_VERSION: ClassVar[str] = "text_chunk.v1"

    schema_version: str = Field(default=SCHEMA_VERSION)
    domain: str
    url: str
    chunk_index: int = Field(ge=0)
    text: str
    chunk_hash: str
    token_count: int = Field(ge=0)

    @field_validator("text", "domain", "url")
    @classmethod
    def _ensure_text(cls, value: str, info: ValidationInfo) -> str:
        return ensure_non_empty_text(value, info.field_name or "text")

    @field_validator("chunk_hash", mode="before")
    @classmethod
    def _validate_hash(cls, value: Any) -> str:
        return ensure_sha256_hex(value)


class ChunkWithEmbedding(RecordModel):
    SCHEMA_VERSION: ClassVar[str] = "chunk_with_embedding.v1"

    schema_version: str = Field(default=SCHEMA_VERSION)
    chunk: TextChunk
    embedding: list[float]

    @property
    def dimensions(self) -> int:
        return len(self.embedding)


class StoredChunk(RecordModel):
    """A persisted chunk row as returned by listing operations."""

    SCHEMA_VERSION: ClassVar[str] = "stored_chunk.v1"

    schema_version: str = Field(default=SCHEMA_VERSION)
    id: str
    client_id: str
    domain: str
    url: str
    chunk_index: int = Field(ge=0)
    chunk_text: str
    chunk_hash: str
    is_active: bool
    created_at: datetime

    @field_validator("id", "client_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> str:
        return ensure_uuid_str(value)

    @field_validator("created_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        return ensure_timezone_aware(value)
