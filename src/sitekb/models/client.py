from datetime import datetime
from typing import Any, ClassVar

from pydantic import Field, field_validator

from sitekb.models.base import RecordModel, ensure_non_empty_text, ensure_timezone_aware, ensure_uuid_str
from sitekb.models.enums import EmbeddingModel


class Client(RecordModel):
    """A tenant. Its embedding model is fixed at creation and picks the chunk table."""

    SCHEMA_VERSION: ClassVar[str] = "client.v1"

    schema_version: str = Field(default=SCHEMA_VERSION)
    id: str
    name: str
    embedding_model: EmbeddingModel
    main_domain: str | None = None
    created_at: datetime

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> str:
        return ensure_uuid_str(value)

    @field_validator("name")
    @classmethod
    def _ensure_name(cls, value: str) -> str:
        return ensure_non_empty_text(value, "name")

    @field_validator("main_domain", mode="before")
    @classmethod
    def _normalize_domain(cls, value: Any) -> str | None:
        if value is None:
            return None
        value = str(value).strip().lower()
        return value or None

    @field_validator("created_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        return ensure_timezone_aware(value)
