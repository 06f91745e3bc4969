from datetime import datetime
from typing import Any, ClassVar

from pydantic import Field, field_validator, model_validator

from sitekb.models.base import RecordModel, ensure_uuid_str


class SearchHit(RecordModel):
    SCHEMA_VERSION: ClassVar[str] = "search_hit.v1"

    schema_version: str = Field(default=SCHEMA_VERSION)
    id: str
    client_id: str
    domain: str
    url: str
    chunk_index: int = Field(ge=0)
    chunk_text: str
    score: float
    created_at: datetime | None = None

    @field_validator("id", "client_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> str:
        return ensure_uuid_str(value)

    @model_validator(mode="after")
    def _validate_score(self) -> "SearchHit":
        if not (0.0 < self.score <= 1.0):
            raise ValueError("score must be in (0, 1]")
        return self


__all__ = ["SearchHit"]
