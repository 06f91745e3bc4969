from datetime import datetime
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sitekb.models.base import RecordModel, ensure_timezone_aware, ensure_uuid_str
from sitekb.models.enums import CrawlJobStatus, JobType


class CrawlJob(RecordModel):
    """Persistent record of one crawl or document ingestion run."""

    SCHEMA_VERSION: ClassVar[str] = "crawl_job.v1"

    schema_version: str = Field(default=SCHEMA_VERSION)
    id: str
    client_id: str
    domain: str
    start_url: str
    status: CrawlJobStatus
    job_type: JobType = JobType.DOMAIN
    is_active: bool = True
    total_pages_estimated: int | None = Field(default=None, ge=0)
    pages_visited: int = Field(default=0, ge=0)
    pages_stored: int = Field(default=0, ge=0)
    chunks_stored: int = Field(default=0, ge=0)
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    updated_at: datetime

    @field_validator("id", "client_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> str:
        return ensure_uuid_str(value)

    @field_validator("created_at", "started_at", "finished_at", "updated_at")
    @classmethod
    def _ensure_aware(cls, value: datetime | None) -> datetime | None:
        return ensure_timezone_aware(value)

    @model_validator(mode="after")
    def _validate_counters(self) -> "CrawlJob":
        if self.pages_stored > self.pages_visited:
            raise ValueError("pages_stored cannot exceed pages_visited")
        return self

    def progress_percent(self) -> int | None:
        """Visited pages as a percentage of the estimate, capped at 100."""
        if not self.total_pages_estimated:
            return None
        return min(100, round(self.pages_visited / self.total_pages_estimated * 100))


class CrawlJobPage(BaseModel):
    items: list[CrawlJob]
    total_items: int = Field(ge=0)
    page: int = Field(ge=1)
    page_size: int = Field(ge=1, le=50)

    model_config = ConfigDict(frozen=True)


class CrawlProgress(BaseModel):
    """Cumulative counters reported while a crawl runs."""

    pages_visited: int = Field(default=0, ge=0)
    pages_stored: int = Field(default=0, ge=0)
    chunks_stored: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)


class CrawlResult(BaseModel):
    domain: str
    start_url: str
    pages_visited: int = Field(ge=0)
    pages_stored: int = Field(ge=0)
    chunks_stored: int = Field(ge=0)
    total_pages_estimated: int = Field(ge=0)

    model_config = ConfigDict(frozen=True)
