from enum import StrEnum


class EmbeddingModel(StrEnum):
    SMALL = "text-embedding-3-small"
    LARGE = "text-embedding-3-large"

    @property
    def dimensions(self) -> int:
        return _DIMENSIONS[self]


_DIMENSIONS = {
    EmbeddingModel.SMALL: 1536,
    EmbeddingModel.LARGE: 3072,
}


class CrawlJobStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CrawlJobStatus.COMPLETED, CrawlJobStatus.FAILED)


class JobType(StrEnum):
    DOMAIN = "domain"
    DOCS = "docs"


class UsageOperation(StrEnum):
    EMBEDDINGS_INGEST = "embeddings_ingest"
    EMBEDDINGS_QUERY = "embeddings_query"


class ChunkingStrategy(StrEnum):
    SLIDING_WINDOW = "sliding_window"
    PARAGRAPH = "paragraph"


class InsertOutcome(StrEnum):
    INSERTED = "inserted"
    REACTIVATED = "reactivated"
    DUPLICATE = "duplicate"
