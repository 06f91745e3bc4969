from sitekb.models.chunk import ChunkWithEmbedding, StoredChunk, TextChunk
from sitekb.models.client import Client
from sitekb.models.crawl_job import CrawlJob, CrawlJobPage, CrawlProgress, CrawlResult
from sitekb.models.enums import (
    ChunkingStrategy,
    CrawlJobStatus,
    EmbeddingModel,
    InsertOutcome,
    JobType,
    UsageOperation,
)
from sitekb.models.hit import SearchHit
from sitekb.models.usage import ClientUsageTotal, TokenUsage, UsageSummary

__all__ = [
    "ChunkWithEmbedding",
    "ChunkingStrategy",
    "Client",
    "ClientUsageTotal",
    "CrawlJob",
    "CrawlJobPage",
    "CrawlJobStatus",
    "CrawlProgress",
    "CrawlResult",
    "EmbeddingModel",
    "InsertOutcome",
    "JobType",
    "SearchHit",
    "StoredChunk",
    "TextChunk",
    "TokenUsage",
    "UsageOperation",
    "UsageSummary",
]
