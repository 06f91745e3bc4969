"""Unit tests for the KnowledgeStore service."""

import asyncio
import hashlib
from collections.abc import AsyncIterator
from datetime import timedelta

import pytest

from sitekb.errors import DuplicateMainDomainError, EmbeddingDimensionError, SchemaError
from sitekb.models.base import utcnow
from sitekb.models.chunk import TextChunk
from sitekb.models.crawl_job import CrawlProgress
from sitekb.models.enums import CrawlJobStatus, EmbeddingModel, InsertOutcome, JobType, UsageOperation
from sitekb.models.usage import TokenUsage
from sitekb.services.factory import create_test_knowledge_store
from sitekb.services.knowledge_store import KnowledgeStore, create_engine_from_url, truncate_error_message

SMALL = EmbeddingModel.SMALL
INGEST = UsageOperation.EMBEDDINGS_INGEST
QUERY = UsageOperation.EMBEDDINGS_QUERY
SITE = "https://example.com"


@pytest.fixture
async def store() -> AsyncIterator[KnowledgeStore]:
    store = create_test_knowledge_store()
    await store.initialize_schema()
    yield store
    await store.close()


def _chunk(text: str, url: str = "https://example.com/a", domain: str = "example.com", index: int = 0) -> TextChunk:
    return TextChunk(
        domain=domain,
        url=url,
        chunk_index=index,
        text=text,
        chunk_hash=hashlib.sha256(text.encode("utf-8")).hexdigest(),
        token_count=len(text.split()),
    )


def _vector(model: EmbeddingModel, hot: int) -> list[float]:
    vector = [0.0] * model.dimensions
    vector[hot] = 1.0
    return vector


class TestSchema:
    """Tests for schema creation and verification."""

    async def test_verify_passes_after_initialize(self, store: KnowledgeStore) -> None:
        await store.verify_schema()

    async def test_verify_fails_without_tables(self) -> None:
        store = create_test_knowledge_store()
        try:
            with pytest.raises(SchemaError, match="missing tables"):
                await store.verify_schema()
        finally:
            await store.close()


class TestClients:
    """Tests for client registration and lookup."""

    async def test_create_and_get_client(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme", EmbeddingModel.LARGE, main_domain="Acme.COM")

        fetched = await store.get_client(client.id)

        assert fetched == client
        assert fetched.main_domain == "acme.com"
        assert fetched.embedding_model == EmbeddingModel.LARGE

    async def test_get_missing_client_returns_none(self, store: KnowledgeStore) -> None:
        assert await store.get_client("00000000-0000-0000-0000-000000000000") is None

    async def test_duplicate_main_domain_is_rejected(self, store: KnowledgeStore) -> None:
        await store.create_client("First", main_domain="acme.com")

        with pytest.raises(DuplicateMainDomainError) as exc_info:
            await store.create_client("Second", main_domain="ACME.com")

        assert exc_info.value.code == "DUPLICATE_MAIN_DOMAIN"

    async def test_clients_without_main_domain_can_coexist(self, store: KnowledgeStore) -> None:
        first = await store.create_client("First")
        second = await store.create_client("Second")

        assert first.id != second.id

    async def test_get_client_by_main_domain(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme", main_domain="acme.com")

        assert await store.get_client_by_main_domain(" ACME.com ") == client
        assert await store.get_client_by_main_domain("other.com") is None

    async def test_delete_client_removes_owned_data(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        await store.insert_chunk(client.id, EmbeddingModel.SMALL, _chunk("hello"), _vector(EmbeddingModel.SMALL, 0))
        await store.create_crawl_job(client.id, "example.com", "https://example.com/")
        await store.record_usage(client.id, SMALL, INGEST, TokenUsage(total_tokens=5))

        assert await store.delete_client(client.id) is True

        assert await store.get_client(client.id) is None
        assert await store.count_crawl_jobs(client.id) == 0
        assert (await store.get_client_usage_summary(client.id)).total_tokens == 0
        assert await store.list_chunks_by_domain(client.id, EmbeddingModel.SMALL, "example.com") == []

    async def test_delete_missing_client_returns_false(self, store: KnowledgeStore) -> None:
        assert await store.delete_client("00000000-0000-0000-0000-000000000000") is False


class TestChunks:
    """Tests for chunk insertion, listing and deactivation."""

    async def test_insert_then_duplicate(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        chunk = _chunk("same content")
        vector = _vector(EmbeddingModel.SMALL, 0)

        first = await store.insert_chunk(client.id, EmbeddingModel.SMALL, chunk, vector)
        second = await store.insert_chunk(client.id, EmbeddingModel.SMALL, chunk, vector)

        assert first == InsertOutcome.INSERTED
        assert second == InsertOutcome.DUPLICATE
        assert len(await store.list_chunks_by_url(client.id, EmbeddingModel.SMALL, chunk.url)) == 1

    async def test_deactivated_chunk_is_reactivated(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        chunk = _chunk("come back")
        vector = _vector(EmbeddingModel.SMALL, 0)
        await store.insert_chunk(client.id, EmbeddingModel.SMALL, chunk, vector)

        assert await store.deactivate_chunks_by_url(client.id, EmbeddingModel.SMALL, chunk.url) == 1
        assert await store.list_chunks_by_url(client.id, EmbeddingModel.SMALL, chunk.url) == []

        outcome = await store.insert_chunk(client.id, EmbeddingModel.SMALL, chunk, vector)

        assert outcome == InsertOutcome.REACTIVATED
        hits = await store.search_chunks(client.id, EmbeddingModel.SMALL, vector)
        assert [hit.chunk_text for hit in hits] == ["come back"]

    async def test_same_content_for_two_clients_is_stored_twice(self, store: KnowledgeStore) -> None:
        first = await store.create_client("First")
        second = await store.create_client("Second")
        chunk = _chunk("shared")
        vector = _vector(EmbeddingModel.SMALL, 0)

        assert await store.insert_chunk(first.id, EmbeddingModel.SMALL, chunk, vector) == InsertOutcome.INSERTED
        assert await store.insert_chunk(second.id, EmbeddingModel.SMALL, chunk, vector) == InsertOutcome.INSERTED

    async def test_wrong_dimension_is_rejected(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme", EmbeddingModel.LARGE)

        with pytest.raises(EmbeddingDimensionError):
            await store.insert_chunk(client.id, EmbeddingModel.LARGE, _chunk("x"), _vector(EmbeddingModel.SMALL, 0))

    async def test_models_use_separate_tables(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme", EmbeddingModel.LARGE)
        await store.insert_chunk(client.id, EmbeddingModel.LARGE, _chunk("big"), _vector(EmbeddingModel.LARGE, 0))

        assert await store.list_chunks_by_domain(client.id, EmbeddingModel.SMALL, "example.com") == []
        assert len(await store.list_chunks_by_domain(client.id, EmbeddingModel.LARGE, "example.com")) == 1

    async def test_listing_is_ordered_by_url_and_index(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        model = EmbeddingModel.SMALL
        await store.insert_chunk(client.id, model, _chunk("b1", url=f"{SITE}/b", index=1), _vector(model, 0))
        await store.insert_chunk(client.id, model, _chunk("a0", url=f"{SITE}/a", index=0), _vector(model, 1))
        await store.insert_chunk(client.id, model, _chunk("b0", url=f"{SITE}/b", index=0), _vector(model, 2))

        chunks = await store.list_chunks_by_domain(client.id, model, "example.com")

        assert [c.chunk_text for c in chunks] == ["a0", "b0", "b1"]

    async def test_deactivate_by_domain_counts_only_active(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        model = EmbeddingModel.SMALL
        await store.insert_chunk(client.id, model, _chunk("one"), _vector(model, 0))
        await store.insert_chunk(client.id, model, _chunk("two", domain="other.com"), _vector(model, 1))

        assert await store.deactivate_chunks_by_domain(client.id, model, "example.com") == 1
        assert await store.deactivate_chunks_by_domain(client.id, model, "example.com") == 0


class TestSearch:
    """Tests for similarity search."""

    async def test_nearest_chunk_scores_highest(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        model = EmbeddingModel.SMALL
        await store.insert_chunk(client.id, model, _chunk("exact"), _vector(model, 0))
        await store.insert_chunk(client.id, model, _chunk("other", index=1), _vector(model, 1))

        hits = await store.search_chunks(client.id, model, _vector(model, 0), limit=5)

        assert [hit.chunk_text for hit in hits] == ["exact", "other"]
        assert hits[0].score == pytest.approx(1.0, abs=1e-3)
        assert hits[1].score == pytest.approx(1 / (1 + 2**0.5), rel=1e-3)

    async def test_search_is_scoped_to_client_and_active_rows(self, store: KnowledgeStore) -> None:
        mine = await store.create_client("Mine")
        theirs = await store.create_client("Theirs")
        model = EmbeddingModel.SMALL
        await store.insert_chunk(mine.id, model, _chunk("kept"), _vector(model, 0))
        await store.insert_chunk(mine.id, model, _chunk("hidden", url="https://example.com/old"), _vector(model, 0))
        await store.insert_chunk(theirs.id, model, _chunk("foreign"), _vector(model, 0))
        await store.deactivate_chunks_by_url(mine.id, model, "https://example.com/old")

        hits = await store.search_chunks(mine.id, model, _vector(model, 0))

        assert [hit.chunk_text for hit in hits] == ["kept"]

    async def test_search_domain_filter(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        model = EmbeddingModel.SMALL
        await store.insert_chunk(client.id, model, _chunk("main site"), _vector(model, 0))
        await store.insert_chunk(client.id, model, _chunk("docs site", domain="docs.example.com"), _vector(model, 0))

        hits = await store.search_chunks(client.id, model, _vector(model, 0), domain="docs.example.com")

        assert [hit.domain for hit in hits] == ["docs.example.com"]

    async def test_search_respects_limit(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        model = EmbeddingModel.SMALL
        for i in range(4):
            await store.insert_chunk(client.id, model, _chunk(f"chunk {i}", index=i), _vector(model, i))

        hits = await store.search_chunks(client.id, model, _vector(model, 0), limit=2)

        assert len(hits) == 2

    async def test_search_with_no_chunks_returns_empty(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")

        assert await store.search_chunks(client.id, EmbeddingModel.SMALL, _vector(EmbeddingModel.SMALL, 0)) == []

    async def test_search_rejects_wrong_query_dimension(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")

        with pytest.raises(EmbeddingDimensionError):
            await store.search_chunks(client.id, EmbeddingModel.SMALL, [1.0, 0.0])


class TestCrawlJobs:
    """Tests for crawl job bookkeeping."""

    async def test_new_job_is_queued(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")

        job = await store.create_crawl_job(client.id, "example.com", "https://example.com/")

        assert job.status == CrawlJobStatus.QUEUED
        assert job.job_type == JobType.DOMAIN
        assert job.started_at is None
        assert job.is_active is True
        assert await store.get_crawl_job(job.id) == job

    async def test_job_created_running(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")

        job = await store.create_crawl_job(
            client.id, "docs", "file://docs/a.pdf", job_type=JobType.DOCS, initial_status=CrawlJobStatus.RUNNING
        )

        assert job.status == CrawlJobStatus.RUNNING
        assert job.started_at is not None

    async def test_lifecycle_to_completed(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        job = await store.create_crawl_job(client.id, "example.com", "https://example.com/")

        running = await store.mark_crawl_job_running(job.id)
        await store.update_crawl_job_progress(job.id, CrawlProgress(pages_visited=3, pages_stored=2, chunks_stored=7))
        completed = await store.mark_crawl_job_completed(job.id)

        assert running.status == CrawlJobStatus.RUNNING
        assert running.started_at is not None
        assert completed.status == CrawlJobStatus.COMPLETED
        assert completed.finished_at is not None
        assert (completed.pages_visited, completed.pages_stored, completed.chunks_stored) == (3, 2, 7)

    async def test_failed_job_keeps_truncated_message(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        job = await store.create_crawl_job(client.id, "example.com", "https://example.com/")

        failed = await store.mark_crawl_job_failed(job.id, "x" * 5000)

        assert failed.status == CrawlJobStatus.FAILED
        assert len(failed.error_message) == 2000

    async def test_estimate_never_decreases(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        job = await store.create_crawl_job(client.id, "example.com", "https://example.com/")

        await store.update_crawl_job_totals(job.id, 40)
        await store.update_crawl_job_totals(job.id, 10)
        updated = await store.update_crawl_job_totals(job.id, None)

        assert updated.total_pages_estimated == 40

    async def test_update_missing_job_returns_none(self, store: KnowledgeStore) -> None:
        assert await store.mark_crawl_job_completed("00000000-0000-0000-0000-000000000000") is None

    async def test_list_is_newest_first_and_paged(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        created = []
        for i in range(3):
            created.append(await store.create_crawl_job(client.id, "example.com", f"https://example.com/{i}"))
            await asyncio.sleep(0.01)

        first_page = await store.list_crawl_jobs(client.id, page=1, page_size=2)
        second_page = await store.list_crawl_jobs(client.id, page=2, page_size=2)

        assert first_page.total_items == 3
        assert [job.id for job in first_page.items] == [created[2].id, created[1].id]
        assert [job.id for job in second_page.items] == [created[0].id]

    async def test_page_size_is_clamped(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")

        page = await store.list_crawl_jobs(client.id, page=0, page_size=500)

        assert page.page == 1
        assert page.page_size == 50

    async def test_active_only_hides_deactivated_jobs(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        kept = await store.create_crawl_job(client.id, "example.com", "https://example.com/")
        hidden = await store.create_crawl_job(client.id, "example.com", "https://example.com/")
        await store.deactivate_crawl_job(hidden.id)

        page = await store.list_crawl_jobs(client.id, active_only=True)

        assert [job.id for job in page.items] == [kept.id]
        assert await store.count_crawl_jobs(client.id) == 2
        assert await store.count_crawl_jobs(client.id, active_only=True) == 1


class TestUsage:
    """Tests for token usage accounting."""

    async def test_empty_usage_is_not_recorded(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")

        recorded = await store.record_usage(client.id, SMALL, QUERY, TokenUsage())

        assert recorded is False

    async def test_summary_groups_by_model_and_operation(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        await store.record_usage(
            client.id, SMALL, INGEST, TokenUsage(prompt_tokens=10, total_tokens=10)
        )
        await store.record_usage(
            client.id, SMALL, INGEST, TokenUsage(prompt_tokens=5, total_tokens=5)
        )
        await store.record_usage(
            client.id, SMALL, QUERY, TokenUsage(prompt_tokens=2, total_tokens=2)
        )

        summary = await store.get_client_usage_summary(client.id)

        assert summary.total_tokens == 17
        assert summary.total_prompt_tokens == 17
        assert summary.by_model["text-embedding-3-small"].total_tokens == 17
        assert summary.by_operation["embeddings_ingest"].total_tokens == 15
        assert summary.by_operation["embeddings_query"].total_tokens == 2

    async def test_summary_window_excludes_outside_rows(self, store: KnowledgeStore) -> None:
        client = await store.create_client("Acme")
        await store.record_usage(client.id, SMALL, INGEST, TokenUsage(total_tokens=9))
        now = utcnow()

        later = await store.get_client_usage_summary(client.id, start=now + timedelta(hours=1))
        earlier = await store.get_client_usage_summary(client.id, end=now - timedelta(hours=1))
        around = await store.sum_client_tokens_between(client.id, now - timedelta(hours=1), now + timedelta(hours=1))

        assert later.total_tokens == 0
        assert earlier.total_tokens == 0
        assert around == 9

    async def test_all_clients_summary_orders_by_usage(self, store: KnowledgeStore) -> None:
        light = await store.create_client("Light")
        heavy = await store.create_client("Heavy")
        idle = await store.create_client("Idle")
        await store.record_usage(light.id, SMALL, INGEST, TokenUsage(total_tokens=3))
        await store.record_usage(heavy.id, SMALL, INGEST, TokenUsage(total_tokens=30))

        totals = await store.get_all_clients_usage_summary()

        assert [(t.client_id, t.total_tokens) for t in totals] == [(heavy.id, 30), (light.id, 3), (idle.id, 0)]


class TestHelpers:
    """Tests for module-level helpers."""

    def test_truncate_keeps_short_messages(self) -> None:
        assert truncate_error_message("boom") == "boom"

    def test_truncate_does_not_split_characters(self) -> None:
        message = "é" * 1500

        truncated = truncate_error_message(message)

        assert len(truncated.encode("utf-8")) <= 2000
        assert truncated == "é" * 1000

    def test_engine_from_plain_path_uses_aiosqlite(self, tmp_path) -> None:
        engine = create_engine_from_url(str(tmp_path / "kb.db"))

        assert engine.url.drivername == "sqlite+aiosqlite"
