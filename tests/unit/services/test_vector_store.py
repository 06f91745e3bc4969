"""Unit tests for the VectorStore service."""

import math
from uuid import uuid4

import chromadb
import pytest

from sitekb.errors import SchemaError
from sitekb.services.vector_store import VectorStore

COLLECTIONS = ("chunks_a", "chunks_b")


@pytest.fixture
def ephemeral_client() -> chromadb.ClientAPI:
    """Create an ephemeral ChromaDB client for testing."""
    return chromadb.EphemeralClient()


@pytest.fixture
def prefix() -> str:
    """Unique collection prefix per test to ensure isolation."""
    return f"test_{uuid4().hex[:8]}_"


@pytest.fixture
def raw(ephemeral_client: chromadb.ClientAPI, prefix: str):
    """Direct access to the underlying Chroma collections."""

    def get(name: str) -> chromadb.Collection:
        return ephemeral_client.get_collection(prefix + name)

    return get


@pytest.fixture
async def store(ephemeral_client: chromadb.ClientAPI, prefix: str) -> VectorStore:
    """Create a VectorStore with initialized collections."""
    store = VectorStore(
        client=ephemeral_client,
        collection_names=COLLECTIONS,
        collection_prefix=prefix,
    )
    await store.initialize()
    return store


def _meta(client_id: str = "c1", active: bool = True, domain: str = "example.com") -> dict:
    return {"client_id": client_id, "domain": domain, "is_active": active}


class TestVectorStoreLifecycle:
    """Tests for initialization and verification."""

    async def test_operations_before_initialize_raise(self, ephemeral_client: chromadb.ClientAPI) -> None:
        store = VectorStore(client=ephemeral_client, collection_names=COLLECTIONS, collection_prefix="uninit_")

        with pytest.raises(RuntimeError, match="not initialized"):
            await store.set_active("chunks_a", ["id1"], True)

    async def test_verify_passes_after_initialize(self, store: VectorStore) -> None:
        await store.verify()

    async def test_verify_reports_missing_collections(self, ephemeral_client: chromadb.ClientAPI) -> None:
        store = VectorStore(
            client=ephemeral_client,
            collection_names=COLLECTIONS,
            collection_prefix=f"missing_{uuid4().hex[:8]}_",
        )

        with pytest.raises(SchemaError, match="missing vector collections"):
            await store.verify()

    async def test_initialize_is_idempotent(self, store: VectorStore, raw) -> None:
        await store.upsert("chunks_a", ["id1"], [[1.0, 0.0, 0.0]], ["doc"], [_meta()])

        await store.initialize()

        assert raw("chunks_a").count() == 1


class TestVectorStoreWrites:
    """Tests for upserts and metadata updates."""

    async def test_upsert_empty_is_noop(self, store: VectorStore, raw) -> None:
        await store.upsert("chunks_a", [], [], [], [])

        assert raw("chunks_a").count() == 0

    async def test_upsert_mismatched_lengths_raises(self, store: VectorStore) -> None:
        with pytest.raises(ValueError, match="Mismatched lengths"):
            await store.upsert("chunks_a", ["id1", "id2"], [[1.0, 0.0, 0.0]], ["doc"], [_meta()])

    async def test_upsert_replaces_existing_id(self, store: VectorStore, raw) -> None:
        await store.upsert("chunks_a", ["id1"], [[1.0, 0.0, 0.0]], ["old"], [_meta()])
        await store.upsert("chunks_a", ["id1"], [[0.0, 1.0, 0.0]], ["new"], [_meta()])

        stored = raw("chunks_a").get(ids=["id1"], include=["documents", "metadatas"])

        assert raw("chunks_a").count() == 1
        assert stored["documents"] == ["new"]

    async def test_collections_are_separate(self, store: VectorStore, raw) -> None:
        await store.upsert("chunks_a", ["id1"], [[1.0, 0.0, 0.0]], ["doc"], [_meta()])

        assert raw("chunks_b").count() == 0

    async def test_set_active_flips_flag(self, store: VectorStore, raw) -> None:
        await store.upsert("chunks_a", ["id1", "id2"], [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], ["a", "b"], [_meta(), _meta()])

        await store.set_active("chunks_a", ["id1", "unknown"], False)

        stored = raw("chunks_a").get(ids=["id1", "id2"], include=["documents", "metadatas"])
        flags = dict(zip(stored["ids"], (meta["is_active"] for meta in stored["metadatas"])))
        assert flags == {"id1": False, "id2": True}

    async def test_delete_where_removes_matching(self, store: VectorStore, raw) -> None:
        await store.upsert(
            "chunks_a",
            ["id1", "id2"],
            [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]],
            ["a", "b"],
            [_meta(client_id="c1"), _meta(client_id="c2")],
        )

        await store.delete_where("chunks_a", {"client_id": "c1"})

        assert raw("chunks_a").get(ids=["id1", "id2"])["ids"] == ["id2"]


class TestVectorStoreQuery:
    """Tests for similarity queries."""

    async def test_returns_nearest_first_with_euclidean_distance(self, store: VectorStore) -> None:
        await store.upsert(
            "chunks_a",
            ["near", "far"],
            [[1.0, 0.0, 0.0], [0.0, 3.0, 0.0]],
            ["near", "far"],
            [_meta(), _meta()],
        )

        matches = await store.query("chunks_a", [1.0, 0.0, 0.0], limit=2, where={"client_id": "c1"})

        assert [m.id for m in matches] == ["near", "far"]
        assert matches[0].distance == pytest.approx(0.0, abs=1e-4)
        assert matches[1].distance == pytest.approx(math.sqrt(10.0), rel=1e-3)

    async def test_where_filter_limits_results(self, store: VectorStore) -> None:
        await store.upsert(
            "chunks_a",
            ["mine", "inactive", "theirs"],
            [[1.0, 0.0, 0.0], [1.0, 0.0, 0.0], [1.0, 0.0, 0.0]],
            ["a", "b", "c"],
            [_meta(), _meta(active=False), _meta(client_id="c2")],
        )

        matches = await store.query(
            "chunks_a",
            [1.0, 0.0, 0.0],
            limit=10,
            where={"$and": [{"client_id": "c1"}, {"is_active": True}]},
        )

        assert [m.id for m in matches] == ["mine"]
        assert matches[0].metadata["domain"] == "example.com"
