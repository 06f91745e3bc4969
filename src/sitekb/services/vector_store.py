"""Vector store service holding chunk embeddings in ChromaDB.

Each chunk table has a Chroma collection of the same name. ChromaDB's Python
client is synchronous, so calls are wrapped in asyncio.to_thread() to keep
the async interface consistent with the relational store.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Any

import chromadb
import structlog

from sitekb.errors import SchemaError

Metadata = dict[str, str | int | float | bool]


@dataclass(frozen=True)
class VectorMatch:
    id: str
    distance: float
    metadata: Metadata


class VectorStore:
    """Stores and queries chunk embeddings via ChromaDB.

    Accepts a ChromaDB client via dependency injection to support both
    persistent (PersistentClient) and ephemeral (EphemeralClient) modes.
    ``collection_prefix`` isolates collections that share one client, which
    tests rely on.
    """

    def __init__(
        self,
        client: chromadb.ClientAPI,
        collection_names: tuple[str, ...],
        collection_prefix: str = "",
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._client = client
        self._names = collection_names
        self._prefix = collection_prefix
        self._logger = logger or structlog.get_logger(__name__)
        self._collections: dict[str, chromadb.Collection] = {}

    async def initialize(self) -> None:
        """Create the collections if they don't exist."""
        for name in self._names:
            self._collections[name] = await asyncio.to_thread(
                self._client.get_or_create_collection,
                name=self._prefix + name,
                metadata={"hnsw:space": "l2"},
            )
        self._logger.info("vector_store_initialized", collections=[self._prefix + n for n in self._names])

    async def verify(self) -> None:
        """Check the backend answers and every collection exists.

        Raises:
            SchemaError: If the backend is unreachable or a collection is missing.
        """
        try:
            listed = await asyncio.to_thread(self._client.list_collections)
        except Exception as exc:
            raise SchemaError(f"vector backend unavailable: {exc}") from exc

        # Older chromadb releases return Collection objects, newer ones names.
        existing = {getattr(item, "name", item) for item in listed}
        missing = [self._prefix + name for name in self._names if self._prefix + name not in existing]
        if missing:
            raise SchemaError(f"missing vector collections: {', '.join(missing)}")

    def _collection(self, name: str) -> chromadb.Collection:
        collection = self._collections.get(name)
        if collection is None:
            raise RuntimeError("VectorStore not initialized. Call initialize() first.")
        return collection

    async def upsert(
        self,
        name: str,
        ids: list[str],
        embeddings: list[list[float]],
        documents: list[str],
        metadatas: list[Metadata],
    ) -> None:
        """Insert or replace embeddings in a collection.

        Raises:
            ValueError: If input lists have mismatched lengths.
            RuntimeError: If the store is not initialized.
        """
        collection = self._collection(name)
        if not ids:
            return
        if not (len(ids) == len(embeddings) == len(documents) == len(metadatas)):
            raise ValueError(
                f"Mismatched lengths: ids={len(ids)}, embeddings={len(embeddings)}, "
                f"documents={len(documents)}, metadatas={len(metadatas)}"
            )

        await asyncio.to_thread(
            collection.upsert,
            ids=ids,
            embeddings=embeddings,
            documents=documents,
            metadatas=metadatas,
        )
        self._logger.debug("embeddings_upserted", collection=name, count=len(ids))

    async def set_active(self, name: str, ids: list[str], active: bool) -> None:
        """Flip the ``is_active`` metadata flag for the given ids."""
        collection = self._collection(name)
        if not ids:
            return

        result = await asyncio.to_thread(collection.get, ids=ids, include=["metadatas"])
        found_ids: list[str] = list(result["ids"])
        if not found_ids:
            return
        metadatas = [dict(meta or {}, is_active=active) for meta in result["metadatas"]]
        await asyncio.to_thread(collection.update, ids=found_ids, metadatas=metadatas)
        self._logger.debug("embeddings_flagged", collection=name, count=len(found_ids), is_active=active)

    async def query(
        self,
        name: str,
        embedding: list[float],
        limit: int,
        where: dict[str, Any],
    ) -> list[VectorMatch]:
        """Nearest neighbours of ``embedding`` among entries matching ``where``.

        Distances are Euclidean (Chroma reports squared L2 for this space).
        """
        collection = self._collection(name)
        if await asyncio.to_thread(collection.count) == 0:
            return []
        result = await asyncio.to_thread(
            collection.query,
            query_embeddings=[embedding],
            n_results=limit,
            where=where,
            include=["distances", "metadatas"],
        )
        ids = result["ids"][0] if result["ids"] else []
        distances = result["distances"][0] if result.get("distances") else []
        metadatas = result["metadatas"][0] if result.get("metadatas") else []
        return [
            VectorMatch(id=chunk_id, distance=math.sqrt(max(0.0, distance)), metadata=dict(meta or {}))
            for chunk_id, distance, meta in zip(ids, distances, metadatas)
        ]

    async def delete_where(self, name: str, where: dict[str, Any]) -> None:
        collection = self._collection(name)
        await asyncio.to_thread(collection.delete, where=where)
        self._logger.debug("embeddings_deleted", collection=name, where=where)

