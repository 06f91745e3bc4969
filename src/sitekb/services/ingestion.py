"""Text ingestion: chunk, embed and persist text for one client."""

import structlog
from chromadb.errors import ChromaError
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from sitekb.models.client import Client
from sitekb.models.enums import UsageOperation
from sitekb.services.chunker import Chunker
from sitekb.services.embedder import Embedder
from sitekb.services.knowledge_store import KnowledgeStore

logger = structlog.get_logger(__name__)


class IngestResult(BaseModel):
    """Chunks produced from the text and chunks persisted (including reactivated ones)."""

    chunks_created: int = Field(ge=0)
    chunks_stored: int = Field(ge=0)

    model_config = {"frozen": True}


async def ingest_text_for_client(
    text: str,
    url: str,
    domain: str,
    client: Client,
    store: KnowledgeStore,
    embedder: Embedder,
    chunker: Chunker,
) -> IngestResult:
    """Chunk ``text``, embed every chunk in one batched call and store the results.

    Token usage is recorded against the client. A storage failure on one
    chunk is logged and the remaining chunks are still stored.

    Raises:
        DataIntegrityError: If an embedding does not fit the client's chunk table.
    """
    chunks = chunker.chunk(text, url=url, domain=domain)
    if not chunks:
        return IngestResult(chunks_created=0, chunks_stored=0)

    batch = await embedder.embed_batch([chunk.text for chunk in chunks], client.embedding_model)
    if len(batch.vectors) != len(chunks):
        raise ValueError(f"embedder returned {len(batch.vectors)} vectors for {len(chunks)} chunks")

    if batch.usage.total_tokens > 0:
        await store.record_usage(client.id, client.embedding_model, UsageOperation.EMBEDDINGS_INGEST, batch.usage)

    stored = 0
    for chunk, vector in zip(chunks, batch.vectors):
        try:
            await store.insert_chunk(client.id, client.embedding_model, chunk, vector)
        except (SQLAlchemyError, ChromaError) as exc:
            logger.warning(
                "chunk_store_failed",
                client_id=client.id,
                url=url,
                chunk_index=chunk.chunk_index,
                error=str(exc),
            )
            continue
        stored += 1

    logger.debug("text_ingested", client_id=client.id, url=url, chunks_created=len(chunks), chunks_stored=stored)
    return IngestResult(chunks_created=len(chunks), chunks_stored=stored)
