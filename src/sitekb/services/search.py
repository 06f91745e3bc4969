"""Similarity search over a client's stored chunks."""

import structlog

from sitekb.models.client import Client
from sitekb.models.enums import UsageOperation
from sitekb.models.hit import SearchHit
from sitekb.services.embedder import Embedder
from sitekb.services.knowledge_store import KnowledgeStore

logger = structlog.get_logger(__name__)


async def search_client_content(
    store: KnowledgeStore,
    embedder: Embedder,
    client: Client,
    query: str,
    domain: str | None = None,
    limit: int = 10,
) -> list[SearchHit]:
    """Embed ``query`` with the client's model and return the closest active chunks.

    Query token usage is recorded as ``embeddings_query``.
    """
    if not query.strip():
        return []

    batch = await embedder.embed_batch([query], client.embedding_model)
    if batch.usage.total_tokens > 0:
        await store.record_usage(client.id, client.embedding_model, UsageOperation.EMBEDDINGS_QUERY, batch.usage)

    hits = await store.search_chunks(
        client.id,
        client.embedding_model,
        batch.vectors[0],
        domain=domain,
        limit=limit,
    )
    logger.debug("search_completed", client_id=client.id, domain=domain, hit_count=len(hits))
    return hits
