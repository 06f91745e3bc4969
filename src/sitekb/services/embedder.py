"""Embedding computation via the OpenAI embeddings API.

Requests are split into batches, retried on rate limits and server errors
with exponential backoff, and every returned vector is checked against the
model's dimension before it reaches the store.
"""

from dataclasses import dataclass, field
from typing import Protocol

import openai
import structlog
from openai import AsyncOpenAI
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from sitekb.errors import EmbeddingDimensionError
from sitekb.models.enums import EmbeddingModel
from sitekb.models.usage import TokenUsage


@dataclass(frozen=True)
class EmbeddingBatch:
    vectors: list[list[float]]
    usage: TokenUsage = field(default_factory=TokenUsage)


class Embedder(Protocol):
    async def embed_batch(self, texts: list[str], model: EmbeddingModel) -> EmbeddingBatch: ...


def is_retryable_error(exc: BaseException) -> bool:
    """Rate limits, 5xx responses and connection failures are worth retrying."""
    if isinstance(exc, openai.APIConnectionError):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code == 429 or exc.status_code >= 500
    return False


class OpenAIEmbedder:
    """Computes embeddings with ``AsyncOpenAI``.

    Accepts a client via dependency injection; when omitted one is built
    from ``api_key`` with the SDK's own retries disabled so that the backoff
    policy here is the only one in effect.
    """

    def __init__(
        self,
        api_key: str | None = None,
        max_retries: int = 5,
        initial_backoff_ms: int = 1000,
        batch_size: int = 100,
        client: AsyncOpenAI | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        if client is None and not api_key:
            raise ValueError("either api_key or client is required")
        self._client = client or AsyncOpenAI(api_key=api_key, max_retries=0)
        self._max_retries = max(0, max_retries)
        self._initial_backoff = initial_backoff_ms / 1000
        self._batch_size = max(1, batch_size)
        self._logger = logger or structlog.get_logger(__name__)

    async def embed_batch(self, texts: list[str], model: EmbeddingModel) -> EmbeddingBatch:
        """Embed texts in order.

        Raises:
            EmbeddingDimensionError: If the API returns vectors of the wrong size.
            openai.OpenAIError: When a request still fails after all retries.
        """
        if not texts:
            return EmbeddingBatch(vectors=[])

        model = EmbeddingModel(model)
        vectors: list[list[float]] = []
        usage = TokenUsage()

        for offset in range(0, len(texts), self._batch_size):
            batch = texts[offset : offset + self._batch_size]
            response = await self._create_with_retry(batch, model)
            ordered = sorted(response.data, key=lambda item: item.index)
            for item in ordered:
                if len(item.embedding) != model.dimensions:
                    raise EmbeddingDimensionError(model.dimensions, len(item.embedding))
                vectors.append(list(item.embedding))
            if response.usage is not None:
                usage = usage + TokenUsage(
                    prompt_tokens=response.usage.prompt_tokens,
                    total_tokens=response.usage.total_tokens,
                )

        self._logger.debug(
            "embeddings_computed",
            model=model.value,
            count=len(vectors),
            total_tokens=usage.total_tokens,
        )
        return EmbeddingBatch(vectors=vectors, usage=usage)

    async def _create_with_retry(self, batch: list[str], model: EmbeddingModel):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._initial_backoff, min=self._initial_backoff, max=60),
            retry=retry_if_exception(is_retryable_error),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                return await self._client.embeddings.create(model=model.value, input=batch)

    def _log_retry(self, retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self._logger.warning(
            "embeddings_retrying",
            attempt=retry_state.attempt_number,
            wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(exc),
        )
