"""Chunker service for splitting page text into overlapping token windows."""

import hashlib
import re

import structlog

from sitekb.models.chunk import TextChunk
from sitekb.models.enums import ChunkingStrategy
from sitekb.services.tokenizer import TiktokenTokenizer, Tokenizer

_PARAGRAPH_BREAK = re.compile(r"\n{2,}")
PARAGRAPH_SEPARATOR = "\n\n"


class Chunker:
    """Splits text into token-bounded chunks with overlap.

    Two strategies share one contract. ``sliding_window`` runs a flat window
    over the token stream. ``paragraph`` packs whole paragraphs into a buffer
    and falls back to the sliding window for paragraphs that are too large on
    their own. Chunk sizes and overlaps are counted in tokens.
    """

    def __init__(
        self,
        chunk_size_tokens: int = 900,
        chunk_overlap_tokens: int = 150,
        strategy: ChunkingStrategy = ChunkingStrategy.PARAGRAPH,
        tokenizer: Tokenizer | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        """Initialize the chunker.

        Args:
            chunk_size_tokens: Maximum tokens per window.
            chunk_overlap_tokens: Tokens shared between consecutive chunks.
            strategy: Which splitting strategy ``chunk`` uses.
            tokenizer: Token encoder/decoder. Defaults to cl100k_base via tiktoken.
            logger: Structured logger instance.
        """
        if chunk_size_tokens < 1:
            raise ValueError("chunk_size_tokens must be at least 1")
        if chunk_overlap_tokens < 0:
            raise ValueError("chunk_overlap_tokens cannot be negative")

        self._chunk_size = chunk_size_tokens
        self._chunk_overlap = chunk_overlap_tokens
        self._strategy = ChunkingStrategy(strategy)
        self._tokenizer = tokenizer or TiktokenTokenizer()
        self._logger = logger or structlog.get_logger(__name__)

        if chunk_overlap_tokens >= chunk_size_tokens:
            self._logger.warning(
                "chunk_overlap_not_smaller_than_size",
                chunk_size_tokens=chunk_size_tokens,
                chunk_overlap_tokens=chunk_overlap_tokens,
            )

    @property
    def strategy(self) -> ChunkingStrategy:
        return self._strategy

    def count_tokens(self, text: str) -> int:
        return len(self._tokenizer.encode(text))

    def chunk(self, text: str, url: str, domain: str) -> list[TextChunk]:
        """Split text into ordered chunks for one page or document.

        Args:
            text: Cleaned text content.
            url: Source URL stored on every chunk.
            domain: Source domain stored on every chunk.

        Returns:
            Chunks with contiguous ``chunk_index`` values starting at 0.
        """
        if not text.strip():
            return []

        self._logger.debug(
            "chunking_started",
            url=url,
            strategy=self._strategy.value,
            text_length=len(text),
            chunk_size_tokens=self._chunk_size,
            chunk_overlap_tokens=self._chunk_overlap,
        )

        if self._strategy == ChunkingStrategy.SLIDING_WINDOW:
            pieces = self._sliding_window(self._tokenizer.encode(text))
        else:
            pieces = self._paragraph_pack(text)

        chunks = [
            TextChunk(
                domain=domain,
                url=url,
                chunk_index=index,
                text=piece_text,
                chunk_hash=self._compute_hash(piece_text),
                token_count=token_count,
            )
            for index, (piece_text, token_count) in enumerate(pieces)
        ]

        self._logger.debug("chunking_completed", url=url, chunk_count=len(chunks))
        return chunks

    def _window_spans(self, length: int) -> list[tuple[int, int]]:
        """Token ranges ``[start, end)`` of the sliding window over ``length`` tokens."""
        spans: list[tuple[int, int]] = []
        start = 0
        while start < length:
            end = min(start + self._chunk_size, length)
            spans.append((start, end))
            if end == length:
                break
            # Always move forward, even when overlap >= size.
            start = max(end - self._chunk_overlap, start + 1)
        return spans

    def _sliding_window(self, tokens: list[int]) -> list[tuple[str, int]]:
        pieces: list[tuple[str, int]] = []
        for start, end in self._window_spans(len(tokens)):
            window = tokens[start:end]
            piece = self._tokenizer.decode(window).strip()
            if piece:
                pieces.append((piece, len(window)))
        return pieces

    def _paragraph_pack(self, text: str) -> list[tuple[str, int]]:
        paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(text)]
        paragraphs = [p for p in paragraphs if p]
        separator = self._tokenizer.encode(PARAGRAPH_SEPARATOR)

        pieces: list[tuple[str, int]] = []
        buffer: list[int] = []
        last_flushed: list[int] = []

        def flush() -> None:
            nonlocal buffer, last_flushed
            if not buffer:
                return
            piece = self._tokenizer.decode(buffer).strip()
            if piece:
                pieces.append((piece, len(buffer)))
                last_flushed = buffer
            buffer = []

        for paragraph in paragraphs:
            tokens = self._tokenizer.encode(paragraph)

            if len(tokens) > self._chunk_size:
                flush()
                spans = self._window_spans(len(tokens))
                for start, end in spans:
                    buffer = tokens[start:end]
                    flush()
                last_start, last_end = spans[-1]
                buffer = self._overlap_tail(tokens[last_start:last_end])
                continue

            cost = len(buffer) + (len(separator) if buffer else 0) + len(tokens)
            if cost > self._chunk_size:
                flush()
                buffer = self._overlap_tail(last_flushed)

            if buffer:
                buffer = buffer + separator
            buffer = buffer + tokens

        flush()
        return pieces

    def _overlap_tail(self, tokens: list[int]) -> list[int]:
        if self._chunk_overlap <= 0 or not tokens:
            return []
        return list(tokens[-self._chunk_overlap :])

    def _compute_hash(self, text: str) -> str:
        """Compute SHA-256 hash of the emitted chunk text."""
        return hashlib.sha256(text.encode("utf-8")).hexdigest()
