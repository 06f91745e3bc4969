"""Integration tests for the Chunker with the real tiktoken encoding.

These tests download the ``cl100k_base`` encoding on first run, so they are
marked as slow.
"""

import pytest

from sitekb.models.enums import ChunkingStrategy
from sitekb.services.chunker import Chunker
from sitekb.services.tokenizer import TiktokenTokenizer


@pytest.fixture(scope="module")
def tokenizer() -> TiktokenTokenizer:
    return TiktokenTokenizer()


@pytest.mark.slow
class TestTiktokenChunking:
    """Chunk sizes measured in real embedding-model tokens."""

    def test_round_trip_preserves_text(self, tokenizer: TiktokenTokenizer) -> None:
        text = "Pricing starts at $10 per month.\n\nContact sales for enterprise plans."

        assert tokenizer.decode(tokenizer.encode(text)) == text

    def test_special_token_markers_are_plain_text(self, tokenizer: TiktokenTokenizer) -> None:
        tokens = tokenizer.encode("before <|endoftext|> after")

        assert tokenizer.decode(tokens) == "before <|endoftext|> after"

    def test_sliding_windows_respect_size(self, tokenizer: TiktokenTokenizer) -> None:
        chunker = Chunker(
            chunk_size_tokens=50,
            chunk_overlap_tokens=10,
            strategy=ChunkingStrategy.SLIDING_WINDOW,
            tokenizer=tokenizer,
        )
        text = " ".join(f"sentence number {i} about the product." for i in range(100))

        chunks = chunker.chunk(text, url="https://example.com/", domain="example.com")

        assert len(chunks) > 1
        assert all(chunk.token_count <= 50 for chunk in chunks)

    def test_paragraph_chunks_cover_all_paragraphs(self, tokenizer: TiktokenTokenizer) -> None:
        chunker = Chunker(
            chunk_size_tokens=40,
            chunk_overlap_tokens=5,
            strategy=ChunkingStrategy.PARAGRAPH,
            tokenizer=tokenizer,
        )
        paragraphs = [f"Paragraph {i} describes feature {i} of the service in a few words." for i in range(20)]

        chunks = chunker.chunk("\n\n".join(paragraphs), url="https://example.com/", domain="example.com")

        assert len(chunks) > 1
        assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
        assert "Paragraph 0" in chunks[0].text
        assert "Paragraph 19" in chunks[-1].text
