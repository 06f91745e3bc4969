"""Tokenizers used to measure chunk sizes.

Chunk sizes are expressed in tokens of the embedding model's vocabulary.
The text-embedding-3 models use ``cl100k_base``.
"""

from functools import cached_property
from typing import Protocol

import tiktoken

DEFAULT_ENCODING = "cl100k_base"


class Tokenizer(Protocol):
    def encode(self, text: str) -> list[int]: ...

    def decode(self, tokens: list[int]) -> str: ...


class TiktokenTokenizer:
    """Deterministic tokenizer backed by tiktoken.

    The encoding is loaded on first use. Special-token markers found in page
    text are encoded as ordinary text rather than rejected.
    """

    def __init__(self, encoding_name: str = DEFAULT_ENCODING) -> None:
        self._encoding_name = encoding_name

    @cached_property
    def _encoding(self) -> tiktoken.Encoding:
        return tiktoken.get_encoding(self._encoding_name)

    def encode(self, text: str) -> list[int]:
        return self._encoding.encode(text, disallowed_special=())

    def decode(self, tokens: list[int]) -> str:
        return self._encoding.decode(tokens)
