"""Shared fixtures for the sitekb test suite."""

import re

import pytest


class WordTokenizer:
    """Offline tokenizer: one token per word, paragraph breaks kept as tokens."""

    def __init__(self) -> None:
        self._ids: dict[str, int] = {}
        self._words: list[str] = []

    def encode(self, text: str) -> list[int]:
        tokens = []
        for word in re.findall(r"\n\n|\S+", text):
            if word not in self._ids:
                self._ids[word] = len(self._words)
                self._words.append(word)
            tokens.append(self._ids[word])
        return tokens

    def decode(self, tokens: list[int]) -> str:
        out = ""
        previous = None
        for token in tokens:
            word = self._words[token]
            if out and word != "\n\n" and previous != "\n\n":
                out += " "
            out += word
            previous = word
        return out


@pytest.fixture
def word_tokenizer() -> WordTokenizer:
    return WordTokenizer()


@pytest.fixture(autouse=True, scope="session")
def _uncached_structlog_loggers() -> None:
    # CliRunner swaps sys.stderr per invocation; a cached logger would keep
    # writing to a stream closed by an earlier test.
    import structlog

    structlog.configure(cache_logger_on_first_use=False)
