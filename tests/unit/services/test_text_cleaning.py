"""Unit tests for text cleaning."""

import pytest

from sitekb.services.text_cleaning import clean_text


class TestCleanText:
    """Tests for whitespace normalization."""

    def test_collapses_horizontal_whitespace(self) -> None:
        assert clean_text("a  \t b  c") == "a b c"

    def test_normalizes_line_endings(self) -> None:
        assert clean_text("a\r\nb\rc") == "a\nb\nc"

    def test_keeps_single_blank_line_between_paragraphs(self) -> None:
        assert clean_text("first\n\n\n\n\nsecond") == "first\n\nsecond"

    def test_strips_indentation_after_newlines(self) -> None:
        assert clean_text("first\n    second\n\t third") == "first\nsecond\nthird"

    @pytest.mark.parametrize("text", ["", "   ", "\n\n\t\n"])
    def test_blank_input_becomes_empty(self, text: str) -> None:
        assert clean_text(text) == ""

    def test_is_idempotent(self) -> None:
        once = clean_text("  Title \r\n\r\n\r\n   body   text  \n")
        assert clean_text(once) == once
