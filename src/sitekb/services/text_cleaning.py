import re

_CRLF = re.compile(r"\r\n?")
_HORIZONTAL_SPACE = re.compile(r"[ \t\f\v\u00a0]+")
_LEADING_SPACE = re.compile(r"\n[ \t]+")
_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")


def clean_text(text: str) -> str:
    """Normalize whitespace while keeping blank-line paragraph breaks."""
    text = _CRLF.sub("\n", text)
    text = _HORIZONTAL_SPACE.sub(" ", text)
    text = _LEADING_SPACE.sub("\n", text)
    text = _EXTRA_BLANK_LINES.sub("\n\n", text)
    return text.strip()
