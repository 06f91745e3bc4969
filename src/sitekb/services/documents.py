"""Text extraction and size estimates for uploaded documents."""

import io
import zipfile
from pathlib import PurePath

import docx
import structlog
from docx.opc.exceptions import PackageNotFoundError
from pydantic import BaseModel, Field
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from sitekb.errors import UnsupportedDocumentError
from sitekb.services.chunker import Chunker
from sitekb.services.text_cleaning import clean_text

logger = structlog.get_logger(__name__)

TEXT_SUFFIXES = frozenset({".txt", ".md", ".markdown", ".text"})
SUPPORTED_SUFFIXES = frozenset({".pdf", ".docx"}) | TEXT_SUFFIXES


class DocumentEstimate(BaseModel):
    """What ingesting one document would produce, without embedding it."""

    file_name: str
    chars: int = Field(ge=0)
    chunks: int = Field(ge=0)
    tokens_estimated: int = Field(ge=0)
    skipped: bool = False
    reason: str | None = None

    model_config = {"frozen": True}


def extract_text_from_bytes(data: bytes, filename: str) -> str:
    """Extract raw text from a PDF, DOCX or plain-text document.

    Raises:
        UnsupportedDocumentError: For unknown formats or unreadable files.
    """
    suffix = PurePath(filename).suffix.lower()
    if suffix == ".pdf":
        return _extract_pdf(data, filename)
    if suffix == ".docx":
        return _extract_docx(data, filename)
    if suffix in TEXT_SUFFIXES:
        return data.decode("utf-8", errors="replace")
    raise UnsupportedDocumentError(f"unsupported document type: {filename}")


def _extract_pdf(data: bytes, filename: str) -> str:
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except PdfReadError as exc:
        raise UnsupportedDocumentError(f"could not read PDF {filename}: {exc}") from exc
    return "\n\n".join(page.strip() for page in pages if page.strip())


def _extract_docx(data: bytes, filename: str) -> str:
    try:
        document = docx.Document(io.BytesIO(data))
    except (PackageNotFoundError, zipfile.BadZipFile, KeyError) as exc:
        raise UnsupportedDocumentError(f"could not read DOCX {filename}: {exc}") from exc
    paragraphs = [paragraph.text for paragraph in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            paragraphs.append(" | ".join(cell.text.strip() for cell in row.cells))
    return "\n\n".join(text.strip() for text in paragraphs if text.strip())


def extract_clean_text(data: bytes, filename: str) -> str:
    return clean_text(extract_text_from_bytes(data, filename))


def estimate_document(filename: str, data: bytes, chunker: Chunker, min_chars: int) -> DocumentEstimate:
    """Estimate chunks and tokens for one document.

    Unreadable or too-short documents come back with ``skipped=True`` and a reason.
    """
    try:
        text = extract_clean_text(data, filename)
    except UnsupportedDocumentError as exc:
        logger.warning("document_estimate_failed", file_name=filename, error=str(exc))
        return DocumentEstimate(file_name=filename, chars=0, chunks=0, tokens_estimated=0, skipped=True, reason=str(exc))

    if len(text) < min_chars:
        return DocumentEstimate(
            file_name=filename,
            chars=len(text),
            chunks=0,
            tokens_estimated=0,
            skipped=True,
            reason=f"Document text too short ({len(text)} chars, min={min_chars})",
        )

    chunks = chunker.chunk(text, url=f"file:///{filename}", domain="estimate")
    return DocumentEstimate(
        file_name=filename,
        chars=len(text),
        chunks=len(chunks),
        tokens_estimated=sum(chunk.token_count for chunk in chunks),
    )
