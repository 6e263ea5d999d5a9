# =============================================================================
# Input Validation & Text Extraction — PyMuPDF
# =============================================================================
#
# Two steps, deliberately separated:
#
#   1. resolve_source() + validate_content(): turn one of the accepted input
#      forms into raw bytes and reject anything that is empty, too large or
#      not a PDF. Runs BEFORE any document row exists, so a rejected upload
#      leaves nothing behind.
#   2. extract_text(): open the PDF with PyMuPDF and return normalized text
#      with paragraph breaks preserved (the paragraph chunker depends on
#      them) plus the page count.
#
# ACCEPTED INPUT FORMS:
#   - FileSource:             server-local path (must exist, be a file, .pdf)
#   - Base64Source:           base64 of the PDF bytes
#   - CompressedBase64Source: base64 of zlib(deflate(base64 of the PDF)),
#                             which is what pako.deflate produces client-side
#
# Extraction uses PyMuPDF from an in-memory stream. Encrypted files are
# detected with `needs_pass` and opened with the caller's password.
# =============================================================================

from __future__ import annotations

import base64
import binascii
import logging
import re
import zlib
from dataclasses import dataclass
from pathlib import Path

import fitz  # PyMuPDF

from docrag.config import settings
from docrag.errors import ExtractionError, ValidationError

logger = logging.getLogger(__name__)

PDF_SIGNATURE = b"%PDF"
PDF_MIME_TYPE = "application/pdf"
MIN_TEXT_LENGTH = 10


# ---------------------------------------------------------------------------
# Input Sources
# ---------------------------------------------------------------------------


@dataclass
class FileSource:
    path: str


@dataclass
class Base64Source:
    data: str


@dataclass
class CompressedBase64Source:
    data: str


Source = FileSource | Base64Source | CompressedBase64Source


@dataclass
class ResolvedContent:
    """Raw bytes of a validated upload plus what we know about it."""

    content: bytes
    filename: str
    size_bytes: int
    mime_type: str = PDF_MIME_TYPE


@dataclass
class ExtractedText:
    text: str
    page_count: int


# ---------------------------------------------------------------------------
# Source Resolution & Validation
# ---------------------------------------------------------------------------


def _b64decode(data: str, label: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"{label} is not valid base64: {exc}") from exc


def resolve_source(source: Source, filename: str | None = None) -> ResolvedContent:
    """
    Turn an input source into validated bytes.

    Raises:
        ValidationError: Missing/unreadable file, bad base64, bad compressed
            payload, empty or oversized content, or a missing PDF signature.
    """
    match source:
        case FileSource(path=path):
            file_path = Path(path)
            if not file_path.exists():
                raise ValidationError(f"File not found: {path}", {"path": path})
            if not file_path.is_file():
                raise ValidationError(f"Path is not a file: {path}", {"path": path})
            if file_path.suffix.lower() != ".pdf":
                raise ValidationError(
                    "Only PDF files are accepted.", {"path": path},
                )
            content = file_path.read_bytes()
            resolved_name = filename or file_path.name

        case Base64Source(data=data):
            content = _b64decode(data, "file_base64")
            resolved_name = filename or "document.pdf"

        case CompressedBase64Source(data=data):
            compressed = _b64decode(data, "compressed_base64")
            try:
                inflated = zlib.decompress(compressed)
            except zlib.error as exc:
                raise ValidationError(
                    f"compressed_base64 could not be decompressed: {exc}",
                ) from exc
            try:
                inner = inflated.decode("ascii")
            except UnicodeDecodeError as exc:
                raise ValidationError(
                    "compressed_base64 did not inflate to base64 text.",
                ) from exc
            content = _b64decode(inner, "inflated payload")
            resolved_name = filename or "document.pdf"

        case _:
            raise ValidationError(f"Unsupported source type: {type(source).__name__}")

    validate_content(content)

    logger.info(
        "Resolved %s source: filename=%s, size=%d bytes",
        type(source).__name__, resolved_name, len(content),
    )
    return ResolvedContent(
        content=content,
        filename=resolved_name,
        size_bytes=len(content),
    )


def validate_content(content: bytes) -> None:
    """Reject empty, oversized, or non-PDF content."""
    if not content:
        raise ValidationError("Uploaded content is empty.")

    if len(content) > settings.max_upload_bytes:
        raise ValidationError(
            "Uploaded content exceeds the size limit.",
            {"size_bytes": len(content), "max_bytes": settings.max_upload_bytes},
        )

    if not content.startswith(PDF_SIGNATURE):
        raise ValidationError(
            "Content is not a PDF (missing %PDF signature).",
            {"leading_bytes": content[:8].hex()},
        )


# ---------------------------------------------------------------------------
# Text Extraction
# ---------------------------------------------------------------------------

_INLINE_WS = re.compile(r"[ \t\f\v\r]+")
_BLANK_RUN = re.compile(r"\n{3,}")


def normalize_text(raw: str) -> str:
    """
    Collapse intra-line whitespace and trim lines, keeping paragraph breaks.

    Runs of three or more newlines become a single blank line so
    "para one\\n\\n\\n\\npara two" still splits into two paragraphs.
    """
    lines = [_INLINE_WS.sub(" ", line).strip() for line in raw.split("\n")]
    text = "\n".join(lines)
    return _BLANK_RUN.sub("\n\n", text).strip()


def extract_text(content: bytes, password: str | None = None) -> ExtractedText:
    """
    Extract normalized text from PDF bytes.

    Pages are joined with a blank line so a page boundary is also a
    paragraph boundary.

    Raises:
        ExtractionError: Bad signature, unparseable content, missing or
            wrong password, or fewer than 10 characters of text.
    """
    if not content.startswith(PDF_SIGNATURE):
        raise ExtractionError("Content is not a PDF (missing %PDF signature).")

    try:
        doc = fitz.open(stream=content, filetype="pdf")
    except (RuntimeError, ValueError) as exc:
        # PyMuPDF raises FileDataError (a RuntimeError subclass) on corrupt data
        raise ExtractionError(f"PDF could not be parsed: {exc}") from exc

    try:
        if doc.needs_pass:
            if not password:
                raise ExtractionError(
                    "PDF is password-protected; supply a password.",
                    {"encrypted": True},
                )
            if not doc.authenticate(password):
                raise ExtractionError(
                    "Password did not unlock the PDF.", {"encrypted": True},
                )

        page_texts = [page.get_text("text") for page in doc]
        page_count = doc.page_count
    except (RuntimeError, ValueError) as exc:
        raise ExtractionError(f"PDF text extraction failed: {exc}") from exc
    finally:
        doc.close()

    text = "\n\n".join(normalize_text(t) for t in page_texts if t.strip())

    if len(text) < MIN_TEXT_LENGTH:
        raise ExtractionError(
            "No readable text found in PDF.",
            {"page_count": page_count, "text_length": len(text)},
        )

    logger.info(
        "Extracted %d characters from %d pages", len(text), page_count,
    )
    return ExtractedText(text=text, page_count=page_count)
