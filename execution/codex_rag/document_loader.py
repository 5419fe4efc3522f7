"""
Document Loader - Extracts text and file metadata for ingestion

PDF files go through PyMuPDF4LLM (markdown keeps article headings intact)
with PyMuPDF for the page count; .txt and .md files are read as UTF-8.
"""

import re
import logging
from pathlib import Path
from dataclasses import dataclass, field

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

MIME_TYPES = {
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".md": "text/markdown",
}

_HORIZONTAL_WS = re.compile(r"[ \t\f\v\u00a0]+")
_TRAILING_WS = re.compile(r" +\n")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


@dataclass
class LoadedDocument:
    """Extracted text plus the vault metadata used for citations."""
    text: str
    metadata: dict = field(default_factory=dict)

    @property
    def word_count(self) -> int:
        return len(self.text.split())


def normalize_text(text: str) -> str:
    """Collapse runs of spaces/tabs and limit blank lines to one."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HORIZONTAL_WS.sub(" ", text)
    text = _TRAILING_WS.sub("\n", text)
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


def _extract_pdf(path: Path) -> tuple[str, int]:
    import pymupdf4llm
    import fitz  # PyMuPDF

    markdown = pymupdf4llm.to_markdown(str(path))
    with fitz.open(str(path)) as doc:
        page_count = len(doc)
    return markdown, page_count


def load_document(path) -> LoadedDocument:
    """
    Extract normalized text and {fileName, fileSize, mimeType} metadata.

    Args:
        path: Path to a .pdf, .txt or .md file

    Raises:
        ValidationError: unsupported extension, missing file or unreadable content
    """
    path = Path(path)
    ext = path.suffix.lower()

    if ext not in MIME_TYPES:
        raise ValidationError(f"Unsupported file format: {ext or path.name}")
    if not path.is_file():
        raise ValidationError(f"File not found: {path}")

    metadata = {
        "fileName": path.name,
        "fileSize": path.stat().st_size,
        "mimeType": MIME_TYPES[ext],
    }

    try:
        if ext == ".pdf":
            raw, page_count = _extract_pdf(path)
            metadata["pageCount"] = page_count
        else:
            raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError, RuntimeError) as e:
        logger.error(f"Failed to extract text from {path.name}: {e}")
        raise ValidationError(f"Failed to extract text from {path.name}") from e

    document = LoadedDocument(text=normalize_text(raw), metadata=metadata)
    metadata["wordCount"] = document.word_count
    logger.info(f"Loaded {path.name}: {document.word_count} words")
    return document
