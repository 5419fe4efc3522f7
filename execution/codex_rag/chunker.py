"""
Sliding-Window Text Chunker

Splits legal text into overlapping windows of whitespace-delimited words.
Words are the unit for both chunk_size and overlap, and each window is
re-joined with single spaces before being handed to the embedding service.

Example (chunk_size=4, overlap=1):
    "a b c d e f"  ->  ["a b c d", "d e f"]
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


@dataclass
class ChunkConfig:
    """Configuration for chunking parameters (in words)."""
    chunk_size: int = 500
    overlap: int = 100


def validate_chunk_params(chunk_size: int, overlap: int) -> None:
    """Raise ValidationError unless chunk_size > overlap >= 0."""
    if chunk_size <= 0:
        raise ValidationError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise ValidationError(f"overlap must be non-negative, got {overlap}")
    if overlap >= chunk_size:
        raise ValidationError(
            f"overlap ({overlap}) must be smaller than chunk_size ({chunk_size})"
        )


def chunk_text(text: str, chunk_size: int = 500, overlap: int = 100) -> list[str]:
    """
    Split text into overlapping word windows.

    Each window starts chunk_size - overlap words after the previous one.
    The window that reaches the end of the text is the last one, so no
    chunk consists solely of words already emitted as overlap.

    Args:
        text: Raw document text
        chunk_size: Maximum words per chunk
        overlap: Words shared between consecutive chunks

    Returns:
        List of non-empty chunk strings (empty list for empty text)
    """
    validate_chunk_params(chunk_size, overlap)

    if not text:
        return []

    words = [w for w in _WHITESPACE.split(text) if w]
    if not words:
        return []

    step = chunk_size - overlap
    chunks = []
    start = 0
    while start < len(words):
        end = min(start + chunk_size, len(words))
        window = " ".join(words[start:end])
        if window.strip():
            chunks.append(window)
        if end >= len(words):
            break
        start += step

    return chunks


class TextChunker:
    """
    Word-window chunker bound to a ChunkConfig.

    Stateless apart from its configuration; chunk() can be called
    concurrently and always returns a fresh list.
    """

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()
        validate_chunk_params(self.config.chunk_size, self.config.overlap)

    def chunk(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
    ) -> list[str]:
        """Chunk text, overriding the configured sizes when given."""
        size = self.config.chunk_size if chunk_size is None else chunk_size
        ovl = self.config.overlap if overlap is None else overlap
        chunks = chunk_text(text, chunk_size=size, overlap=ovl)
        logger.debug(f"Chunked {len(text)} chars into {len(chunks)} chunks (size={size}, overlap={ovl})")
        return chunks

    @staticmethod
    def count_words(text: str) -> int:
        return len([w for w in _WHITESPACE.split(text or "") if w])


# CLI for testing
if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) < 2:
        print("Usage: python -m execution.codex_rag.chunker <text_file> [chunk_size] [overlap]")
        sys.exit(1)

    with open(sys.argv[1], encoding="utf-8") as f:
        content = f.read()

    size = int(sys.argv[2]) if len(sys.argv) > 2 else 500
    ovl = int(sys.argv[3]) if len(sys.argv) > 3 else 100
    pieces = TextChunker(ChunkConfig(chunk_size=size, overlap=ovl)).chunk(content)

    print(f"\nCreated {len(pieces)} chunks:")
    for i, piece in enumerate(pieces[:5]):
        print(f"\n--- Chunk {i} ({TextChunker.count_words(piece)} words) ---")
        print(f"{piece[:200]}...")
