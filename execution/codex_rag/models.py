"""
Data model for the RAG core: chunks, search results and ingestion records.
"""

import uuid
from enum import Enum
from typing import Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so timestamps always compare."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SourceType(str, Enum):
    """Origin of a chunk. Determines citation format and visibility scope."""
    PRIVATE_VAULT = "private-vault"
    PUBLIC_STATUTE = "public-statute"
    PUBLIC_CASELAW = "public-caselaw"

    @classmethod
    def parse(cls, value) -> Optional["SourceType"]:
        """
        Resolve a SourceType from an enum member, its value or a legacy alias.

        Returns None for unknown values so callers decide whether that is an error.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return SOURCE_TYPE_ALIASES.get(normalized)

    @property
    def is_public(self) -> bool:
        return self is not SourceType.PRIVATE_VAULT


# Names used by the Légifrance / Judilibre / Vault modules of the web application
SOURCE_TYPE_ALIASES = {
    "legifrance": SourceType.PUBLIC_STATUTE,
    "judilibre": SourceType.PUBLIC_CASELAW,
    "vault": SourceType.PRIVATE_VAULT,
}


class IngestionStatus(str, Enum):
    """Lifecycle marker for a document's chunk set."""
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class Chunk:
    """A unit of indexed text with its embedding."""
    id: str
    document_id: Optional[str]
    source_type: SourceType
    text: str
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def create(
        cls,
        document_id: Optional[str],
        source_type: SourceType,
        text: str,
        embedding: list[float],
        metadata: Optional[dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "Chunk":
        """Build a new chunk with a fresh id and creation timestamp."""
        return cls(
            id=str(uuid.uuid4()),
            document_id=document_id,
            source_type=source_type,
            text=text,
            embedding=list(embedding),
            metadata=dict(metadata or {}),
            tenant_id=tenant_id,
            created_at=as_utc(created_at) if created_at else _utcnow(),
        )

    @property
    def dimensions(self) -> int:
        return len(self.embedding)

    def to_dict(self, include_embedding: bool = False) -> dict:
        data = {
            "id": self.id,
            "document_id": self.document_id,
            "source_type": self.source_type.value,
            "text": self.text,
            "metadata": self.metadata,
            "tenant_id": self.tenant_id,
            "created_at": self.created_at.isoformat(),
        }
        if include_embedding:
            data["embedding"] = list(self.embedding)
        return data


@dataclass
class SearchResult:
    """A chunk paired with its similarity to a query and its citation."""
    chunk: Chunk
    similarity: float
    citation: str

    def to_dict(self) -> dict:
        return {
            "chunk": self.chunk.to_dict(),
            "similarity": self.similarity,
            "citation": self.citation,
        }


@dataclass
class IngestionRecord:
    """Ingestion state of one document, used to detect partial chunk sets."""
    document_id: str
    status: IngestionStatus
    tenant_id: Optional[str] = None
    chunk_count: int = 0
    updated_at: datetime = field(default_factory=_utcnow)
    source_type: Optional[SourceType] = None

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "status": self.status.value,
            "source_type": self.source_type.value if self.source_type else None,
            "tenant_id": self.tenant_id,
            "chunk_count": self.chunk_count,
            "updated_at": self.updated_at.isoformat(),
        }
