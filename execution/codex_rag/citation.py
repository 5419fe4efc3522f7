"""
Citation Formatting for French Legal Sources

Turns a chunk's source type and metadata into the citation shown next to
retrieved text:

    public-statute  ->  "1134 du Code Civil"
    public-caselaw  ->  "Cour de cassation, 2023-05-10, 21-12.345"
    private-vault   ->  "contrat.pdf (Document privé)"

Formatting never fails: unknown source types yield "Source inconnue" so a
bad row cannot abort a search response.
"""

import logging
from typing import Any, Mapping, Optional

from .models import SourceType

logger = logging.getLogger(__name__)

UNKNOWN_SOURCE = "Source inconnue"

# Fallback labels when a metadata field is missing or empty
STATUTE_DEFAULTS = {"article": "Article", "code": "Code"}
CASELAW_DEFAULTS = {"jurisdiction": "Cour", "date": "Date inconnue", "caseNumber": "N° pourvoi"}
VAULT_DEFAULTS = {"fileName": "Document"}


def _field(metadata: Mapping[str, Any], *keys: str, default: str) -> str:
    """Return the first non-empty metadata value among keys, as text."""
    for key in keys:
        value = metadata.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return default


def format_citation(source_type, metadata: Optional[Mapping[str, Any]]) -> str:
    """
    Format a legal citation.

    Args:
        source_type: SourceType member, its string value, or a legacy alias
                     ("legifrance", "judilibre", "vault")
        metadata: Source metadata (may be None)

    Returns:
        Human-readable citation string
    """
    metadata = metadata or {}
    resolved = SourceType.parse(source_type)

    if resolved is SourceType.PUBLIC_STATUTE:
        article = _field(metadata, "article", default=STATUTE_DEFAULTS["article"])
        code = _field(metadata, "code", default=STATUTE_DEFAULTS["code"])
        return f"{article} du {code}"

    if resolved is SourceType.PUBLIC_CASELAW:
        jurisdiction = _field(metadata, "jurisdiction", default=CASELAW_DEFAULTS["jurisdiction"])
        date = _field(metadata, "date", default=CASELAW_DEFAULTS["date"])
        case_number = _field(
            metadata, "caseNumber", "pourvoi", default=CASELAW_DEFAULTS["caseNumber"]
        )
        return f"{jurisdiction}, {date}, {case_number}"

    if resolved is SourceType.PRIVATE_VAULT:
        file_name = _field(metadata, "fileName", default=VAULT_DEFAULTS["fileName"])
        return f"{file_name} (Document privé)"

    logger.debug(f"No citation format for source type {source_type!r}")
    return UNKNOWN_SOURCE


class LegalCitationFormatter:
    """Citation formatter injected into the ranker."""

    def format(self, source_type, metadata: Optional[Mapping[str, Any]]) -> str:
        return format_citation(source_type, metadata)


# CLI for testing
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    samples = [
        ("public-statute", {"article": "1134", "code": "Code Civil"}),
        ("public-caselaw", {"jurisdiction": "Cour de cassation", "date": "2023-05-10", "caseNumber": "21-12.345"}),
        ("private-vault", {"fileName": "bail_commercial.pdf"}),
        ("unknown", {}),
    ]
    for st, meta in samples:
        print(f"{st:16} -> {format_citation(st, meta)}")
