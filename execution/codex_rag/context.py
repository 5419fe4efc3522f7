"""
Context assembly: ranked results -> prompt-ready context block.
"""

from dataclasses import dataclass, field
from typing import Sequence

from .models import SearchResult

CONTEXT_DELIMITER = "\n\n---\n\n"

SYSTEM_PROMPT_FR = """Tu es CodexAI, un assistant juridique professionnel spécialisé dans le droit français.

Tes responsabilités :
1. Répondre à des questions complexes sur le droit civil, pénal et administratif français.
2. Fournir des analyses juridiques précises et fondées sur la jurisprudence.
3. Toujours citer tes sources (articles de loi, numéros de pourvoi, etc.).
4. Utiliser un langage juridique professionnel et précis.
5. Reconnaître les limites de tes connaissances et recommander une consultation avec un avocat si nécessaire.

Important : Tu ne dois jamais inventer de sources ou de citations. Si tu n'es pas certain, dis-le clairement."""

NO_CONTEXT_INSTRUCTION = (
    "Aucune source pertinente n'a été trouvée pour cette question. "
    "Indique clairement à l'utilisateur que tu n'as trouvé aucune source pertinente "
    "et n'invente aucune référence."
)

CONTEXT_INSTRUCTION = (
    "Appuie ta réponse uniquement sur les extraits ci-dessous et cite-les "
    "avec la référence indiquée entre crochets."
)


@dataclass
class RAGContext:
    """Context block plus the results it was built from."""
    context: str = ""
    citations: list[SearchResult] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.citations

    def to_dict(self) -> dict:
        return {
            "context": self.context,
            "citations": [c.to_dict() for c in self.citations],
        }


class ContextAssembler:
    """Joins "[citation]\\ntext" blocks in result order."""

    def __init__(self, delimiter: str = CONTEXT_DELIMITER):
        self.delimiter = delimiter

    def assemble(self, results: Sequence[SearchResult]) -> RAGContext:
        if not results:
            return RAGContext(context="", citations=[])
        blocks = [f"[{r.citation}]\n{r.chunk.text}" for r in results]
        return RAGContext(context=self.delimiter.join(blocks), citations=list(results))


def build_system_prompt(context: str, base_prompt: str = SYSTEM_PROMPT_FR) -> str:
    """
    System prompt for the assistant's language-model call.

    An empty context gets an explicit "no relevant source" instruction so
    the model reports the gap instead of inventing a citation.
    """
    if not context:
        return f"{base_prompt}\n\n{NO_CONTEXT_INSTRUCTION}"
    return f"{base_prompt}\n\n{CONTEXT_INSTRUCTION}\n\n{context}"
