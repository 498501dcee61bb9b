"""
Answer synthesis for RAG.

Builds the closed-book grounding prompt from re-ranked chunks and holds the
templated answers used when no LLM call is made.
"""
import logging
from typing import List

from django.conf import settings

from apps.rag.llm_client import LLMMessage
from apps.rag.retrieval import RetrievalCandidate

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.2  # Low for groundedness
DEFAULT_MAX_TOKENS = 800


# System prompt with strict grounding and citation rules
SYSTEM_PROMPT = """You are a document analysis assistant. Answer the user's question using ONLY the numbered sources provided.

STRICT RULES:
1. Every factual claim must cite its source label in brackets, e.g. [S1] or [S2][S3].
2. Do not introduce facts, figures or dates that are absent from the sources.
3. If the sources do not contain the answer, say so plainly instead of guessing.
4. When sources disagree, report both and cite each.
5. Be concise and factual.

SOURCES:
{context}"""


NO_DOCUMENTS_ANSWER = (
    "I couldn't find any documents to answer from. "
    "Upload or ingest documents first, then ask again."
)

LOW_CONFIDENCE_TEMPLATE = (
    "I couldn't find information relevant enough to answer this confidently. "
    "The closest match [S1] from \"{title}\" had only {similarity:.1f}% similarity, "
    "below the {threshold:.0f}% relevance threshold. "
    "Try rephrasing the question or adding documents that cover this topic."
)


def get_temperature() -> float:
    return getattr(settings, 'LLM_TEMPERATURE', DEFAULT_TEMPERATURE)


def get_max_tokens() -> int:
    return getattr(settings, 'LLM_MAX_TOKENS', DEFAULT_MAX_TOKENS)


def source_label(position: int) -> str:
    """Source label for a 1-based position (S1, S2, ...)."""
    return f"S{position}"


def format_position(candidate: RetrievalCandidate) -> str:
    if candidate.page_no:
        return f"p.{candidate.page_no}"
    return f"chunk {candidate.chunk_index}"


def build_context_block(candidates: List[RetrievalCandidate]) -> str:
    """
    Build a labelled context block from ranked candidates.

    Format:
    [S1] annual-report.pdf (p.3) [relevance=87.3%]
    The text content here...
    """
    parts = []
    for i, candidate in enumerate(candidates, 1):
        parts.append(
            f"[{source_label(i)}] {candidate.document_title} ({format_position(candidate)}) "
            f"[relevance={candidate.similarity * 100:.1f}%]\n"
            f"{candidate.text.strip()}"
        )
    return "\n\n---\n\n".join(parts)


def build_messages(question: str, candidates: List[RetrievalCandidate]) -> List[LLMMessage]:
    """Build the chat messages for a grounded answer."""
    system_prompt = SYSTEM_PROMPT.format(context=build_context_block(candidates))
    logger.debug(f"System prompt length: {len(system_prompt)} chars")
    return [
        LLMMessage(role="system", content=system_prompt),
        LLMMessage(role="user", content=f"Question: {question}\n\nAnswer with citations:"),
    ]


def low_confidence_answer(best: RetrievalCandidate, threshold: float) -> str:
    """Templated answer citing the best sub-threshold match."""
    return LOW_CONFIDENCE_TEMPLATE.format(
        title=best.document_title,
        similarity=best.similarity * 100,
        threshold=threshold * 100,
    )
