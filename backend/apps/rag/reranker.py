"""
Hybrid re-ranker for RAG retrieval.

Reduces an over-fetched candidate set to a smaller, more relevant and more
diverse top-K:

1. Lexical score: weighted, case-insensitive occurrence count of question terms
2. Relevance: weighted blend of vector similarity and lexical score
3. Maximal Marginal Relevance (MMR) selection, penalizing candidates whose
   word sets overlap with already selected ones

Pure and synchronous: no I/O, deterministic for a fixed input order.
"""
import logging
import math
import string
import time
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from django.conf import settings

from apps.rag.retrieval import RetrievalCandidate

logger = logging.getLogger(__name__)

# Relevance blend (favours semantic similarity)
DEFAULT_VECTOR_WEIGHT = 0.7
DEFAULT_LEXICAL_WEIGHT = 0.3

# MMR trade-off between relevance and diversity
DEFAULT_DIVERSITY_WEIGHT = 0.2

# How strongly word-set overlap reduces the diversity score
DEFAULT_DIVERSITY_PENALTY = 0.5

# Question terms this short are treated as stop-words
MIN_TERM_LENGTH = 3


@dataclass
class RerankConfig:
    """Tunable re-ranking weights."""
    vector_weight: float = DEFAULT_VECTOR_WEIGHT
    lexical_weight: float = DEFAULT_LEXICAL_WEIGHT
    diversity_weight: float = DEFAULT_DIVERSITY_WEIGHT
    diversity_penalty: float = DEFAULT_DIVERSITY_PENALTY

    @classmethod
    def from_settings(cls) -> 'RerankConfig':
        """Build a config from Django settings, falling back to defaults."""
        return cls(
            vector_weight=getattr(settings, 'RERANK_VECTOR_WEIGHT', DEFAULT_VECTOR_WEIGHT),
            lexical_weight=getattr(settings, 'RERANK_LEXICAL_WEIGHT', DEFAULT_LEXICAL_WEIGHT),
            diversity_weight=getattr(settings, 'RERANK_DIVERSITY_WEIGHT', DEFAULT_DIVERSITY_WEIGHT),
            diversity_penalty=getattr(settings, 'RERANK_DIVERSITY_PENALTY', DEFAULT_DIVERSITY_PENALTY),
        )


def extract_query_terms(question: str) -> List[str]:
    """
    Lower-cased question terms with surrounding punctuation removed.

    Terms shorter than MIN_TERM_LENGTH are dropped.
    """
    terms = []
    for token in question.lower().split():
        term = token.strip(string.punctuation)
        if len(term) >= MIN_TERM_LENGTH:
            terms.append(term)
    return terms


def lexical_score(question: str, text: str) -> float:
    """
    Score how well a text matches the question's terms.

    Every occurrence of a term contributes ``1 + ln(1 + len(term) / 5)``,
    so longer terms weigh slightly more per hit. The sum is normalized by
    the number of whitespace tokens in the question (at least 1).

    Args:
        question: The user question
        text: Candidate chunk text

    Returns:
        Normalized lexical score (>= 0)
    """
    lowered = text.lower()
    score = 0.0
    for term in extract_query_terms(question):
        count = lowered.count(term)
        if count:
            score += count * (1 + math.log(1 + len(term) / 5))
    return score / max(1, len(question.split()))


def word_set(text: str) -> Set[str]:
    return set(text.lower().split())


def jaccard_similarity(a: Set[str], b: Set[str]) -> float:
    """Jaccard similarity of two word sets (0.0 when both are empty)."""
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def score_relevance(
    question: str,
    candidates: List[RetrievalCandidate],
    config: RerankConfig,
) -> None:
    """Attach lexical and combined relevance scores to each candidate."""
    for candidate in candidates:
        candidate.lexical_score = lexical_score(question, candidate.text)
        candidate.relevance_score = (
            config.vector_weight * candidate.similarity
            + config.lexical_weight * candidate.lexical_score
        )


def select_diverse(
    candidates: List[RetrievalCandidate],
    top_k: int,
    config: RerankConfig,
) -> List[RetrievalCandidate]:
    """
    Greedy MMR selection over scored candidates.

    Each round picks the remaining candidate maximizing
    ``relevance * (1 - w) + diversity * w`` where
    ``diversity = 1 - penalty * max_jaccard(candidate, selected)``.
    Ties keep the earlier candidate.
    """
    weight = config.diversity_weight
    remaining = list(candidates)
    remaining_words = [word_set(c.text) for c in remaining]
    selected: List[RetrievalCandidate] = []
    selected_words: List[Set[str]] = []

    while remaining and len(selected) < top_k:
        best_index = 0
        best_score: Optional[float] = None

        for i, candidate in enumerate(remaining):
            max_overlap = max(
                (jaccard_similarity(remaining_words[i], words) for words in selected_words),
                default=0.0,
            )
            diversity = 1 - config.diversity_penalty * max_overlap
            score = candidate.relevance_score * (1 - weight) + diversity * weight
            if best_score is None or score > best_score:
                best_index, best_score = i, score

        chosen = remaining.pop(best_index)
        chosen.rerank_score = best_score
        selected.append(chosen)
        selected_words.append(remaining_words.pop(best_index))

    return selected


def rerank_candidates(
    question: str,
    candidates: List[RetrievalCandidate],
    top_k: int,
    config: Optional[RerankConfig] = None,
) -> Tuple[List[RetrievalCandidate], float]:
    """
    Re-rank candidates for relevance and diversity, with timing.

    Args:
        question: The user question
        candidates: Over-fetched candidates from vector search
        top_k: Maximum number of candidates to return
        config: Weights (defaults to settings)

    Returns:
        Tuple of (selected candidates, latency in ms)
    """
    start_time = time.time()

    if top_k <= 0 or not candidates:
        return [], (time.time() - start_time) * 1000

    config = config or RerankConfig.from_settings()

    # A chunk can only be selected once
    seen = set()
    unique = []
    for candidate in candidates:
        if candidate.chunk_id not in seen:
            seen.add(candidate.chunk_id)
            unique.append(candidate)

    score_relevance(question, unique, config)
    selected = select_diverse(unique, top_k, config)

    latency_ms = (time.time() - start_time) * 1000
    logger.debug(
        f"Reranked {len(candidates)} -> {len(selected)} candidates in {latency_ms:.1f}ms"
    )

    return selected, latency_ms


def get_rerank_keep_n() -> int:
    """Get the number of candidates to keep after reranking."""
    return getattr(settings, 'RERANK_KEEP_N', 8)
