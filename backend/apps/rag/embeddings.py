"""
Query input handling for RAG.

Normalizes the question and the requested candidate count before the
question is embedded with the same client used for document chunks.
"""
import logging
import re
from typing import Any

from django.conf import settings

logger = logging.getLogger(__name__)

MAX_QUESTION_LENGTH = 2000


class QueryValidationError(Exception):
    """Raised when query validation fails."""
    pass


def normalize_query(query: Any) -> str:
    """
    Normalize a user query for embedding.

    - Strip leading/trailing whitespace
    - Collapse multiple whitespace to single space
    - Raise if empty

    Args:
        query: Raw user question

    Returns:
        Normalized query string

    Raises:
        QueryValidationError: If query is empty after normalization
    """
    if not query or not isinstance(query, str):
        raise QueryValidationError("Question is required")

    normalized = re.sub(r'\s+', ' ', query.strip())

    if not normalized:
        raise QueryValidationError("Question is required")

    if len(normalized) > MAX_QUESTION_LENGTH:
        raise QueryValidationError(f"Question too long (max {MAX_QUESTION_LENGTH} characters)")

    return normalized


def get_default_k() -> int:
    return getattr(settings, 'RAG_DEFAULT_K', 20)


def get_max_k() -> int:
    return getattr(settings, 'RAG_MAX_K', 30)


def parse_top_k(value: Any, default: int, ceiling: int) -> int:
    """
    Parse the requested candidate count and clamp it to [1, ceiling].

    The ceiling is enforced regardless of client input to bound
    downstream cost.

    Raises:
        QueryValidationError: If the value is not a finite number
    """
    if value is None:
        return min(default, ceiling)

    if isinstance(value, bool):
        raise QueryValidationError("k must be a number")

    try:
        k = int(value)
    except (TypeError, ValueError, OverflowError):
        raise QueryValidationError("k must be a number")

    return max(1, min(k, ceiling))
