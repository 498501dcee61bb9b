"""
Collaborator interfaces for the query orchestrator.

The orchestrator only talks to these protocols; the Django, Redis and HTTP
implementations are wired in by build_default_orchestrator, and tests pass
in-memory fakes.
"""
from typing import Any, Awaitable, Callable, List, Optional, Protocol

from apps.authn.ratelimit import RateLimitResult
from apps.rag.llm_client import LLMMessage, LLMResponse
from apps.rag.retrieval import RetrievalCandidate


class Authenticator(Protocol):
    async def authenticate(self, authorization: Optional[str]) -> Optional[str]:
        """Return the user ID for a valid bearer credential, else None."""
        ...


class RateLimiter(Protocol):
    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Atomically count one request against a window."""
        ...


class QueryEmbedder(Protocol):
    async def embed_one(self, text: str) -> List[float]:
        ...


class VectorStore(Protocol):
    async def search(
        self,
        owner_id: str,
        query_embedding: List[float],
        top_k: int,
    ) -> List[RetrievalCandidate]:
        """Nearest chunks among the owner's documents only."""
        ...


class ChatModel(Protocol):
    async def chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.2,
        max_tokens: int = 800,
    ) -> LLMResponse:
        ...


class AuditSink(Protocol):
    """Append-only persistence for usage, history, metrics and errors."""

    async def record_usage(self, user_id: str, endpoint: str, ip_address: str) -> None:
        ...

    async def record_query(
        self,
        user_id: str,
        request_id: str,
        question: str,
        answer: str,
        avg_similarity: float,
        documents_retrieved: int,
    ) -> None:
        ...

    async def record_metrics(self, user_id: str, request_id: str, endpoint: str, metrics: Any) -> None:
        ...

    async def record_error(
        self,
        error_code: str,
        message: str,
        request_id: str,
        user_id: Optional[str],
        endpoint: str,
        ip_address: str,
        user_agent: str,
    ) -> None:
        ...


# Receives the finished QueryResult (e.g. to push it to the live history feed)
HistoryObserver = Callable[[Any], Awaitable[None]]
