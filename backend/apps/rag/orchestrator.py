"""
Query orchestrator.

Runs one question through the pipeline, strictly in sequence and failing
fast at each gate:

    auth -> rate limit (user) -> rate limit (ip) -> validate -> embed
    -> vector search -> rerank -> relevance filter -> synthesize
    -> persist -> respond

Every exit carries the request ID generated at entry. Failures become a
QueryError with a stable error code; nothing escapes unlabeled. Zero
results and low-confidence results are answers, not errors.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from django.conf import settings

from apps.authn.audit import (
    audit_rag_query,
    audit_rag_query_failed,
    audit_ratelimit_exceeded,
    new_request_id,
)
from apps.authn.privacy import anonymize_ip, extract_client_ip, rate_limit_ip_key
from apps.authn import ratelimit
from apps.indexing.embedder import EmbeddingError
from apps.rag.embeddings import (
    QueryValidationError,
    get_default_k,
    get_max_k,
    normalize_query,
    parse_top_k,
)
from apps.rag.llm_client import LLMError
from apps.rag.ports import (
    AuditSink,
    Authenticator,
    ChatModel,
    HistoryObserver,
    QueryEmbedder,
    RateLimiter,
    VectorStore,
)
from apps.rag.reranker import RerankConfig, get_rerank_keep_n, rerank_candidates
from apps.rag.retrieval import RetrievalCandidate, SearchError, create_snippet
from apps.rag import synthesis

logger = logging.getLogger(__name__)

QUERY_ENDPOINT = 'query'

DEFAULT_RELEVANCE_THRESHOLD = 0.4
DEFAULT_ANSWER_MAX_CHARS = 2000
DEFAULT_PREVIEW_CHARS = 240

UNCAUGHT_MESSAGE = "Unexpected server error"


class ErrorCode:
    """Stable error codes returned to clients."""
    AUTH = 'AUTH_401'
    RATE_LIMITED = 'RATE_429'
    VALIDATION = 'VALIDATION_400'
    EMBED = 'EMBED_500'
    SEARCH = 'SEARCH_500'
    LLM = 'LLM_500'
    UNCAUGHT = 'UNCAUGHT_500'


ERROR_STATUS = {
    ErrorCode.AUTH: 401,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.VALIDATION: 400,
    ErrorCode.EMBED: 500,
    ErrorCode.SEARCH: 500,
    ErrorCode.LLM: 500,
    ErrorCode.UNCAUGHT: 500,
}


class QueryOutcomeKind:
    ANSWERED = 'answered'
    NO_DOCUMENTS = 'no_documents'
    LOW_CONFIDENCE = 'low_confidence'


class QueryFailure(Exception):
    """Raised inside the pipeline to end a request with an error code."""

    def __init__(self, error_code: str, message: str, detail: Optional[str] = None,
                 retry_after: Optional[int] = None):
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.detail = detail or message
        self.retry_after = retry_after


@dataclass
class QueryRequest:
    """Transport-independent view of an incoming query."""
    authorization: Optional[str]
    forwarded_for: Optional[str] = None
    user_agent: str = ''
    body: Any = None  # parsed JSON body, None if unparseable


@dataclass
class QuerySettings:
    """Limits and thresholds for one orchestrator instance."""
    default_k: int = 20
    max_k: int = 30
    keep_n: int = 8
    relevance_threshold: float = DEFAULT_RELEVANCE_THRESHOLD
    user_limit: int = 30
    ip_limit: int = 90
    window_seconds: int = 60
    answer_max_chars: int = DEFAULT_ANSWER_MAX_CHARS
    preview_chars: int = DEFAULT_PREVIEW_CHARS
    temperature: float = synthesis.DEFAULT_TEMPERATURE
    max_tokens: int = synthesis.DEFAULT_MAX_TOKENS
    rerank: RerankConfig = field(default_factory=RerankConfig)

    @classmethod
    def from_settings(cls) -> 'QuerySettings':
        return cls(
            default_k=get_default_k(),
            max_k=get_max_k(),
            keep_n=get_rerank_keep_n(),
            relevance_threshold=getattr(settings, 'RELEVANCE_THRESHOLD', DEFAULT_RELEVANCE_THRESHOLD),
            user_limit=ratelimit.get_user_limit(),
            ip_limit=ratelimit.get_ip_limit(),
            window_seconds=ratelimit.get_window_seconds(),
            answer_max_chars=getattr(settings, 'AUDIT_ANSWER_MAX_CHARS', DEFAULT_ANSWER_MAX_CHARS),
            preview_chars=getattr(settings, 'SOURCE_PREVIEW_CHARS', DEFAULT_PREVIEW_CHARS),
            temperature=synthesis.get_temperature(),
            max_tokens=synthesis.get_max_tokens(),
            rerank=RerankConfig.from_settings(),
        )


@dataclass
class Source:
    """A citation returned with the answer."""
    label: str
    document_id: str
    document_title: str
    chunk_id: str
    page_no: Optional[int]
    similarity: float
    preview: str

    def to_dict(self) -> dict:
        return {
            'label': self.label,
            'document_id': self.document_id,
            'document_title': self.document_title,
            'chunk_id': self.chunk_id,
            'page_no': self.page_no,
            'similarity': round(self.similarity, 4),
            'preview': self.preview,
        }


@dataclass
class QueryMetrics:
    """Latency breakdown (ms) and retrieval quality for one query."""
    total_latency: int = 0
    llm_latency: int = 0
    db_latency: int = 0
    emb_latency: int = 0
    rerank_latency: int = 0
    avg_similarity: float = 0.0
    chunks_retrieved: int = 0
    total_chunks_found: int = 0

    def to_dict(self) -> dict:
        return {
            'totalLatency': self.total_latency,
            'llmLatency': self.llm_latency,
            'dbLatency': self.db_latency,
            'embLatency': self.emb_latency,
            'rerankLatency': self.rerank_latency,
            'avgSimilarity': round(self.avg_similarity, 4),
            'chunksRetrieved': self.chunks_retrieved,
            'totalChunksFound': self.total_chunks_found,
        }


@dataclass
class QueryResult:
    """A successful response (including zero-result and low-confidence answers)."""
    request_id: str
    user_id: str
    question: str
    answer: str
    sources: List[Source]
    metrics: QueryMetrics
    kind: str = QueryOutcomeKind.ANSWERED

    def to_dict(self) -> dict:
        return {
            'requestId': self.request_id,
            'answer': self.answer,
            'sources': [s.to_dict() for s in self.sources],
            'metrics': self.metrics.to_dict(),
        }


@dataclass
class QueryError:
    """A failed response."""
    error_code: str
    message: str
    request_id: str
    retry_after: Optional[int] = None

    @property
    def status(self) -> int:
        return ERROR_STATUS.get(self.error_code, 500)

    def to_dict(self) -> dict:
        return {
            'error_code': self.error_code,
            'message': self.message,
            'requestId': self.request_id,
        }


@dataclass
class QueryOutcome:
    """Either a result or an error, always with the request ID."""
    request_id: str
    result: Optional[QueryResult] = None
    error: Optional[QueryError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _RequestContext:
    request_id: str
    client_ip: str  # anonymized
    ip_key: str
    user_agent: str
    started: float
    user_id: Optional[str] = None


def _elapsed_ms(start: float) -> int:
    return int(round((time.perf_counter() - start) * 1000))


class QueryOrchestrator:
    """
    Sequences one RAG query across injected collaborators.

    Holds no per-request state, so a single instance can serve concurrent
    requests.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        rate_limiter: RateLimiter,
        embedder: QueryEmbedder,
        vector_store: VectorStore,
        llm: ChatModel,
        audit_sink: AuditSink,
        settings: Optional[QuerySettings] = None,
    ):
        self.authenticator = authenticator
        self.rate_limiter = rate_limiter
        self.embedder = embedder
        self.vector_store = vector_store
        self.llm = llm
        self.audit_sink = audit_sink
        self.config = settings or QuerySettings.from_settings()

    async def handle(
        self,
        request: QueryRequest,
        on_complete: Optional[HistoryObserver] = None,
    ) -> QueryOutcome:
        """
        Run a query end to end.

        Args:
            request: The incoming query
            on_complete: Optional async callback receiving the QueryResult
                once the answer is final (e.g. live history feed)

        Returns:
            QueryOutcome with either a result or an error
        """
        raw_ip = extract_client_ip(request.forwarded_for)
        ctx = _RequestContext(
            request_id=new_request_id(),
            client_ip=anonymize_ip(raw_ip),
            ip_key=rate_limit_ip_key(raw_ip),
            user_agent=(request.user_agent or '')[:500],
            started=time.perf_counter(),
        )

        try:
            result = await self._run(request, ctx)
        except QueryFailure as failure:
            logger.warning(
                f"[{ctx.request_id}] Query failed with {failure.error_code}: {failure.detail}"
            )
            await self._record_failure(ctx, failure.error_code, failure.detail)
            return QueryOutcome(
                request_id=ctx.request_id,
                error=QueryError(
                    error_code=failure.error_code,
                    message=failure.message,
                    request_id=ctx.request_id,
                    retry_after=failure.retry_after,
                ),
            )
        except Exception as e:
            logger.exception(f"[{ctx.request_id}] Unhandled error in query pipeline")
            await self._record_failure(ctx, ErrorCode.UNCAUGHT, f"{type(e).__name__}: {e}")
            return QueryOutcome(
                request_id=ctx.request_id,
                error=QueryError(
                    error_code=ErrorCode.UNCAUGHT,
                    message=UNCAUGHT_MESSAGE,
                    request_id=ctx.request_id,
                ),
            )

        if on_complete is not None:
            try:
                await on_complete(result)
            except Exception as e:
                logger.warning(f"[{ctx.request_id}] History observer failed: {e}")

        return QueryOutcome(request_id=ctx.request_id, result=result)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self, request: QueryRequest, ctx: _RequestContext) -> QueryResult:
        cfg = self.config

        user_id = await self.authenticator.authenticate(request.authorization)
        if not user_id:
            raise QueryFailure(
                ErrorCode.AUTH,
                "Missing or invalid authorization",
                detail="Bearer credential missing or invalid",
            )
        ctx.user_id = user_id

        await self._check_rate_limit(ctx, 'user', f"query:user:{user_id}", cfg.user_limit)
        await self._check_rate_limit(ctx, 'ip', f"query:ip:{ctx.ip_key}", cfg.ip_limit)

        question, top_k = self._validate(request.body)
        await self._best_effort(
            ctx, 'usage', self.audit_sink.record_usage(user_id, QUERY_ENDPOINT, ctx.client_ip)
        )

        metrics = QueryMetrics()

        # Embed
        stage_start = time.perf_counter()
        try:
            query_embedding = await self.embedder.embed_one(question)
        except EmbeddingError as e:
            raise QueryFailure(ErrorCode.EMBED, "Embedding generation failed", detail=str(e))
        metrics.emb_latency = _elapsed_ms(stage_start)

        # Vector search
        stage_start = time.perf_counter()
        try:
            candidates = await self.vector_store.search(user_id, query_embedding, top_k)
        except SearchError as e:
            raise QueryFailure(ErrorCode.SEARCH, "Vector search failed", detail=str(e))
        metrics.db_latency = _elapsed_ms(stage_start)
        metrics.total_chunks_found = len(candidates)

        logger.info(f"[{ctx.request_id}] Retrieved {len(candidates)} candidates (k={top_k})")

        if not candidates:
            result = self._no_documents(ctx, question, metrics)
        else:
            ranked, rerank_ms = rerank_candidates(question, candidates, cfg.keep_n, cfg.rerank)
            metrics.rerank_latency = int(round(rerank_ms))

            relevant = [c for c in ranked if c.similarity >= cfg.relevance_threshold]
            if relevant:
                result = await self._synthesize(ctx, question, relevant, metrics)
            else:
                result = self._low_confidence(ctx, question, candidates, metrics)

        result.metrics.total_latency = _elapsed_ms(ctx.started)
        await self._persist(ctx, result, top_k)
        return result

    async def _check_rate_limit(self, ctx: _RequestContext, scope: str, key: str, limit: int) -> None:
        result = await self.rate_limiter.check(key, limit, self.config.window_seconds)
        if result.allowed:
            return

        logger.warning(f"[{ctx.request_id}] Rate limit exceeded ({scope}) for user {ctx.user_id}")
        try:
            audit_ratelimit_exceeded(
                ctx.user_id, ctx.request_id, ctx.client_ip, scope, limit, self.config.window_seconds
            )
        except Exception as e:
            logger.warning(f"[{ctx.request_id}] Audit logging failed: {e}")

        raise QueryFailure(
            ErrorCode.RATE_LIMITED,
            "Rate limit exceeded. Please slow down.",
            detail=f"{scope} limit of {limit}/{self.config.window_seconds}s exceeded",
            retry_after=result.retry_after or self.config.window_seconds,
        )

    def _validate(self, body: Any) -> tuple:
        if not isinstance(body, dict):
            raise QueryFailure(ErrorCode.VALIDATION, "Request body must be a JSON object")
        try:
            question = normalize_query(body.get('question'))
            top_k = parse_top_k(body.get('k'), self.config.default_k, self.config.max_k)
        except QueryValidationError as e:
            raise QueryFailure(ErrorCode.VALIDATION, str(e))
        return question, top_k

    def _make_source(self, position: int, candidate: RetrievalCandidate) -> Source:
        return Source(
            label=synthesis.source_label(position),
            document_id=candidate.document_id,
            document_title=candidate.document_title,
            chunk_id=candidate.chunk_id,
            page_no=candidate.page_no,
            similarity=candidate.similarity,
            preview=create_snippet(candidate.text, self.config.preview_chars),
        )

    def _no_documents(self, ctx: _RequestContext, question: str, metrics: QueryMetrics) -> QueryResult:
        logger.info(f"[{ctx.request_id}] No candidates, returning canned answer")
        return QueryResult(
            request_id=ctx.request_id,
            user_id=ctx.user_id,
            question=question,
            answer=synthesis.NO_DOCUMENTS_ANSWER,
            sources=[],
            metrics=metrics,
            kind=QueryOutcomeKind.NO_DOCUMENTS,
        )

    def _low_confidence(
        self,
        ctx: _RequestContext,
        question: str,
        candidates: List[RetrievalCandidate],
        metrics: QueryMetrics,
    ) -> QueryResult:
        best = max(candidates, key=lambda c: c.similarity)
        logger.info(
            f"[{ctx.request_id}] All candidates below threshold "
            f"{self.config.relevance_threshold} (best={best.similarity:.3f})"
        )
        metrics.avg_similarity = best.similarity
        metrics.chunks_retrieved = 0
        return QueryResult(
            request_id=ctx.request_id,
            user_id=ctx.user_id,
            question=question,
            answer=synthesis.low_confidence_answer(best, self.config.relevance_threshold),
            sources=[self._make_source(1, best)],
            metrics=metrics,
            kind=QueryOutcomeKind.LOW_CONFIDENCE,
        )

    async def _synthesize(
        self,
        ctx: _RequestContext,
        question: str,
        relevant: List[RetrievalCandidate],
        metrics: QueryMetrics,
    ) -> QueryResult:
        messages = synthesis.build_messages(question, relevant)

        stage_start = time.perf_counter()
        try:
            response = await self.llm.chat(
                messages,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except LLMError as e:
            raise QueryFailure(ErrorCode.LLM, "AI generation failed", detail=str(e))
        metrics.llm_latency = _elapsed_ms(stage_start)

        metrics.chunks_retrieved = len(relevant)
        metrics.avg_similarity = sum(c.similarity for c in relevant) / len(relevant)

        return QueryResult(
            request_id=ctx.request_id,
            user_id=ctx.user_id,
            question=question,
            answer=response.content,
            sources=[self._make_source(i, c) for i, c in enumerate(relevant, 1)],
            metrics=metrics,
            kind=QueryOutcomeKind.ANSWERED,
        )

    # ------------------------------------------------------------------
    # Persistence (best effort, never changes the response)
    # ------------------------------------------------------------------

    async def _best_effort(self, ctx: _RequestContext, what: str, awaitable) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.warning(f"[{ctx.request_id}] Failed to record {what}: {e}")

    async def _persist(self, ctx: _RequestContext, result: QueryResult, top_k: int) -> None:
        metrics = result.metrics
        await asyncio.gather(
            self._best_effort(ctx, 'query history', self.audit_sink.record_query(
                user_id=result.user_id,
                request_id=result.request_id,
                question=result.question,
                answer=result.answer[:self.config.answer_max_chars],
                avg_similarity=metrics.avg_similarity,
                documents_retrieved=metrics.chunks_retrieved,
            )),
            self._best_effort(ctx, 'performance metrics', self.audit_sink.record_metrics(
                result.user_id, result.request_id, QUERY_ENDPOINT, metrics
            )),
        )
        try:
            audit_rag_query(
                user_id=result.user_id,
                request_id=result.request_id,
                client_ip=ctx.client_ip,
                question_length=len(result.question),
                top_k=top_k,
                chunks_used=metrics.chunks_retrieved,
                avg_similarity=metrics.avg_similarity,
            )
        except Exception as e:
            logger.warning(f"[{ctx.request_id}] Audit logging failed: {e}")

    async def _record_failure(self, ctx: _RequestContext, error_code: str, detail: str) -> None:
        try:
            audit_rag_query_failed(ctx.user_id, ctx.request_id, ctx.client_ip, error_code, detail)
        except Exception as e:
            logger.warning(f"[{ctx.request_id}] Audit logging failed: {e}")

        await self._best_effort(ctx, 'error log', self.audit_sink.record_error(
            error_code=error_code,
            message=detail[:1000],
            request_id=ctx.request_id,
            user_id=ctx.user_id,
            endpoint=QUERY_ENDPOINT,
            ip_address=ctx.client_ip,
            user_agent=ctx.user_agent,
        ))


def build_default_orchestrator() -> QueryOrchestrator:
    """Wire the orchestrator to the JWT, Redis, HTTP and Django implementations."""
    from apps.authn.middleware import JWTAuthenticator
    from apps.indexing.embedder import get_embedding_client
    from apps.monitoring.recorder import DjangoAuditSink
    from apps.rag.llm_client import get_llm_client
    from apps.rag.retrieval import DjangoVectorStore

    return QueryOrchestrator(
        authenticator=JWTAuthenticator(),
        rate_limiter=ratelimit.get_limiter(),
        embedder=get_embedding_client(),
        vector_store=DjangoVectorStore(),
        llm=get_llm_client(),
        audit_sink=DjangoAuditSink(),
    )
