"""
Django-backed audit sink for the query orchestrator.

Each method appends one row. Callers treat these writes as best effort.
"""
import logging
from typing import Optional

from asgiref.sync import sync_to_async

from apps.monitoring.models import ApiUsage, ErrorLog, PerformanceMetric, QueryRecord

logger = logging.getLogger(__name__)


class DjangoAuditSink:
    """Writes usage, history, metrics and error rows through the ORM."""

    async def record_usage(self, user_id: str, endpoint: str, ip_address: str) -> None:
        await sync_to_async(ApiUsage.objects.create)(
            user_id=user_id,
            endpoint=endpoint,
            ip_address=ip_address,
        )

    async def record_query(
        self,
        user_id: str,
        request_id: str,
        question: str,
        answer: str,
        avg_similarity: float,
        documents_retrieved: int,
    ) -> None:
        await sync_to_async(QueryRecord.objects.create)(
            user_id=user_id,
            request_id=request_id,
            query=question,
            answer=answer,
            avg_similarity=avg_similarity,
            documents_retrieved=documents_retrieved,
        )

    async def record_metrics(self, user_id: str, request_id: str, endpoint: str, metrics) -> None:
        """
        Args:
            metrics: QueryMetrics from the orchestrator
        """
        await sync_to_async(PerformanceMetric.objects.create)(
            endpoint=endpoint,
            user_id=user_id,
            request_id=request_id,
            latency_ms=metrics.total_latency,
            embedding_latency_ms=metrics.emb_latency,
            db_latency_ms=metrics.db_latency,
            llm_latency_ms=metrics.llm_latency,
            rerank_latency_ms=metrics.rerank_latency,
            chunks_retrieved=metrics.chunks_retrieved,
            avg_similarity=metrics.avg_similarity,
        )
        logger.debug(f"[{request_id}] Recorded metrics: total={metrics.total_latency}ms")

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
        await sync_to_async(ErrorLog.objects.create)(
            error_code=error_code,
            error_message=message,
            request_id=request_id,
            user_id=user_id,
            endpoint=endpoint,
            ip_address=ip_address,
            user_agent=user_agent,
        )
