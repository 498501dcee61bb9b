"""
Audit logging for security and compliance.

Provides structured JSON logging for key events without exposing sensitive
content: no question text, no answer text and no raw client IPs.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .privacy import anonymize_ip, extract_client_ip

# Dedicated audit logger
audit_logger = logging.getLogger('audit')


class AuditEvent:
    """Standard audit event types."""
    # Auth events
    AUTH_TOKEN_REJECTED = 'auth.token_rejected'

    # Document events
    DOCUMENT_CREATED = 'document.created'
    DOCUMENT_DUPLICATE = 'document.duplicate'
    DOCUMENT_DELETED = 'document.deleted'

    # Indexing events
    INDEXING_COMPLETED = 'indexing.completed'
    INDEXING_FAILED = 'indexing.failed'

    # RAG events
    RAG_QUERY = 'rag.query'
    RAG_QUERY_FAILED = 'rag.query_failed'

    # Rate limiting events
    RATELIMIT_EXCEEDED = 'ratelimit.exceeded'


def new_request_id() -> str:
    """Generate a request ID for correlation."""
    return str(uuid.uuid4())


def get_client_ip(request) -> str:
    """Extract the anonymized client IP from a request, handling proxies."""
    forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    ip = extract_client_ip(forwarded_for)
    if ip == 'unknown':
        ip = request.META.get('REMOTE_ADDR', 'unknown')
    return anonymize_ip(ip)


def get_request_id(request) -> str:
    """Get or generate a request ID for correlation."""
    request_id = getattr(request, 'request_id', None)
    if not request_id:
        request_id = request.META.get('HTTP_X_REQUEST_ID')
    if not request_id:
        request_id = new_request_id()
    return request_id


def log_audit(
    event_type: str,
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """
    Log a structured audit event.

    Args:
        event_type: One of AuditEvent constants
        user_id: Subject ID (from JWT)
        request_id: Correlation ID for request tracing
        client_ip: Anonymized client IP address
        outcome: 'success' or 'failure'
        metadata: Event-specific data (no PII/secrets)
    """
    event = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'event_type': event_type,
        'user_id': user_id,
        'request_id': request_id,
        'client_ip': client_ip,
        'outcome': outcome,
        'metadata': metadata or {}
    }

    audit_logger.info(json.dumps(event))


def log_audit_from_request(
    request,
    event_type: str,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """
    Log an audit event with request context auto-populated.

    Args:
        request: Django HttpRequest
        event_type: One of AuditEvent constants
        outcome: 'success' or 'failure'
        metadata: Event-specific data
    """
    user_id = None
    if hasattr(request, 'user_claims') and request.user_claims:
        user_id = getattr(request.user_claims, 'sub', None)

    log_audit(
        event_type=event_type,
        user_id=user_id,
        request_id=get_request_id(request),
        client_ip=get_client_ip(request),
        outcome=outcome,
        metadata=metadata
    )


# Convenience functions for common events

def audit_document_created(request, document_id: str, title: str, size_bytes: int, content_hash: str):
    """Log successful document creation."""
    log_audit_from_request(
        request,
        AuditEvent.DOCUMENT_CREATED,
        metadata={
            'document_id': document_id,
            'title_length': len(title),
            'size_bytes': size_bytes,
            'content_hash': content_hash[:16] + '...',  # Truncate for brevity
        }
    )


def audit_document_duplicate(request, existing_id: str):
    """Log duplicate document content detected."""
    log_audit_from_request(
        request,
        AuditEvent.DOCUMENT_DUPLICATE,
        metadata={'existing_id': existing_id}
    )


def audit_document_deleted(request, document_id: str, chunk_count: int):
    """Log document deletion."""
    log_audit_from_request(
        request,
        AuditEvent.DOCUMENT_DELETED,
        metadata={
            'document_id': document_id,
            'chunk_count': chunk_count,
        }
    )


def audit_rag_query(
    user_id: str,
    request_id: str,
    client_ip: str,
    question_length: int,
    top_k: int,
    chunks_used: int,
    avg_similarity: float,
):
    """Log RAG query (without the actual question text)."""
    log_audit(
        AuditEvent.RAG_QUERY,
        user_id=user_id,
        request_id=request_id,
        client_ip=client_ip,
        metadata={
            'question_length': question_length,
            'top_k': top_k,
            'chunks_used': chunks_used,
            'avg_similarity': round(avg_similarity, 4),
        }
    )


def audit_rag_query_failed(
    user_id: Optional[str],
    request_id: str,
    client_ip: str,
    error_code: str,
    error: str,
):
    """Log a failed RAG query with its error code."""
    log_audit(
        AuditEvent.RAG_QUERY_FAILED,
        user_id=user_id,
        request_id=request_id,
        client_ip=client_ip,
        outcome='failure',
        metadata={
            'error_code': error_code,
            'error': error[:200],  # Truncate error message
        }
    )


def audit_indexing_completed(document_id: str, user_id: str, chunk_count: int):
    """Log ingestion completed."""
    log_audit(
        AuditEvent.INDEXING_COMPLETED,
        user_id=user_id,
        metadata={
            'document_id': document_id,
            'chunk_count': chunk_count,
        }
    )


def audit_indexing_failed(document_id: str, user_id: str, error: str):
    """Log ingestion failed."""
    log_audit(
        AuditEvent.INDEXING_FAILED,
        user_id=user_id,
        outcome='failure',
        metadata={
            'document_id': document_id,
            'error': error[:200],
        }
    )


def audit_ratelimit_exceeded(
    user_id: Optional[str],
    request_id: str,
    client_ip: str,
    scope: str,
    limit: int,
    window: int,
):
    """Log rate limit exceeded."""
    log_audit(
        AuditEvent.RATELIMIT_EXCEEDED,
        user_id=user_id,
        request_id=request_id,
        client_ip=client_ip,
        outcome='failure',
        metadata={
            'scope': scope,
            'limit': limit,
            'window': window,
        }
    )


def audit_auth_rejected(request_id: str, client_ip: str, reason: str):
    """Log failed token validation."""
    log_audit(
        AuditEvent.AUTH_TOKEN_REJECTED,
        request_id=request_id,
        client_ip=client_ip,
        outcome='failure',
        metadata={'reason': reason}
    )
