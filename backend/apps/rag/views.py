"""
RAG API views.

Provides the query endpoint:
- POST /api/rag/query: full RAG (retrieve, rerank, answer with citations)

The view only translates HTTP to and from the orchestrator; every decision
about the request is made in apps.rag.orchestrator.
"""
import json
import logging
from typing import Optional

from django.http import HttpResponse, JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from apps.authn.audit import new_request_id
from apps.authn.middleware import error_response
from apps.indexing.publisher import publish_query_completed
from apps.rag.orchestrator import (
    ErrorCode,
    QueryOrchestrator,
    QueryRequest,
    UNCAUGHT_MESSAGE,
    build_default_orchestrator,
)

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'POST, OPTIONS',
    'Access-Control-Allow-Headers': 'authorization, content-type, x-client-info, apikey',
}

_orchestrator: Optional[QueryOrchestrator] = None


def get_orchestrator() -> QueryOrchestrator:
    """Get the shared orchestrator, building it on first use."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_default_orchestrator()
    return _orchestrator


def reset_orchestrator():
    """Reset the cached orchestrator. Useful for testing."""
    global _orchestrator
    _orchestrator = None


def with_cors(response):
    for header, value in CORS_HEADERS.items():
        response[header] = value
    return response


def parse_json_body(request) -> Optional[object]:
    """Decode the request body, None if it is not valid JSON."""
    try:
        return json.loads(request.body or b'')
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


@method_decorator(csrf_exempt, name='dispatch')
class QueryView(View):
    """
    POST /api/rag/query

    Answer a question from the caller's own documents.

    Request body:
        {
            "question": "What was Q3 revenue?",
            "k": 20  // optional, clamped to RAG_MAX_K
        }

    Response:
        {
            "requestId": "...",
            "answer": "Revenue was $4.2M [S1].",
            "sources": [
                {"label": "S1", "document_id": "...", "document_title": "...",
                 "chunk_id": "...", "page_no": 3, "similarity": 0.87, "preview": "..."}
            ],
            "metrics": {"totalLatency": 812, "llmLatency": 640, ...}
        }

    Errors:
        {"error_code": "AUTH_401|RATE_429|VALIDATION_400|EMBED_500|...",
         "message": "...", "requestId": "..."}
    """

    async def options(self, request, *args, **kwargs):
        return with_cors(HttpResponse(status=204))

    async def post(self, request):
        query_request = QueryRequest(
            authorization=request.META.get('HTTP_AUTHORIZATION'),
            forwarded_for=request.META.get('HTTP_X_FORWARDED_FOR') or request.META.get('REMOTE_ADDR'),
            user_agent=request.META.get('HTTP_USER_AGENT', ''),
            body=parse_json_body(request),
        )

        try:
            orchestrator = get_orchestrator()
        except Exception:
            request_id = new_request_id()
            logger.exception(f"[{request_id}] Could not build query orchestrator")
            return with_cors(error_response(ErrorCode.UNCAUGHT, UNCAUGHT_MESSAGE, request_id, 500))

        outcome = await orchestrator.handle(query_request, on_complete=publish_query_completed)

        if outcome.error is not None:
            error = outcome.error
            response = error_response(error.error_code, error.message, error.request_id, error.status)
            if error.retry_after:
                response['Retry-After'] = str(error.retry_after)
            return with_cors(response)

        response = JsonResponse(outcome.result.to_dict())
        response['X-Request-ID'] = outcome.request_id
        return with_cors(response)
