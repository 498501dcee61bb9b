"""
Document management views.

Provides endpoints for:
- POST /api/documents - Create a document from JSON or a text upload (idempotent)
- GET /api/documents - List user's documents
- DELETE /api/documents/<id> - Delete a document with its chunks and embeddings
- POST /api/documents/<id>/ingest - (Re)ingest one document
- POST /api/documents/reprocess - Re-ingest documents missing embeddings
- POST /api/documents/scrape - Create a document from a web page
- GET /api/documents/<id>/chunks/<index> - Get one chunk (citation viewer)

Documents are ingested synchronously on creation so they are queryable as
soon as the request returns.
"""
import json
import hashlib
import logging
from pathlib import Path
from typing import Optional, Tuple

from asgiref.sync import async_to_sync
from django.conf import settings
from django.db import transaction, IntegrityError
from django.db.models import Count
from django.http import JsonResponse
from django.views.decorators.http import require_http_methods
from django.views.decorators.csrf import csrf_exempt

from apps.authn.middleware import auth_required, error_response
from apps.authn.audit import (
    audit_document_created,
    audit_document_deleted,
    audit_document_duplicate,
)
from apps.indexing.models import DocumentChunk
from apps.indexing.pipeline import IngestionError, build_default_pipeline
from .models import Document, DocumentStatus
from .scraper import ScrapeError, scrape_url
from .storage import get_storage, StorageError

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 255

EXTENSION_TO_MIME = {
    '.txt': 'text/plain',
    '.md': 'text/markdown',
    '.markdown': 'text/markdown',
}


class DocumentInputError(Exception):
    """Raised when a create request is malformed."""
    pass


def compute_content_hash(content: str) -> str:
    """SHA-256 of the document text, hex encoded (64 characters)."""
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


def normalize_content_type(content_type: str, filename: str) -> str:
    """
    Normalize content type, using file extension as fallback.

    Some browsers/clients send incorrect MIME types, so we also check extension.
    """
    content_type = (content_type or '').split(';')[0].strip().lower()
    if content_type in ('application/octet-stream', 'binary/octet-stream', ''):
        return EXTENSION_TO_MIME.get(Path(filename).suffix.lower(), content_type)
    return content_type


def not_found(request, what: str = 'Document') -> JsonResponse:
    return error_response('NOT_FOUND_404', f'{what} not found', request.request_id, 404)


def get_owned_document(request, document_id) -> Optional[Document]:
    """The document if it exists and belongs to the caller, else None."""
    try:
        return Document.objects.get(id=document_id, owner_id=request.user_claims.sub)
    except Document.DoesNotExist:
        return None


def serialize_document(document: Document, chunk_count: Optional[int] = None) -> dict:
    data = {
        'id': str(document.id),
        'title': document.title,
        'source': document.source,
        'mimeType': document.mime_type,
        'fileSize': document.file_size,
        'status': document.status,
        'createdAt': document.created_at.isoformat(),
        'updatedAt': document.updated_at.isoformat(),
    }
    if chunk_count is not None:
        data['chunkCount'] = chunk_count
    if document.metadata.get('last_error'):
        data['errorMessage'] = document.metadata['last_error']
    return data


def parse_upload(request) -> Tuple[dict, Optional[object]]:
    """
    Read a multipart text upload.

    Returns:
        (fields, uploaded_file)
    """
    uploaded_file = request.FILES['file']
    filename = uploaded_file.name

    if uploaded_file.size > settings.MAX_UPLOAD_SIZE:
        max_mb = settings.MAX_UPLOAD_SIZE // (1024 * 1024)
        raise DocumentInputError(f'File too large. Maximum size is {max_mb}MB')

    mime_type = normalize_content_type(uploaded_file.content_type, filename)
    if mime_type not in settings.ALLOWED_CONTENT_TYPES:
        raise DocumentInputError(
            f"Invalid content type. Allowed: {', '.join(settings.ALLOWED_CONTENT_TYPES)}"
        )

    try:
        content = uploaded_file.read().decode('utf-8')
    except UnicodeDecodeError:
        raise DocumentInputError('File is not valid UTF-8 text')
    uploaded_file.seek(0)

    fields = {
        'title': request.POST.get('title') or filename,
        'content': content,
        'source': request.POST.get('source') or filename,
        'mime_type': mime_type,
        'file_size': uploaded_file.size,
    }
    return fields, uploaded_file


def parse_json_document(request) -> dict:
    try:
        body = json.loads(request.body or b'')
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise DocumentInputError('Invalid JSON body')

    if not isinstance(body, dict):
        raise DocumentInputError('Request body must be a JSON object')

    content = body.get('content')
    if not isinstance(content, str):
        raise DocumentInputError('content is required')

    mime_type = body.get('mime_type') or 'text/plain'
    if mime_type not in settings.ALLOWED_CONTENT_TYPES:
        raise DocumentInputError(
            f"Invalid content type. Allowed: {', '.join(settings.ALLOWED_CONTENT_TYPES)}"
        )

    return {
        'title': body.get('title'),
        'content': content,
        'source': body.get('source') or '',
        'mime_type': mime_type,
        'file_size': len(content.encode('utf-8')),
    }


def duplicate_response(request, existing: Document) -> JsonResponse:
    logger.info(f"[{request.request_id}] Duplicate content: returning existing document {existing.id}")
    audit_document_duplicate(request, str(existing.id))
    return JsonResponse({
        'document_id': str(existing.id),
        'status': existing.status,
        'chunks': existing.chunks.count(),
        'duplicate': True,
        'message': 'Document with identical content already exists',
    }, status=200)


def create_document(request):
    """
    Create and ingest a document.

    POST /api/documents

    Accepts JSON {"title", "content", "source", "mime_type"} or
    multipart/form-data with a 'file' field (text/plain, text/markdown).

    Returns:
        {
            "document_id": "uuid",
            "status": "INDEXED",
            "chunks": 12
        }
    """
    try:
        if 'file' in request.FILES:
            fields, uploaded_file = parse_upload(request)
        else:
            fields, uploaded_file = parse_json_document(request), None
    except DocumentInputError as e:
        return error_response('VALIDATION_400', str(e), request.request_id, 400)

    return store_and_ingest(request, fields, uploaded_file)


def store_and_ingest(request, fields: dict, uploaded_file=None):
    """
    Deduplicate, persist and ingest a document for the caller.

    Shared by uploads, JSON bodies and scraped pages. Identical content for
    the same owner returns the existing document instead of a new one.
    """
    user_id = request.user_claims.sub

    title = (fields['title'] or '').strip()
    if not title:
        return error_response('VALIDATION_400', 'title is required', request.request_id, 400)
    if not fields['content'].strip():
        return error_response('VALIDATION_400', 'content is empty', request.request_id, 400)

    content_hash = compute_content_hash(fields['content'])

    existing = Document.objects.filter(owner_id=user_id, content_hash=content_hash).first()
    if existing:
        return duplicate_response(request, existing)

    try:
        with transaction.atomic():
            document = Document.objects.create(
                owner_id=user_id,
                title=title[:MAX_TITLE_LENGTH],
                source=fields['source'][:500],
                content=fields['content'],
                mime_type=fields['mime_type'],
                file_size=fields['file_size'],
                content_hash=content_hash,
                status=DocumentStatus.UPLOADED,
            )

            if uploaded_file is not None:
                document.file_path = get_storage().save(user_id, uploaded_file.name, uploaded_file)
                document.save(update_fields=['file_path', 'updated_at'])

    except StorageError as e:
        logger.error(f"[{request.request_id}] Storage error during upload: {e}")
        return error_response('STORAGE_500', 'Failed to store file', request.request_id, 500)
    except IntegrityError as e:
        # Race condition: another request created the same document
        logger.warning(f"[{request.request_id}] IntegrityError during create (race condition): {e}")
        existing = Document.objects.filter(owner_id=user_id, content_hash=content_hash).first()
        if existing:
            return duplicate_response(request, existing)
        return error_response('UNCAUGHT_500', 'Failed to create document', request.request_id, 500)

    logger.info(f"[{request.request_id}] Document created: {document.id}")
    audit_document_created(
        request,
        document_id=str(document.id),
        title=document.title,
        size_bytes=document.file_size,
        content_hash=content_hash,
    )

    try:
        result = async_to_sync(build_default_pipeline().ingest)(document)
    except IngestionError as e:
        return JsonResponse({
            'document_id': str(document.id),
            'status': DocumentStatus.FAILED,
            'chunks': 0,
            'error_code': 'INGEST_500',
            'message': str(e),
            'requestId': request.request_id,
        }, status=500)

    return JsonResponse({
        'document_id': str(document.id),
        'status': DocumentStatus.INDEXED,
        'chunks': result.chunk_count,
    }, status=201)


def list_documents(request):
    """
    List all documents for the authenticated user.

    GET /api/documents

    Returns:
        {
            "documents": [
                {
                    "id": "uuid",
                    "title": "Q3 report",
                    "status": "INDEXED",
                    "chunkCount": 12,
                    ...
                }
            ]
        }
    """
    documents = (
        Document.objects.filter(owner_id=request.user_claims.sub)
        .annotate(chunk_count=Count('chunks'))
        .order_by('-created_at')
    )

    return JsonResponse({
        'documents': [serialize_document(doc, doc.chunk_count) for doc in documents]
    })


@csrf_exempt
@require_http_methods(["GET", "POST"])
@auth_required
def documents(request):
    """Collection endpoint: GET lists, POST creates."""
    if request.method == 'POST':
        return create_document(request)
    return list_documents(request)


@csrf_exempt
@require_http_methods(["POST"])
@auth_required
def scrape_document(request):
    """
    Create and ingest a document from a web page.

    POST /api/documents/scrape
    Body: {"url": "https://..."}

    The page's visible text becomes the content, its <title> the title and
    the URL the source. Same response shape as POST /api/documents.
    """
    try:
        body = json.loads(request.body or b'')
    except (json.JSONDecodeError, UnicodeDecodeError):
        return error_response('VALIDATION_400', 'Invalid JSON body', request.request_id, 400)
    url = body.get('url') if isinstance(body, dict) else None

    try:
        page = scrape_url(url)
    except ScrapeError as e:
        logger.warning(f"[{request.request_id}] Scrape failed: {e}")
        return error_response('SCRAPE_422', str(e), request.request_id, 422)

    return store_and_ingest(request, {
        'title': page.title,
        'content': page.content,
        'source': page.url,
        'mime_type': 'text/html',
        'file_size': len(page.content.encode('utf-8')),
    })


@csrf_exempt
@require_http_methods(["DELETE"])
@auth_required
def delete_document(request, document_id):
    """
    Delete a document, its chunks, embeddings and stored attachment.

    DELETE /api/documents/<document_id>
    """
    from apps.indexing.store import DjangoChunkStore

    document = get_owned_document(request, document_id)
    if document is None:
        return not_found(request)

    chunk_count = DjangoChunkStore().delete_document_sync(str(document.id))
    audit_document_deleted(request, str(document_id), chunk_count)

    return JsonResponse({'deleted': True, 'document_id': str(document_id), 'chunks': chunk_count})


@csrf_exempt
@require_http_methods(["POST"])
@auth_required
def ingest_document(request, document_id):
    """
    (Re)ingest one document, replacing its chunks and embeddings.

    POST /api/documents/<document_id>/ingest

    Returns:
        {"document_id": "uuid", "chunks": 12}
    """
    document = get_owned_document(request, document_id)
    if document is None:
        return not_found(request)

    try:
        result = async_to_sync(build_default_pipeline().ingest)(document)
    except IngestionError as e:
        return error_response('INGEST_500', str(e), request.request_id, 500)

    return JsonResponse(result.to_dict())


@csrf_exempt
@require_http_methods(["POST"])
@auth_required
def reprocess_documents(request):
    """
    Re-ingest the caller's documents that have no embeddings.

    POST /api/documents/reprocess

    Returns:
        {
            "success": true,
            "message": "Reprocessed 2 of 3 documents",
            "total": 10,
            "needingReprocessing": 3,
            "processed": 2,
            "failed": 1,
            "results": [{"id": "...", "title": "...", "status": "success|failed"}]
        }
    """
    summary = async_to_sync(build_default_pipeline().reprocess_missing)(request.user_claims.sub)
    return JsonResponse(summary.to_dict())


@csrf_exempt
@require_http_methods(["GET"])
@auth_required
def get_chunk(request, document_id, chunk_index):
    """
    Get a specific chunk from a document.

    GET /api/documents/<document_id>/chunks/<chunk_index>

    Used for viewing citation sources (clickable citations in UI).

    Returns:
        {
            "documentId": "uuid",
            "chunkId": "uuid",
            "chunkIndex": 3,
            "pageNo": 2,
            "text": "Full chunk text content...",
            "title": "Q3 report"
        }
    """
    document = get_owned_document(request, document_id)
    if document is None:
        return not_found(request)

    try:
        chunk = DocumentChunk.objects.get(document=document, chunk_index=chunk_index)
    except DocumentChunk.DoesNotExist:
        return not_found(request, 'Chunk')

    return JsonResponse({
        'documentId': str(document.id),
        'chunkId': str(chunk.id),
        'chunkIndex': chunk.chunk_index,
        'pageNo': chunk.page_no,
        'text': chunk.text,
        'title': document.title,
    })
