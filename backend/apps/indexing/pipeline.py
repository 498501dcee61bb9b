"""
Ingestion pipeline - turns a document into retrievable chunks.

For one document:
1. Chunk its content (page aware, configured strategy)
2. Embed the chunks in batches
3. Replace the stored chunks and embeddings in one transaction

Status changes are published to the owner's live event feed and recorded
in the audit log.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from django.conf import settings

from apps.authn.audit import audit_indexing_completed, audit_indexing_failed
from apps.docs.models import DocumentStatus
from apps.indexing import publisher
from apps.indexing.chunker import (
    DEFAULT_CHUNK_OVERLAP,
    DEFAULT_CHUNK_SIZE,
    MIN_CHUNK_SIZE,
    ChunkStrategy,
    chunk_document,
)
from apps.indexing.embedder import EmbeddingError, embed_in_batches
from apps.indexing.retry import RetryExhausted, RetryPolicy, retry_async

logger = logging.getLogger(__name__)


class IngestionError(Exception):
    """Raised when a document cannot be ingested."""
    pass


@dataclass
class ChunkSettings:
    strategy: str = ChunkStrategy.SEMANTIC.value
    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP
    min_size: int = MIN_CHUNK_SIZE

    @classmethod
    def from_settings(cls) -> 'ChunkSettings':
        return cls(
            strategy=getattr(settings, 'CHUNK_STRATEGY', ChunkStrategy.SEMANTIC.value),
            chunk_size=getattr(settings, 'CHUNK_SIZE', DEFAULT_CHUNK_SIZE),
            chunk_overlap=getattr(settings, 'CHUNK_OVERLAP', DEFAULT_CHUNK_OVERLAP),
            min_size=getattr(settings, 'CHUNK_MIN_SIZE', MIN_CHUNK_SIZE),
        )


@dataclass
class IngestionResult:
    document_id: str
    chunk_count: int

    def to_dict(self) -> dict:
        return {'document_id': self.document_id, 'chunks': self.chunk_count}


@dataclass
class ReprocessSummary:
    """Outcome of reprocessing an owner's documents that lack embeddings."""
    total: int
    needing_reprocessing: int
    processed: int = 0
    failed: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.needing_reprocessing == 0:
            return 'No documents to reprocess'
        return f"Reprocessed {self.processed} of {self.needing_reprocessing} documents"

    def to_dict(self) -> dict:
        return {
            'success': True,
            'message': self.message,
            'total': self.total,
            'needingReprocessing': self.needing_reprocessing,
            'processed': self.processed,
            'failed': self.failed,
            'results': self.results,
        }


class IngestionPipeline:
    """
    Chunks, embeds and stores documents.

    Args:
        embedder: Embedding client (see apps.indexing.embedder)
        chunk_store: Persistence for chunks and embeddings (DjangoChunkStore)
        chunk_settings: Chunking parameters, from settings by default
    """

    def __init__(self, embedder, chunk_store, chunk_settings: Optional[ChunkSettings] = None):
        self.embedder = embedder
        self.chunk_store = chunk_store
        self.chunk_settings = chunk_settings or ChunkSettings.from_settings()

    async def ingest(self, document, retry_policy: Optional[RetryPolicy] = None) -> IngestionResult:
        """
        Ingest one document, replacing any previous chunks.

        Args:
            document: Object with id, owner_id, title and content
            retry_policy: If given, transient embedding failures are retried

        Returns:
            IngestionResult with the number of chunks stored

        Raises:
            IngestionError: If the document has no content, cannot be embedded
                or cannot be stored
        """
        document_id = str(document.id)
        owner_id = document.owner_id

        await self.chunk_store.set_status(document_id, DocumentStatus.INDEXING)
        await publisher.publish_indexing_started(document_id, owner_id)

        try:
            chunk_count = await self._index(document, retry_policy)
        except IngestionError as e:
            await self._fail(document_id, owner_id, str(e))
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while indexing document {document_id}")
            await self._fail(document_id, owner_id, f"Indexing error: {e}")
            raise IngestionError(f"Indexing error: {e}") from e

        await self.chunk_store.set_status(document_id, DocumentStatus.INDEXED)
        await publisher.publish_indexing_completed(document_id, owner_id, chunk_count)
        audit_indexing_completed(document_id, owner_id, chunk_count)

        return IngestionResult(document_id=document_id, chunk_count=chunk_count)

    async def _index(self, document, retry_policy: Optional[RetryPolicy]) -> int:
        document_id = str(document.id)
        cfg = self.chunk_settings

        if not document.content or not document.content.strip():
            raise IngestionError("Document has no content")

        chunks = chunk_document(
            document.content,
            strategy=cfg.strategy,
            chunk_size=cfg.chunk_size,
            chunk_overlap=cfg.chunk_overlap,
            min_size=cfg.min_size,
        )
        if not chunks:
            raise IngestionError("No chunks generated from text")

        logger.info(f"Created {len(chunks)} chunks from {document.title}")

        texts = [chunk.text for chunk in chunks]
        try:
            if retry_policy is None:
                vectors = await embed_in_batches(self.embedder, texts)
            else:
                vectors = await retry_async(
                    lambda: embed_in_batches(self.embedder, texts),
                    policy=retry_policy,
                    exceptions=(EmbeddingError,),
                    on_retry=lambda attempt, err, backoff: logger.warning(
                        f"Embedding retry {attempt + 1} for document {document_id}: {err}"
                    ),
                )
        except RetryExhausted as e:
            raise IngestionError(
                f"Embedding failed after {e.attempts} attempts: {e.last_exception}"
            )
        except EmbeddingError as e:
            raise IngestionError(f"Embedding error: {e}")

        return await self.chunk_store.replace_chunks(document_id, chunks, vectors)

    async def _fail(self, document_id: str, owner_id: str, error: str) -> None:
        logger.error(f"Ingestion of document {document_id} failed: {error}")
        await self.chunk_store.set_status(document_id, DocumentStatus.FAILED, error)
        await publisher.publish_indexing_failed(document_id, owner_id, error)
        audit_indexing_failed(document_id, owner_id, error)

    async def reprocess_missing(
        self,
        owner_id: str,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> ReprocessSummary:
        """
        Re-ingest every document of the owner that has no embeddings.

        Failures are recorded per document and never abort the batch.
        """
        retry_policy = retry_policy or RetryPolicy.from_settings()

        total = await self.chunk_store.count_documents(owner_id)
        pending = await self.chunk_store.documents_missing_embeddings(owner_id)
        summary = ReprocessSummary(total=total, needing_reprocessing=len(pending))

        logger.info(f"Found {len(pending)} of {total} documents without embeddings for {owner_id}")

        for document in pending:
            entry = {'id': str(document.id), 'title': document.title}
            try:
                result = await self.ingest(document, retry_policy=retry_policy)
            except IngestionError as e:
                summary.failed += 1
                entry.update(status='failed', error=str(e))
            else:
                summary.processed += 1
                entry.update(status='success', chunks=result.chunk_count)
            summary.results.append(entry)

        logger.info(summary.message)
        return summary


def build_default_pipeline() -> IngestionPipeline:
    """Wire the pipeline to the configured embedding client and the ORM store."""
    from apps.indexing.embedder import get_embedding_client
    from apps.indexing.store import DjangoChunkStore

    return IngestionPipeline(
        embedder=get_embedding_client(),
        chunk_store=DjangoChunkStore(),
    )
