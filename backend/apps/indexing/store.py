"""
Chunk and embedding persistence.

All multi-row writes run inside one transaction so a document never ends
up with a partial chunk set.
"""
import logging
from typing import List, Optional

from asgiref.sync import sync_to_async
from django.db import transaction

from apps.docs.models import Document, DocumentStatus
from apps.docs.storage import StorageError, get_storage
from apps.indexing.chunker import TextChunk
from apps.indexing.models import ChunkEmbedding, DocumentChunk

logger = logging.getLogger(__name__)


class DjangoChunkStore:
    """Reads and writes documents, chunks and embeddings through the ORM."""

    def replace_chunks_sync(
        self,
        document_id: str,
        chunks: List[TextChunk],
        vectors: List[List[float]],
    ) -> int:
        """
        Replace a document's chunks and embeddings.

        Old rows are deleted first; the whole swap is atomic.

        Returns:
            Number of chunks stored
        """
        if len(chunks) != len(vectors):
            raise ValueError(f"Got {len(vectors)} vectors for {len(chunks)} chunks")

        with transaction.atomic():
            ChunkEmbedding.objects.filter(document_id=document_id).delete()
            DocumentChunk.objects.filter(document_id=document_id).delete()

            for chunk, vector in zip(chunks, vectors):
                chunk_obj = DocumentChunk.objects.create(
                    document_id=document_id,
                    chunk_index=chunk.index,
                    text=chunk.text,
                    page_no=chunk.page_no,
                    char_start=chunk.start_char,
                    char_end=chunk.end_char,
                    metadata=chunk.metadata,
                )
                ChunkEmbedding.objects.create(
                    chunk=chunk_obj,
                    document_id=document_id,
                    embedding=vector,
                )

        logger.info(f"Stored {len(chunks)} chunks for document {document_id}")
        return len(chunks)

    def delete_document_sync(self, document_id: str) -> int:
        """
        Delete a document with its embeddings, chunks and attachment.

        Returns:
            Number of chunks removed
        """
        with transaction.atomic():
            document = Document.objects.select_for_update().get(id=document_id)
            file_path = document.file_path

            ChunkEmbedding.objects.filter(document_id=document_id).delete()
            chunk_count, _ = DocumentChunk.objects.filter(document_id=document_id).delete()
            document.delete()

        if file_path:
            try:
                get_storage().delete(file_path)
            except StorageError as e:
                # Rows are gone; an orphaned file is only logged
                logger.warning(f"Could not delete attachment {file_path}: {e}")

        logger.info(f"Deleted document {document_id} ({chunk_count} chunks)")
        return chunk_count

    def set_status_sync(self, document_id: str, status: str, error: Optional[str] = None) -> None:
        document = Document.objects.get(id=document_id)
        document.status = status
        fields = ['status', 'updated_at']
        if status == DocumentStatus.FAILED:
            document.metadata = {**document.metadata, 'last_error': error or ''}
            fields.append('metadata')
        elif 'last_error' in document.metadata:
            document.metadata = {k: v for k, v in document.metadata.items() if k != 'last_error'}
            fields.append('metadata')
        document.save(update_fields=fields)

    def documents_missing_embeddings_sync(self, owner_id: str) -> List[Document]:
        """The owner's documents that have no embedding rows at all."""
        return list(
            Document.objects.filter(owner_id=owner_id)
            .exclude(embeddings__isnull=False)
            .order_by('created_at')
        )

    def count_documents_sync(self, owner_id: str) -> int:
        return Document.objects.filter(owner_id=owner_id).count()

    async def replace_chunks(self, document_id: str, chunks: List[TextChunk], vectors: List[List[float]]) -> int:
        return await sync_to_async(self.replace_chunks_sync)(document_id, chunks, vectors)

    async def delete_document(self, document_id: str) -> int:
        return await sync_to_async(self.delete_document_sync)(document_id)

    async def set_status(self, document_id: str, status: str, error: Optional[str] = None) -> None:
        await sync_to_async(self.set_status_sync)(document_id, status, error)

    async def documents_missing_embeddings(self, owner_id: str) -> List[Document]:
        return await sync_to_async(self.documents_missing_embeddings_sync)(owner_id)

    async def count_documents(self, owner_id: str) -> int:
        return await sync_to_async(self.count_documents_sync)(owner_id)
