"""
Chunk and embedding models.

Document -> (many) DocumentChunk -> (1:1) ChunkEmbedding is a strict
creation pipeline. Chunks and embeddings are never mutated: reprocessing
deletes and recreates them.
"""
import uuid
from django.db import models
from pgvector.django import VectorField

from apps.docs.models import Document

# Must match the embedding model output (nomic-embed-text / text-embedding-3-small@768)
EMBEDDING_DIMENSION = 768


class DocumentChunk(models.Model):
    """
    A contiguous span of a document's text, the unit of retrieval.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    document = models.ForeignKey(
        Document,
        on_delete=models.CASCADE,
        related_name='chunks',
        help_text="The source document"
    )

    # Chunk ordering (0-indexed, contiguous per document)
    chunk_index = models.PositiveIntegerField(
        help_text="Index of this chunk within the document (0-based)"
    )

    text = models.TextField(
        help_text="The text content of this chunk"
    )

    page_no = models.PositiveIntegerField(null=True, blank=True)
    char_start = models.PositiveIntegerField(null=True, blank=True)
    char_end = models.PositiveIntegerField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'document_chunks'
        ordering = ['document', 'chunk_index']
        # Unique constraint prevents duplicate chunks
        constraints = [
            models.UniqueConstraint(
                fields=['document', 'chunk_index'],
                name='unique_document_chunk'
            )
        ]

    def __str__(self):
        preview = self.text[:50] + '...' if len(self.text) > 50 else self.text
        return f"Chunk {self.chunk_index} of {self.document_id}: {preview}"


class ChunkEmbedding(models.Model):
    """
    The embedding vector of exactly one chunk.

    The document reference is denormalized so vector search can filter by
    owner without going through the chunk table first.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    chunk = models.OneToOneField(
        DocumentChunk,
        on_delete=models.CASCADE,
        related_name='embedding',
    )
    document = models.ForeignKey(
        Document,
        on_delete=models.CASCADE,
        related_name='embeddings',
    )

    embedding = VectorField(dimensions=EMBEDDING_DIMENSION)
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'embeddings'

    def __str__(self):
        return f"Embedding for chunk {self.chunk_id}"
