"""
Document model.

A document is owned by exactly one user. Its content is immutable after
ingestion: reprocessing regenerates chunks and embeddings, never the
document row itself.
"""
import uuid
from django.db import models


class DocumentStatus(models.TextChoices):
    """Status of a document in the ingestion pipeline."""
    UPLOADED = 'UPLOADED', 'Uploaded'
    INDEXING = 'INDEXING', 'Currently indexing'
    INDEXED = 'INDEXED', 'Successfully indexed'
    FAILED = 'FAILED', 'Indexing failed'


class Document(models.Model):
    """
    A document added by a user for RAG retrieval.

    Plain-text content lives on the row; an optional binary attachment
    (the uploaded file) is kept in file storage and referenced by path.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Owner is the JWT 'sub' claim (user ID)
    owner_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="User ID (sub claim)"
    )

    title = models.CharField(max_length=255)
    source = models.CharField(
        max_length=500,
        blank=True,
        default='',
        help_text="Where the content came from (URL, filename, ...)"
    )
    content = models.TextField(
        help_text="Extracted plain text; form feeds separate pages"
    )

    # Optional binary attachment
    file_path = models.CharField(
        max_length=500,
        blank=True,
        default='',
        help_text="Attachment path relative to the upload root"
    )
    mime_type = models.CharField(max_length=100, default='text/plain')
    file_size = models.PositiveIntegerField(default=0)

    content_hash = models.CharField(
        max_length=64,
        db_index=True,
        help_text="SHA-256 of the content for per-owner deduplication"
    )

    status = models.CharField(
        max_length=20,
        choices=DocumentStatus.choices,
        default=DocumentStatus.UPLOADED,
        db_index=True,
    )
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'documents'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['owner_id', 'content_hash'],
                name='unique_owner_content_hash'
            )
        ]
        indexes = [
            models.Index(fields=['owner_id', 'created_at'], name='documents_owner_created_idx'),
        ]

    def __str__(self):
        return f"{self.title} ({self.status})"
