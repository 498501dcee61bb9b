"""
Retrieval service for RAG queries.

Performs owner-scoped vector similarity search over stored chunk
embeddings (pgvector cosine distance) and returns transient candidates
for re-ranking.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from asgiref.sync import sync_to_async
from django.db import DatabaseError, connection

logger = logging.getLogger(__name__)

# Maximum preview length for sources
SNIPPET_MAX_LENGTH = 240


class SearchError(Exception):
    """Raised when the vector search fails."""
    pass


@dataclass
class RetrievalCandidate:
    """
    A chunk joined with its similarity score and document metadata.

    Lives only for the duration of one query. Score fields are filled in
    by the re-ranker.
    """
    chunk_id: str
    document_id: str
    document_title: str
    chunk_index: int
    text: str
    similarity: float  # 1 - cosine distance, higher is better
    page_no: Optional[int] = None
    lexical_score: Optional[float] = None
    relevance_score: Optional[float] = None
    rerank_score: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict (excludes full text)."""
        result = {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "document_title": self.document_title,
            "chunk_index": self.chunk_index,
            "similarity": round(self.similarity, 4),
        }
        if self.rerank_score is not None:
            result["rerank_score"] = round(self.rerank_score, 4)
        return result


def create_snippet(text: str, max_length: int = SNIPPET_MAX_LENGTH) -> str:
    """
    Create a deterministic snippet from chunk text.

    - Takes first N characters
    - Adds ellipsis if truncated
    - Preserves word boundaries when possible

    Args:
        text: Full chunk text
        max_length: Maximum snippet length

    Returns:
        Truncated snippet string
    """
    if len(text) <= max_length:
        return text

    truncated = text[:max_length]
    last_space = truncated.rfind(' ')

    if last_space > max_length * 0.7:  # Only break at space if reasonable
        truncated = truncated[:last_space]

    return truncated.rstrip() + "…"


def to_vector_literal(embedding: List[float]) -> str:
    """Format an embedding as a pgvector literal."""
    return '[' + ','.join(str(x) for x in embedding) + ']'


SEARCH_SQL = """
    SELECT
        c.id AS chunk_id,
        c.document_id,
        c.chunk_index,
        c.text,
        c.page_no,
        d.title AS document_title,
        1 - (e.embedding <=> %s::vector) AS similarity
    FROM embeddings e
    INNER JOIN document_chunks c ON e.chunk_id = c.id
    INNER JOIN documents d ON e.document_id = d.id
    WHERE d.owner_id = %s
    ORDER BY e.embedding <=> %s::vector
    LIMIT %s
"""


def search_chunks(
    query_embedding: List[float],
    owner_id: str,
    top_k: int,
) -> List[RetrievalCandidate]:
    """
    Retrieve the top-k most similar chunks among the owner's documents.

    Only chunks that have an embedding are visible, and the owner filter is
    applied in SQL so another user's chunks can never surface.

    Args:
        query_embedding: Vector embedding of the question
        owner_id: User ID (JWT sub claim) for scoping
        top_k: Number of chunks to retrieve

    Returns:
        List of RetrievalCandidate objects ordered by similarity

    Raises:
        SearchError: If the database query fails
    """
    embedding_str = to_vector_literal(query_embedding)
    params = [embedding_str, owner_id, embedding_str, top_k]

    try:
        with connection.cursor() as cursor:
            cursor.execute(SEARCH_SQL, params)
            rows = cursor.fetchall()
    except DatabaseError as e:
        logger.error(f"Vector search failed for user {owner_id}: {e}")
        raise SearchError(f"Vector search failed: {e}")

    candidates = []
    for chunk_id, doc_id, chunk_index, text, page_no, doc_title, similarity in rows:
        candidates.append(RetrievalCandidate(
            chunk_id=str(chunk_id),
            document_id=str(doc_id),
            document_title=doc_title,
            chunk_index=chunk_index,
            text=text,
            similarity=float(similarity),
            page_no=page_no,
        ))

    logger.info(
        f"Retrieved {len(candidates)} candidates for user {owner_id} "
        f"(requested top_k={top_k})"
    )

    return candidates


class DjangoVectorStore:
    """Vector store backed by pgvector through the Django connection."""

    async def search(
        self,
        owner_id: str,
        query_embedding: List[float],
        top_k: int,
    ) -> List[RetrievalCandidate]:
        return await sync_to_async(search_chunks)(query_embedding, owner_id, top_k)
