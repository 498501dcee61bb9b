"""
WebSocket Event Schema

Event contract for the per-user live feed at /ws/events.

Events are group-sent over the Channels layer to every connection the
user has open; clients only ever receive their own events.
"""
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Optional
import json


class EventType(str, Enum):
    """Types of WebSocket events."""
    INDEXING_STARTED = "indexing.started"
    INDEXING_COMPLETED = "indexing.completed"
    INDEXING_FAILED = "indexing.failed"
    QUERY_COMPLETED = "query.completed"


def get_handler_name(event_type: str) -> str:
    """Channels dispatches group messages to consumer methods by type name."""
    return event_type.replace(".", "_")


def get_user_group(user_id: str) -> str:
    """Channels group holding all of a user's connections."""
    return f"user_{user_id}"


@dataclass
class IndexingEvent:
    """
    Sent when a document's ingestion status changes.

    Schema:
    {
        "type": "indexing.started|indexing.completed|indexing.failed",
        "documentId": "uuid-string",
        "userId": "owner-id",
        "chunkCount": 12,            // completed only
        "message": "optional detail"
    }
    """
    type: str
    documentId: str
    userId: str
    chunkCount: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        # Remove None values
        return {k: v for k, v in data.items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def started(cls, document_id: str, user_id: str) -> 'IndexingEvent':
        return cls(
            type=EventType.INDEXING_STARTED.value,
            documentId=document_id,
            userId=user_id,
            message="Indexing started",
        )

    @classmethod
    def completed(cls, document_id: str, user_id: str, chunk_count: int) -> 'IndexingEvent':
        return cls(
            type=EventType.INDEXING_COMPLETED.value,
            documentId=document_id,
            userId=user_id,
            chunkCount=chunk_count,
            message="Indexing complete",
        )

    @classmethod
    def failed(cls, document_id: str, user_id: str, error_message: str) -> 'IndexingEvent':
        return cls(
            type=EventType.INDEXING_FAILED.value,
            documentId=document_id,
            userId=user_id,
            message=error_message,
        )


@dataclass
class QueryCompletedEvent:
    """
    Sent after a query's history row is written, for live history views.

    Schema:
    {
        "type": "query.completed",
        "requestId": "...",
        "question": "...",
        "answer": "...",
        "avgSimilarity": 0.82,
        "documentsRetrieved": 4
    }
    """
    requestId: str
    question: str
    answer: str
    avgSimilarity: float
    documentsRetrieved: int
    type: str = field(default=EventType.QUERY_COMPLETED.value)

    def to_dict(self) -> dict:
        return asdict(self)
