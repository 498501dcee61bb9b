"""
Event publisher for the live event feed.

Publishes events to the Django Channels layer for broadcast to the owning
user's WebSocket connections. Publishing never fails the caller.
"""
import logging

from channels.layers import get_channel_layer

from apps.indexing.events import (
    IndexingEvent,
    QueryCompletedEvent,
    get_handler_name,
    get_user_group,
)

logger = logging.getLogger(__name__)


async def publish_indexing_started(document_id: str, user_id: str) -> None:
    await _send_to_user(user_id, IndexingEvent.started(document_id, user_id).to_dict())


async def publish_indexing_completed(document_id: str, user_id: str, chunk_count: int) -> None:
    await _send_to_user(
        user_id, IndexingEvent.completed(document_id, user_id, chunk_count).to_dict()
    )


async def publish_indexing_failed(document_id: str, user_id: str, error_message: str) -> None:
    await _send_to_user(
        user_id, IndexingEvent.failed(document_id, user_id, error_message).to_dict()
    )


async def publish_query_completed(result) -> None:
    """
    Push a finished query to the user's live history feed.

    Args:
        result: The orchestrator's QueryResult
    """
    event = QueryCompletedEvent(
        requestId=result.request_id,
        question=result.question,
        answer=result.answer,
        avgSimilarity=round(result.metrics.avg_similarity, 4),
        documentsRetrieved=result.metrics.chunks_retrieved,
    )
    await _send_to_user(result.user_id, event.to_dict())


async def _send_to_user(user_id: str, data: dict) -> None:
    """
    Send an event to all WebSocket connections for a user.

    Uses Django Channels group send.
    """
    try:
        channel_layer = get_channel_layer()

        if channel_layer is None:
            logger.warning("Channel layer not available, cannot send event")
            return

        group_name = get_user_group(user_id)

        await channel_layer.group_send(
            group_name,
            {
                "type": get_handler_name(data["type"]),
                "data": data,
            }
        )

        logger.debug(f"Published {data['type']} to {group_name}")

    except Exception as e:
        # Don't fail the request if event publishing fails
        logger.warning(f"Failed to publish event: {e}")
