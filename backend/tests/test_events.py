"""
Tests for the live event feed: schema, publisher and WebSocket consumer.
"""
import pytest
from channels.testing import WebsocketCommunicator
from unittest.mock import AsyncMock, MagicMock, patch

from apps.indexing import publisher
from apps.indexing.consumers import EventsConsumer
from apps.indexing.events import IndexingEvent, get_handler_name, get_user_group
from apps.rag.orchestrator import QueryMetrics, QueryResult


@pytest.fixture
def memory_layer(settings):
    settings.CHANNEL_LAYERS = {'default': {'BACKEND': 'channels.layers.InMemoryChannelLayer'}}
    return settings


def make_result():
    return QueryResult(
        request_id="req-1",
        user_id="user-1",
        question="What was revenue?",
        answer="Revenue was $4.2M [S1].",
        sources=[],
        metrics=QueryMetrics(avg_similarity=0.87654, chunks_retrieved=3),
    )


class TestEventSchema:

    def test_handler_names(self):
        assert get_handler_name("indexing.completed") == "indexing_completed"
        assert get_handler_name("query.completed") == "query_completed"

    def test_user_group(self):
        assert get_user_group("user-1") == "user_user-1"

    def test_none_fields_dropped(self):
        data = IndexingEvent.started("doc-1", "user-1").to_dict()

        assert data == {
            'type': 'indexing.started',
            'documentId': 'doc-1',
            'userId': 'user-1',
            'message': 'Indexing started',
        }

    def test_completed_carries_chunk_count(self):
        assert IndexingEvent.completed("doc-1", "user-1", 12).to_dict()['chunkCount'] == 12


class TestPublisher:

    @pytest.mark.asyncio
    async def test_query_completed_goes_to_owner_group(self):
        layer = MagicMock()
        layer.group_send = AsyncMock()

        with patch('apps.indexing.publisher.get_channel_layer', return_value=layer):
            await publisher.publish_query_completed(make_result())

        group, message = layer.group_send.await_args.args
        assert group == "user_user-1"
        assert message['type'] == "query_completed"
        assert message['data']['requestId'] == "req-1"
        assert message['data']['avgSimilarity'] == 0.8765
        assert message['data']['documentsRetrieved'] == 3

    @pytest.mark.asyncio
    async def test_layer_failure_is_swallowed(self):
        layer = MagicMock()
        layer.group_send = AsyncMock(side_effect=ConnectionError("redis down"))

        with patch('apps.indexing.publisher.get_channel_layer', return_value=layer):
            await publisher.publish_indexing_failed("doc-1", "user-1", "boom")

    @pytest.mark.asyncio
    async def test_missing_layer(self):
        with patch('apps.indexing.publisher.get_channel_layer', return_value=None):
            await publisher.publish_indexing_started("doc-1", "user-1")


class TestEventsConsumer:

    async def connect(self, user):
        communicator = WebsocketCommunicator(EventsConsumer.as_asgi(), "/ws/events/")
        communicator.scope["user"] = user
        connected, _ = await communicator.connect()
        return communicator, connected

    @pytest.mark.asyncio
    async def test_receives_own_events(self, memory_layer):
        communicator, connected = await self.connect({"id": "user-1", "email": None, "role": None})
        assert connected
        assert (await communicator.receive_json_from())['type'] == 'connected'

        await publisher.publish_indexing_completed("doc-1", "user-1", 5)

        event = await communicator.receive_json_from()
        assert event == {
            'type': 'indexing.completed',
            'documentId': 'doc-1',
            'userId': 'user-1',
            'chunkCount': 5,
            'message': 'Indexing complete',
        }
        await communicator.disconnect()

    @pytest.mark.asyncio
    async def test_other_users_events_not_delivered(self, memory_layer):
        communicator, _ = await self.connect({"id": "user-1", "email": None, "role": None})
        await communicator.receive_json_from()

        await publisher.publish_indexing_started("doc-9", "user-2")

        assert await communicator.receive_nothing()
        await communicator.disconnect()

    @pytest.mark.asyncio
    async def test_ping(self, memory_layer):
        communicator, _ = await self.connect({"id": "user-1", "email": None, "role": None})
        await communicator.receive_json_from()

        await communicator.send_json_to({"type": "ping"})

        assert await communicator.receive_json_from() == {"type": "pong"}
        await communicator.disconnect()

    @pytest.mark.asyncio
    async def test_anonymous_rejected(self, memory_layer):
        communicator, connected = await self.connect(None)

        assert not connected
