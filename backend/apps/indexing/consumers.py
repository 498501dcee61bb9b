"""
WebSocket Consumer for the live event feed.

Clients connect to /ws/events?token=<jwt> to receive indexing progress and
query history updates for their own documents and questions.
"""
import logging

from channels.generic.websocket import AsyncJsonWebsocketConsumer

from apps.indexing.events import get_user_group

logger = logging.getLogger(__name__)


class EventsConsumer(AsyncJsonWebsocketConsumer):
    """
    WebSocket consumer that:
    1. Authenticates via JWT (from middleware)
    2. Joins a user-specific channel group
    3. Forwards group events to the client
    4. Handles disconnect cleanly
    """

    async def connect(self):
        """Handle new WebSocket connection."""
        # Get user from scope (set by JWTAuthMiddleware)
        self.user = self.scope.get("user")

        if not self.user:
            logger.warning("Rejecting unauthenticated WebSocket connection")
            await self.close(code=4001)
            return

        self.user_id = self.user["id"]
        self.group_name = get_user_group(self.user_id)

        await self.channel_layer.group_add(
            self.group_name,
            self.channel_name
        )

        await self.accept()

        logger.info(f"WebSocket connected for user {self.user_id}")

        await self.send_json({
            "type": "connected",
            "message": "Connected to event stream",
            "userId": self.user_id
        })

    async def disconnect(self, close_code):
        """Handle WebSocket disconnect."""
        if hasattr(self, 'group_name'):
            await self.channel_layer.group_discard(
                self.group_name,
                self.channel_name
            )
            logger.info(f"WebSocket disconnected for user {self.user_id} (code={close_code})")

    async def receive_json(self, content):
        """Only ping is understood from clients."""
        logger.debug(f"Received from client: {content}")

        if content.get("type") == "ping":
            await self.send_json({"type": "pong"})

    async def _forward(self, event):
        await self.send_json(event["data"])

    # Handler names are the event types with '.' replaced by '_'
    async def indexing_started(self, event):
        await self._forward(event)

    async def indexing_completed(self, event):
        await self._forward(event)

    async def indexing_failed(self, event):
        await self._forward(event)

    async def query_completed(self, event):
        await self._forward(event)
