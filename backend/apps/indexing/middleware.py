"""
WebSocket JWT Authentication Middleware for Django Channels.

Authenticates WebSocket connections using JWT token from query string.
"""
import logging
from urllib.parse import parse_qs
from typing import Optional

from asgiref.sync import sync_to_async
from channels.middleware import BaseMiddleware

from apps.authn.jwt_validator import validate_token, JWTValidationError

logger = logging.getLogger(__name__)


class JWTAuthMiddleware(BaseMiddleware):
    """
    Middleware that authenticates WebSocket connections using JWT.

    The token is passed in the query string as ?token=<jwt>

    On success, adds 'user' dict to scope with:
    - id: user ID (sub claim)
    - email: email claim, if present
    - role: role claim, if present
    """

    async def __call__(self, scope, receive, send):
        if scope["type"] != "websocket":
            return await super().__call__(scope, receive, send)

        query_string = scope.get("query_string", b"").decode()
        token_list = parse_qs(query_string).get("token", [])

        if not token_list:
            logger.warning("WebSocket connection rejected: no token provided")
            scope["user"] = None
            return await super().__call__(scope, receive, send)

        user = await self._validate_token(token_list[0])

        if user:
            logger.info(f"WebSocket authenticated for user {user['id']}")
        else:
            logger.warning("WebSocket connection rejected: invalid token")
        scope["user"] = user

        return await super().__call__(scope, receive, send)

    @sync_to_async
    def _validate_token(self, token: str) -> Optional[dict]:
        """
        Validate JWT token and extract user info.

        Returns user dict on success, None on failure.
        """
        try:
            claims = validate_token(token)
        except JWTValidationError as e:
            logger.warning(f"JWT validation failed: {e}")
            return None

        return {
            'id': claims.sub,
            'email': claims.email,
            'role': claims.role,
        }
