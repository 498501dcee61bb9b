"""
Authentication helpers for JWT-protected endpoints.
"""
import logging
from typing import Optional, Callable
from functools import wraps

from asgiref.sync import sync_to_async
from django.http import JsonResponse, HttpRequest

from .audit import audit_auth_rejected, get_client_ip, get_request_id
from .jwt_validator import validate_token, JWTValidationError

logger = logging.getLogger(__name__)


def error_response(error_code: str, message: str, request_id: str, status: int) -> JsonResponse:
    """Build the standard error envelope."""
    response = JsonResponse(
        {'error_code': error_code, 'message': message, 'requestId': request_id},
        status=status
    )
    response['X-Request-ID'] = request_id
    return response


def parse_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    """
    Extract the token from an Authorization header value.

    Returns:
        The token string if the header is a well-formed Bearer header, None otherwise
    """
    if not auth_header:
        return None

    parts = auth_header.split()

    if len(parts) != 2 or parts[0].lower() != 'bearer':
        return None

    return parts[1]


def get_token_from_request(request: HttpRequest) -> Optional[str]:
    """
    Extract Bearer token from Authorization header.

    Args:
        request: The Django HTTP request

    Returns:
        The token string if found, None otherwise
    """
    return parse_bearer_token(request.META.get('HTTP_AUTHORIZATION', ''))


class JWTAuthenticator:
    """Resolves an Authorization header to a user ID."""

    async def authenticate(self, authorization: Optional[str]) -> Optional[str]:
        """
        Validate a bearer credential.

        Returns:
            The subject (user ID), or None if missing or invalid
        """
        token = parse_bearer_token(authorization)
        if not token:
            return None

        try:
            claims = await sync_to_async(validate_token)(token)
        except JWTValidationError as e:
            logger.warning(f"JWT validation failed: {e}")
            return None

        return claims.sub


def auth_required(view_func: Callable) -> Callable:
    """
    Decorator that requires a valid JWT token.

    Validates the token and attaches the claims to request.user_claims.

    Usage:
        @auth_required
        def my_view(request):
            user_id = request.user_claims.sub
            ...
    """
    @wraps(view_func)
    def wrapper(request: HttpRequest, *args, **kwargs):
        request.request_id = get_request_id(request)
        token = get_token_from_request(request)

        if not token:
            return error_response(
                'AUTH_401', 'Authorization header missing or invalid', request.request_id, 401
            )

        try:
            claims = validate_token(token)
        except JWTValidationError as e:
            logger.warning(f"[{request.request_id}] JWT validation failed: {e}")
            audit_auth_rejected(request.request_id, get_client_ip(request), str(e))
            return error_response('AUTH_401', str(e), request.request_id, 401)

        request.user_claims = claims
        logger.debug(f"[{request.request_id}] Authenticated user: sub={claims.sub}")
        return view_func(request, *args, **kwargs)

    return wrapper
