"""
ASGI config for the FinRAG backend.

Handles both HTTP and WebSocket connections.
"""
import os

from channels.routing import ProtocolTypeRouter, URLRouter
from channels.security.websocket import AllowedHostsOriginValidator
from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

# Initialize Django ASGI application early to ensure the AppRegistry
# is populated before importing code that may import ORM models.
django_asgi_app = get_asgi_application()

# Import after Django setup
from apps.indexing.routing import websocket_urlpatterns  # noqa: E402
from apps.indexing.middleware import JWTAuthMiddleware  # noqa: E402

application = ProtocolTypeRouter({
    # HTTP requests go to Django (async query view, sync document views)
    "http": django_asgi_app,

    # /ws/events goes through JWT auth then to the events consumer
    "websocket": AllowedHostsOriginValidator(
        JWTAuthMiddleware(
            URLRouter(websocket_urlpatterns)
        )
    ),
})
