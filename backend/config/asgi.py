# config/asgi.py
import os
import django
from django.core.asgi import get_asgi_application

# 1. Init Django first (Critical before importing channels consumers)
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')
django.setup()

from channels.routing import ProtocolTypeRouter, URLRouter  # noqa: E402
from channels.security.websocket import AllowedHostsOriginValidator  # noqa: E402
import apps.delivery.routing  # noqa: E402

# 2. Application Definition
# Sockets authenticate in-band with an "auth" message, so no session/cookie middleware here.
application = ProtocolTypeRouter({
    # HTTP requests -> Django
    "http": get_asgi_application(),

    # WebSocket requests -> Channels (/ws)
    "websocket": AllowedHostsOriginValidator(
        URLRouter(
            apps.delivery.routing.websocket_urlpatterns
        )
    ),
})
