import uuid
import logging
from contextlib import contextmanager
from contextvars import ContextVar

logger = logging.getLogger(__name__)

# ContextVar for Request ID (Async Safe)
_correlation_id = ContextVar("correlation_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"


def get_correlation_id():
    return _correlation_id.get()


def new_correlation_id(incoming=None):
    return incoming or str(uuid.uuid4())


@contextmanager
def bind_correlation_id(value):
    """
    Scopes a correlation id to a block of work outside the HTTP middleware:
    a WebSocket message or a Celery task body.
    """
    token = _correlation_id.set(value)
    try:
        yield value
    finally:
        _correlation_id.reset(token)


def correlation_id_from_scope(scope):
    """Reads X-Request-ID from an ASGI scope (WebSocket handshake), or mints one."""
    header = REQUEST_ID_HEADER.lower().encode()
    for name, value in scope.get("headers", []):
        if name.lower() == header:
            return new_correlation_id(value.decode("latin-1"))
    return new_correlation_id()


class CorrelationIDMiddleware:
    """
    Attaches a Request ID to every HTTP request.
    The id follows the request into log records and into the dispatch tasks it queues.
    """
    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request_id = new_correlation_id(request.headers.get(REQUEST_ID_HEADER))
        request.correlation_id = request_id

        with bind_correlation_id(request_id):
            response = self.get_response(request)
        response[REQUEST_ID_HEADER] = request_id
        return response
