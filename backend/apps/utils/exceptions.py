from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status


class BusinessLogicException(Exception):
    """
    Base class for domain-specific errors (e.g., IllegalTransition, AlreadyClaimed).
    These are expected operational errors, not 500s.
    """
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "invalid_request"

    def __init__(self, message, code=None, status_code=None, details=None):
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class InvalidInputError(BusinessLogicException):
    """Malformed or out-of-range input, rejected before any state change."""
    default_code = "invalid_input"


class IllegalTransitionError(BusinessLogicException):
    default_code = "illegal_transition"

    def __init__(self, message, current_status, requested_status=None):
        super().__init__(
            message,
            details={"current_status": current_status, "requested_status": requested_status},
        )
        self.current_status = current_status


class AlreadyClaimedError(BusinessLogicException):
    """
    Raised to every loser of the first-accept-first-serve race.
    Kept distinct from generic failures so the partner app can show "order already taken".
    """
    status_code = status.HTTP_409_CONFLICT
    default_code = "already_claimed"


class OfferExpiredError(BusinessLogicException):
    status_code = status.HTTP_410_GONE
    default_code = "offer_expired"


class UnauthorizedLocationUpdateError(BusinessLogicException):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "unauthorized_location_update"


class UnauthorizedStatusUpdateError(BusinessLogicException):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "unauthorized_status_update"


class NotificationDispatchError(Exception):
    """
    Best-effort notification persistence failed.
    Logged by the dispatcher, never propagated to the actor that triggered it.
    """


class TransportDisconnected(Exception):
    """A WebSocket session went away. Handled by deregistration, not an application error."""


def custom_exception_handler(exc, context):
    """
    Custom DRF Exception Handler.
    Maps BusinessLogicException to its status code with a standard error structure.
    """
    response = exception_handler(exc, context)

    if isinstance(exc, BusinessLogicException):
        return Response(
            {
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "type": exc.__class__.__name__,
                    "details": exc.details,
                }
            },
            status=exc.status_code
        )

    if response is not None and response.status_code == 400:
        if "error" not in response.data:
            response.data = {
                "error": {
                    "code": "validation_error",
                    "details": response.data
                }
            }

    return response
