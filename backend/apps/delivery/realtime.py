# apps/delivery/realtime.py
"""
Server side of the /ws hub.

Every socket joins `user.<id>`; a subscription to an order joins
`order.<orderId>.<userType>`. Publishing is a group_send over the channel layer
(Redis in production) so any process can reach any connection. Delivery is best
effort and at most once: publish failures are logged, never raised.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone

from apps.accounts.models import Role
from apps.utils.exceptions import TransportDisconnected

logger = logging.getLogger(__name__)

LOCATION_UPDATE = "location_update"
STATUS_UPDATE = "status_update"
ROUTE_UPDATE = "route_update"
ASSIGNMENT_BROADCAST = "assignment_broadcast"
ASSIGNMENT_TAKEN = "assignment_taken"

# Which subscriber roles of an order see each event type.
EVENT_AUDIENCES = {
    LOCATION_UPDATE: (Role.CUSTOMER, Role.SHOPKEEPER),
    STATUS_UPDATE: (Role.CUSTOMER, Role.SHOPKEEPER, Role.DELIVERY_PARTNER),
    ROUTE_UPDATE: (Role.CUSTOMER, Role.SHOPKEEPER, Role.DELIVERY_PARTNER),
}

# Sent straight to listed partner users, not to order subscribers.
DIRECT_EVENTS = frozenset({ASSIGNMENT_BROADCAST, ASSIGNMENT_TAKEN})

HANDLER_TYPE = "dispatch.event"


def user_group(user_id):
    return f"user.{user_id}"


def order_group(order_id, user_type):
    return f"order.{order_id}.{user_type}"


def jsonable(data):
    """Decimals, datetimes and UUIDs flattened so the layer's msgpack codec accepts them."""
    return json.loads(json.dumps(data, cls=DjangoJSONEncoder))


def build_event(event_type, order_id, data, delivery_id=None):
    event = {"type": event_type, "orderId": order_id, "data": jsonable(data)}
    if delivery_id is not None:
        event["deliveryId"] = delivery_id
    return event


def _group_send(group, event):
    channel_layer = get_channel_layer()
    if channel_layer is None:
        logger.warning(f"No channel layer configured, dropping {event['type']} for {group}")
        return False
    async_to_sync(channel_layer.group_send)(group, {"type": HANDLER_TYPE, "event": event})
    return True


def _safe_send(group, event):
    try:
        return _group_send(group, event)
    except Exception as exc:
        logger.error(
            f"Realtime publish of {event['type']} to {group} failed: {exc}",
            extra={"metadata": {"group": group, "event_type": event["type"]}},
        )
        return False


def publish(event_type, order_id, data, delivery_id=None):
    """
    Fan an order-scoped event out to the roles in its audience.
    Returns how many groups accepted the message.
    """
    if event_type not in EVENT_AUDIENCES:
        raise ValueError(f"{event_type} is not an order-scoped event")

    event = build_event(event_type, order_id, data, delivery_id)
    return sum(
        1 for user_type in EVENT_AUDIENCES[event_type]
        if _safe_send(order_group(order_id, user_type), event)
    )


def publish_to_users(user_ids, event_type, order_id, data, delivery_id=None):
    if event_type not in DIRECT_EVENTS:
        raise ValueError(f"{event_type} is not a direct event")

    event = build_event(event_type, order_id, data, delivery_id)
    return sum(1 for user_id in user_ids if _safe_send(user_group(user_id), event))


@dataclass
class Session:
    user_id: int
    user_type: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    connected_at: datetime = field(default_factory=timezone.now)
    last_activity: datetime = field(default_factory=timezone.now)
    is_active: bool = True

    def as_dict(self):
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "userType": self.user_type,
            "connectedAt": self.connected_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
            "isActive": self.is_active,
        }


class SessionRegistry:
    """
    Connections held by this process, keyed by user id.
    Only consumers touch it, and only from the event loop, so no locking.
    Never persisted: after a restart clients reconnect and resubscribe.
    """

    def __init__(self):
        self._sessions = {}

    def register(self, user_id, user_type):
        session = Session(user_id=user_id, user_type=user_type)
        self._sessions.setdefault(user_id, {})[session.session_id] = session
        return session

    def deregister(self, session):
        session.is_active = False
        user_sessions = self._sessions.get(session.user_id, {})
        user_sessions.pop(session.session_id, None)
        if not user_sessions:
            self._sessions.pop(session.user_id, None)

    def require(self, session):
        if session is None or session.session_id not in self._sessions.get(session.user_id, {}):
            raise TransportDisconnected("Session is no longer registered")
        return session

    def touch(self, session):
        self.require(session).last_activity = timezone.now()

    def sessions_for(self, user_id):
        return list(self._sessions.get(user_id, {}).values())

    def __len__(self):
        return sum(len(sessions) for sessions in self._sessions.values())


registry = SessionRegistry()
