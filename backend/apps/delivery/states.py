# apps/delivery/states.py
from django.db import models


class DeliveryStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    ASSIGNED = "assigned", "Assigned"
    EN_ROUTE_PICKUP = "en_route_pickup", "En Route To Pickup"
    ARRIVED_PICKUP = "arrived_pickup", "Arrived At Pickup"
    PICKED_UP = "picked_up", "Picked Up"
    EN_ROUTE_DELIVERY = "en_route_delivery", "En Route To Customer"
    ARRIVED_DELIVERY = "arrived_delivery", "Arrived At Customer"
    DELIVERED = "delivered", "Delivered"
    CANCELLED = "cancelled", "Cancelled"


class OfferStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    ACCEPTED = "accepted", "Accepted"
    REJECTED = "rejected", "Rejected"
    EXPIRED = "expired", "Expired"


S = DeliveryStatus

TERMINAL_STATUSES = frozenset({S.DELIVERED, S.CANCELLED})

# Partner holds the job and is expected to move; location pings are accepted.
TRACKABLE_STATUSES = frozenset({
    S.ASSIGNED,
    S.EN_ROUTE_PICKUP,
    S.ARRIVED_PICKUP,
    S.PICKED_UP,
    S.EN_ROUTE_DELIVERY,
})

# Counts against the partner's load.
ACTIVE_STATUSES = TRACKABLE_STATUSES | {S.ARRIVED_DELIVERY}

# pending -> assigned only happens through the accept compare-and-set.
TRANSITIONS = {
    S.PENDING: frozenset({S.ASSIGNED, S.CANCELLED}),
    S.ASSIGNED: frozenset({S.EN_ROUTE_PICKUP, S.ARRIVED_PICKUP, S.PICKED_UP, S.CANCELLED}),
    S.EN_ROUTE_PICKUP: frozenset({S.ARRIVED_PICKUP, S.PICKED_UP, S.CANCELLED}),
    S.ARRIVED_PICKUP: frozenset({S.PICKED_UP, S.CANCELLED}),
    S.PICKED_UP: frozenset({S.EN_ROUTE_DELIVERY, S.ARRIVED_DELIVERY, S.DELIVERED, S.CANCELLED}),
    S.EN_ROUTE_DELIVERY: frozenset({S.ARRIVED_DELIVERY, S.DELIVERED, S.CANCELLED}),
    S.ARRIVED_DELIVERY: frozenset({S.DELIVERED, S.CANCELLED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
}

RESERVED_TRANSITIONS = frozenset({(S.PENDING, S.ASSIGNED)})

# Timestamp column written in the same UPDATE as the status.
TIMESTAMP_FIELDS = {
    S.ASSIGNED: "assigned_at",
    S.PICKED_UP: "picked_up_at",
    S.DELIVERED: "delivered_at",
}

# Order.status mirror for the order service.
ORDER_STATUS_MIRROR = {
    S.ASSIGNED: "assigned_for_delivery",
    S.PICKED_UP: "out_for_delivery",
    S.EN_ROUTE_DELIVERY: "out_for_delivery",
    S.DELIVERED: "delivered",
}

CUSTOMER_NOTIFY_STATUSES = frozenset({
    S.ASSIGNED, S.PICKED_UP, S.EN_ROUTE_DELIVERY, S.ARRIVED_DELIVERY, S.DELIVERED, S.CANCELLED,
})
SHOPKEEPER_NOTIFY_STATUSES = frozenset({S.ASSIGNED, S.PICKED_UP, S.DELIVERED, S.CANCELLED})


def is_terminal(status):
    return status in TERMINAL_STATUSES


def can_transition(current, target):
    return target in TRANSITIONS.get(current, frozenset())


def allowed_transitions(current):
    return sorted(TRANSITIONS.get(current, frozenset()))
