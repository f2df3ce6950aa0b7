# apps/notifications/payloads.py
"""
One schema per notification type. Producers build the payload, the dispatcher
validates it, and clients can rely on exactly these keys being present.
"""
from rest_framework import serializers

from apps.delivery.states import DeliveryStatus
from apps.orders.models import OrderStatus
from .models import NotificationType


class DeliveryAssignmentPayload(serializers.Serializer):
    orderId = serializers.IntegerField()
    deliveryId = serializers.IntegerField()
    storeName = serializers.CharField()
    pickupAddress = serializers.CharField()
    deliveryAddress = serializers.CharField()
    deliveryFee = serializers.DecimalField(max_digits=10, decimal_places=2)
    estimatedEarnings = serializers.DecimalField(max_digits=10, decimal_places=2)
    estimatedDistance = serializers.DecimalField(max_digits=8, decimal_places=2, allow_null=True)
    estimatedTime = serializers.IntegerField(allow_null=True)
    expiresAt = serializers.DateTimeField()


class DeliveryTakenPayload(serializers.Serializer):
    orderId = serializers.IntegerField()
    deliveryId = serializers.IntegerField()


class DeliveryUpdatePayload(serializers.Serializer):
    orderId = serializers.IntegerField()
    deliveryId = serializers.IntegerField()
    status = serializers.ChoiceField(choices=DeliveryStatus.choices)
    description = serializers.CharField(allow_blank=True, required=False, default="")


class OrderUpdatePayload(serializers.Serializer):
    orderId = serializers.IntegerField()
    status = serializers.ChoiceField(choices=OrderStatus.choices)
    description = serializers.CharField(allow_blank=True, required=False, default="")


PAYLOAD_SCHEMAS = {
    NotificationType.DELIVERY_ASSIGNMENT: DeliveryAssignmentPayload,
    NotificationType.DELIVERY_TAKEN: DeliveryTakenPayload,
    NotificationType.DELIVERY_UPDATE: DeliveryUpdatePayload,
    NotificationType.ORDER_UPDATE: OrderUpdatePayload,
}

DEFAULT_TEXT = {
    NotificationType.DELIVERY_ASSIGNMENT: (
        "New delivery request",
        "Order #{orderId} from {storeName} is available for pickup.",
    ),
    NotificationType.DELIVERY_TAKEN: (
        "Delivery taken",
        "Order #{orderId} was accepted by another partner.",
    ),
    NotificationType.DELIVERY_UPDATE: (
        "Delivery update",
        "Delivery for order #{orderId} is now {status}.",
    ),
    NotificationType.ORDER_UPDATE: (
        "Order update",
        "Order #{orderId} is now {status}.",
    ),
}


def validate_payload(notification_type, payload):
    """
    Returns the cleaned payload; raises serializers.ValidationError on mismatch
    and KeyError for an unknown type.
    """
    schema = PAYLOAD_SCHEMAS[notification_type](data=payload)
    schema.is_valid(raise_exception=True)
    return dict(schema.validated_data)


def default_text(notification_type, payload):
    title, template = DEFAULT_TEXT[notification_type]
    context = dict(payload)
    if "status" in context:
        context["status"] = str(context["status"]).replace("_", " ")
    return title, template.format(**context)
