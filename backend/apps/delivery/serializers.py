from rest_framework import serializers

from .models import (
    Delivery,
    DeliveryLocationTracking,
    DeliveryNotification,
    DeliveryRoute,
    DeliveryStatusHistory,
)
from .states import DeliveryStatus

COORDINATE = {"max_digits": 11, "decimal_places": 8}


class DeliverySerializer(serializers.ModelSerializer):
    """
    Standard serializer for Delivery instances (camelCase, as the apps expect).
    """
    orderId = serializers.IntegerField(source="order_id", read_only=True)
    deliveryPartnerId = serializers.IntegerField(source="delivery_partner_id", read_only=True)
    pickupAddress = serializers.CharField(source="pickup_address")
    deliveryAddress = serializers.CharField(source="delivery_address")
    pickupLatitude = serializers.DecimalField(source="pickup_latitude", **COORDINATE)
    pickupLongitude = serializers.DecimalField(source="pickup_longitude", **COORDINATE)
    deliveryLatitude = serializers.DecimalField(source="delivery_latitude", **COORDINATE)
    deliveryLongitude = serializers.DecimalField(source="delivery_longitude", **COORDINATE)
    deliveryFee = serializers.DecimalField(source="delivery_fee", max_digits=10, decimal_places=2)
    partnerEarnings = serializers.DecimalField(source="partner_earnings", max_digits=10, decimal_places=2)
    estimatedDistance = serializers.DecimalField(source="estimated_distance", max_digits=8, decimal_places=2)
    estimatedTime = serializers.IntegerField(source="estimated_time")
    actualTime = serializers.IntegerField(source="actual_time")
    specialInstructions = serializers.CharField(source="special_instructions")
    assignedAt = serializers.DateTimeField(source="assigned_at")
    pickedUpAt = serializers.DateTimeField(source="picked_up_at")
    deliveredAt = serializers.DateTimeField(source="delivered_at")
    customerRating = serializers.IntegerField(source="customer_rating")
    customerFeedback = serializers.CharField(source="customer_feedback")
    createdAt = serializers.DateTimeField(source="created_at")
    updatedAt = serializers.DateTimeField(source="updated_at")

    class Meta:
        model = Delivery
        fields = (
            "id",
            "orderId",
            "deliveryPartnerId",
            "status",
            "pickupAddress",
            "deliveryAddress",
            "pickupLatitude",
            "pickupLongitude",
            "deliveryLatitude",
            "deliveryLongitude",
            "deliveryFee",
            "partnerEarnings",
            "estimatedDistance",
            "estimatedTime",
            "actualTime",
            "specialInstructions",
            "assignedAt",
            "pickedUpAt",
            "deliveredAt",
            "customerRating",
            "customerFeedback",
            "createdAt",
            "updatedAt",
        )
        read_only_fields = fields


class DeliveryOfferSerializer(serializers.ModelSerializer):
    orderId = serializers.IntegerField(source="order_id")
    deliveryId = serializers.IntegerField(source="delivery_id")
    deliveryPartnerId = serializers.IntegerField(source="delivery_partner_id")
    notificationData = serializers.JSONField(source="notification_data")
    createdAt = serializers.DateTimeField(source="created_at")

    class Meta:
        model = DeliveryNotification
        fields = ("id", "orderId", "deliveryId", "deliveryPartnerId", "status", "notificationData", "createdAt")
        read_only_fields = fields


class StatusHistorySerializer(serializers.ModelSerializer):
    deliveryId = serializers.IntegerField(source="delivery_id")
    updatedBy = serializers.IntegerField(source="updated_by_id")

    class Meta:
        model = DeliveryStatusHistory
        fields = ("id", "deliveryId", "status", "description", "latitude", "longitude", "updatedBy", "metadata", "timestamp")
        read_only_fields = fields


class LocationSerializer(serializers.ModelSerializer):
    deliveryId = serializers.IntegerField(source="delivery_id")
    deliveryPartnerId = serializers.IntegerField(source="delivery_partner_id")
    currentLatitude = serializers.DecimalField(source="current_latitude", **COORDINATE)
    currentLongitude = serializers.DecimalField(source="current_longitude", **COORDINATE)
    isActive = serializers.BooleanField(source="is_active")

    class Meta:
        model = DeliveryLocationTracking
        fields = (
            "id", "deliveryId", "deliveryPartnerId", "currentLatitude", "currentLongitude",
            "heading", "speed", "accuracy", "timestamp", "isActive",
        )
        read_only_fields = fields


class RouteSerializer(serializers.ModelSerializer):
    routeGeometry = serializers.CharField(source="route_geometry")
    distanceMeters = serializers.IntegerField(source="distance_meters")
    estimatedDurationSeconds = serializers.IntegerField(source="estimated_duration_seconds")
    actualDurationSeconds = serializers.IntegerField(source="actual_duration_seconds")
    hereRouteId = serializers.CharField(source="here_route_id")
    updatedAt = serializers.DateTimeField(source="updated_at")

    class Meta:
        model = DeliveryRoute
        fields = (
            "routeGeometry", "distanceMeters", "estimatedDurationSeconds", "actualDurationSeconds",
            "source", "hereRouteId", "updatedAt",
        )
        read_only_fields = fields


class TrackingSerializer(serializers.Serializer):
    delivery = DeliverySerializer()
    currentLocation = LocationSerializer(source="current_location", allow_null=True)
    route = RouteSerializer(allow_null=True)
    statusHistory = StatusHistorySerializer(source="status_history", many=True)


class OfferResponseSerializer(serializers.Serializer):
    deliveryPartnerId = serializers.IntegerField()


class LocationPingSerializer(serializers.Serializer):
    """
    Shape check only; ranges are enforced by LocationService so they are reported as invalid_input.
    """
    deliveryId = serializers.IntegerField()
    deliveryPartnerId = serializers.IntegerField()
    latitude = serializers.FloatField()
    longitude = serializers.FloatField()
    heading = serializers.FloatField(required=False, allow_null=True)
    speed = serializers.FloatField(required=False, allow_null=True)
    accuracy = serializers.FloatField(required=False, allow_null=True)


class StatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=DeliveryStatus.choices)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    latitude = serializers.FloatField(required=False, allow_null=True)
    longitude = serializers.FloatField(required=False, allow_null=True)
    metadata = serializers.DictField(required=False, default=dict)


class RatingSerializer(serializers.Serializer):
    rating = serializers.IntegerField(min_value=1, max_value=5)
    feedback = serializers.CharField(required=False, allow_blank=True, default="")
