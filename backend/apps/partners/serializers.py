from rest_framework import serializers
from apps.accounts.serializers import UserSerializer
from .models import DeliveryPartner


class DeliveryPartnerSerializer(serializers.ModelSerializer):
    user = UserSerializer(read_only=True)
    active_delivery_count = serializers.SerializerMethodField()

    class Meta:
        model = DeliveryPartner
        fields = (
            "id",
            "user",
            "vehicle_type",
            "vehicle_number",
            "delivery_areas",
            "status",
            "is_active",
            "is_available",
            "total_deliveries",
            "total_earnings",
            "active_delivery_count",
            "created_at",
        )

    def get_active_delivery_count(self, obj):
        from .services import PartnerService
        return PartnerService.active_delivery_count(obj)


class PartnerAvailabilitySerializer(serializers.Serializer):
    is_available = serializers.BooleanField()
