from rest_framework import serializers
from .models import DeliveryZone


class DeliveryZoneSerializer(serializers.ModelSerializer):
    minDistance = serializers.DecimalField(source="min_distance", max_digits=8, decimal_places=2)
    maxDistance = serializers.DecimalField(source="max_distance", max_digits=8, decimal_places=2)
    baseFee = serializers.DecimalField(source="base_fee", max_digits=10, decimal_places=2)
    perKmRate = serializers.DecimalField(source="per_km_rate", max_digits=10, decimal_places=2)
    isActive = serializers.BooleanField(source="is_active")

    class Meta:
        model = DeliveryZone
        fields = ("id", "name", "minDistance", "maxDistance", "baseFee", "perKmRate", "isActive")


class FeeQuoteSerializer(serializers.Serializer):
    fee = serializers.DecimalField(max_digits=10, decimal_places=2)
    distance = serializers.DecimalField(max_digits=10, decimal_places=2)
    zone = DeliveryZoneSerializer()
    breakdown = serializers.DictField(child=serializers.DecimalField(max_digits=10, decimal_places=2))
