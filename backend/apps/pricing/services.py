# apps/pricing/services.py
import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from rest_framework import status

from apps.utils.exceptions import BusinessLogicException, InvalidInputError
from .models import DeliveryZone

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def to_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


class DeliveryFeeService:
    """
    Distance-banded delivery fee.
    Bands are ordered by max_distance; the first band whose max covers the distance wins,
    so every non-negative distance falls in exactly one band. Past the last band the
    furthest band's formula applies.
    """

    @staticmethod
    def parse_distance(distance) -> Decimal:
        # bool is an int subclass; "true" is not a distance
        if isinstance(distance, bool) or not isinstance(distance, (int, float, Decimal)):
            raise InvalidInputError("Distance must be a number", details={"distance": distance})
        try:
            value = Decimal(str(distance))
        except InvalidOperation:
            raise InvalidInputError("Distance must be a number", details={"distance": distance})
        if not value.is_finite():
            raise InvalidInputError("Distance must be finite", details={"distance": str(distance)})
        if value < 0:
            raise InvalidInputError("Distance cannot be negative", details={"distance": distance})
        return value

    @staticmethod
    def active_zones():
        return list(DeliveryZone.objects.filter(is_active=True).order_by("max_distance", "id"))

    @staticmethod
    def zone_for(distance: Decimal, zones):
        for zone in zones:
            if distance <= zone.max_distance:
                return zone
        return zones[-1]

    @staticmethod
    def calculate(distance):
        """
        Returns {"fee", "distance", "zone", "breakdown": {"baseFee", "distanceFee", "totalFee"}}.
        Money values are Decimals rounded half-up to 2 places.
        """
        value = DeliveryFeeService.parse_distance(distance)

        zones = DeliveryFeeService.active_zones()
        if not zones:
            logger.error("Delivery fee requested but no active delivery zones are configured")
            raise BusinessLogicException(
                "Delivery zones are not configured",
                code="zones_not_configured",
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            )

        zone = DeliveryFeeService.zone_for(value, zones)
        raw_distance_fee = value * zone.per_km_rate
        fee = to_money(zone.base_fee + raw_distance_fee)

        return {
            "fee": fee,
            "distance": to_money(value),
            "zone": zone,
            "breakdown": {
                "baseFee": to_money(zone.base_fee),
                "distanceFee": to_money(raw_distance_fee),
                "totalFee": fee,
            },
        }
