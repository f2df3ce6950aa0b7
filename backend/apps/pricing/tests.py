from decimal import Decimal

from django.core.management import call_command
from django.test import TestCase
from rest_framework import status
from rest_framework.test import APIClient

from apps.pricing.defaults import seed_default_zones
from apps.pricing.models import DeliveryZone
from apps.pricing.services import DeliveryFeeService
from apps.utils.exceptions import BusinessLogicException, InvalidInputError


class DeliveryFeeServiceTestCase(TestCase):
    def setUp(self):
        seed_default_zones(DeliveryZone)

    def test_inner_city_upper_boundary(self):
        quote = DeliveryFeeService.calculate(5.0)
        self.assertEqual(quote["zone"].name, "Inner City")
        self.assertEqual(quote["fee"], Decimal("55.00"))

    def test_suburban_lower_boundary(self):
        quote = DeliveryFeeService.calculate(5.01)
        self.assertEqual(quote["zone"].name, "Suburban")
        self.assertEqual(quote["fee"], Decimal("90.08"))

    def test_gap_between_bands_belongs_to_next_band(self):
        quote = DeliveryFeeService.calculate(5.005)
        self.assertEqual(quote["zone"].name, "Suburban")
        self.assertEqual(quote["fee"], Decimal("90.04"))

    def test_extended_rural_lower_boundary(self):
        quote = DeliveryFeeService.calculate(30.01)
        self.assertEqual(quote["zone"].name, "Extended Rural")
        self.assertEqual(quote["fee"], Decimal("570.15"))

    def test_zero_distance_is_base_fee(self):
        quote = DeliveryFeeService.calculate(0)
        self.assertEqual(quote["zone"].name, "Inner City")
        self.assertEqual(quote["fee"], Decimal("30.00"))

    def test_beyond_last_band_clamps_to_furthest_zone(self):
        quote = DeliveryFeeService.calculate(150)
        self.assertEqual(quote["zone"].name, "Extended Rural")
        self.assertEqual(quote["fee"], Decimal("2370.00"))

    def test_breakdown_sums_to_fee(self):
        quote = DeliveryFeeService.calculate(12.345)
        breakdown = quote["breakdown"]
        self.assertEqual(breakdown["baseFee"], Decimal("50.00"))
        self.assertEqual(breakdown["distanceFee"], Decimal("98.76"))
        self.assertEqual(breakdown["totalFee"], quote["fee"])
        self.assertEqual(quote["fee"], Decimal("148.76"))

    def test_invalid_distances_rejected(self):
        for bad in (-1, "5", None, True, float("nan"), float("inf")):
            with self.subTest(distance=bad):
                with self.assertRaises(InvalidInputError):
                    DeliveryFeeService.calculate(bad)

    def test_inactive_zone_is_skipped(self):
        DeliveryZone.objects.filter(name="Suburban").update(is_active=False)
        quote = DeliveryFeeService.calculate(10)
        self.assertEqual(quote["zone"].name, "Rural")

    def test_no_zones_configured(self):
        DeliveryZone.objects.all().delete()
        with self.assertRaises(BusinessLogicException) as ctx:
            DeliveryFeeService.calculate(3)
        self.assertEqual(ctx.exception.code, "zones_not_configured")
        self.assertEqual(ctx.exception.status_code, 503)


class DeliveryFeeAPITestCase(TestCase):
    def setUp(self):
        seed_default_zones(DeliveryZone)
        self.client = APIClient()

    def test_calculate_fee_endpoint(self):
        response = self.client.post("/api/calculate-delivery-fee", {"distance": 5.01}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["fee"], Decimal("90.08"))
        self.assertEqual(response.data["zone"]["name"], "Suburban")
        self.assertEqual(response.data["breakdown"]["totalFee"], Decimal("90.08"))

    def test_calculate_fee_rejects_string(self):
        response = self.client.post("/api/calculate-delivery-fee", {"distance": "abc"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["code"], "invalid_input")

    def test_zone_listing(self):
        response = self.client.get("/api/delivery-zones")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(
            [z["name"] for z in response.data],
            ["Inner City", "Suburban", "Rural", "Extended Rural"],
        )


class SeedZonesCommandTestCase(TestCase):
    def test_seed_is_idempotent(self):
        DeliveryZone.objects.all().delete()
        call_command("seed_delivery_zones")
        call_command("seed_delivery_zones")
        self.assertEqual(DeliveryZone.objects.count(), 4)
