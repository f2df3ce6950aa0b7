# apps/core/tests.py
import json
import logging
import time
from datetime import timedelta
from decimal import Decimal
from io import StringIO

from django.core.cache import cache
from django.core.management import call_command
from django.http import JsonResponse
from django.test import RequestFactory, TestCase
from django.utils import timezone

from apps.accounts.models import Role
from apps.accounts.services import AccountService
from apps.core.middleware import (
    CorrelationIDMiddleware,
    bind_correlation_id,
    correlation_id_from_scope,
    get_correlation_id,
)
from apps.core.tasks import beat_heartbeat, monitor_stuck_deliveries
from apps.core.views import BEAT_HEARTBEAT_KEY
from apps.delivery.models import Delivery
from apps.delivery.states import DeliveryStatus
from apps.orders.models import Order
from apps.partners.models import DeliveryPartner
from apps.stores.models import Store
from apps.utils.logging import CorrelationIdFilter, GDPRJsonFormatter


class MiddlewareTestCase(TestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.seen = []

        def get_response(request):
            self.seen.append(get_correlation_id())
            return JsonResponse({"status": "ok"})

        self.middleware = CorrelationIDMiddleware(get_response)

    def test_correlation_id_generation(self):
        request = self.factory.get("/")
        response = self.middleware(request)

        self.assertTrue(response.has_header("X-Request-ID"))
        self.assertEqual(response["X-Request-ID"], request.correlation_id)
        self.assertEqual(self.seen, [request.correlation_id])
        self.assertIsNone(get_correlation_id())

    def test_incoming_request_id_is_kept(self):
        request = self.factory.get("/", HTTP_X_REQUEST_ID="trace-123")
        response = self.middleware(request)
        self.assertEqual(response["X-Request-ID"], "trace-123")
        self.assertEqual(self.seen, ["trace-123"])

    def test_socket_handshake_header_becomes_correlation_id(self):
        scope = {"type": "websocket", "headers": [(b"host", b"testserver"), (b"x-request-id", b"ws-77")]}
        self.assertEqual(correlation_id_from_scope(scope), "ws-77")
        self.assertTrue(correlation_id_from_scope({"type": "websocket", "headers": []}))

    def test_bound_id_is_restored_after_block(self):
        with bind_correlation_id("task-1"):
            self.assertEqual(get_correlation_id(), "task-1")
        self.assertIsNone(get_correlation_id())


class LoggingTestCase(TestCase):
    def make_record(self, msg, **extra):
        record = logging.LogRecord("apps.delivery", logging.INFO, __file__, 1, msg, None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_masks_sensitive_values(self):
        record = self.make_record(
            "Partner logged in",
            correlation_id="req-1",
            metadata={"token": "abc.def", "customer_phone": "+919812345678", "nested": {"password": "x"}},
        )
        line = json.loads(GDPRJsonFormatter().format(record))

        self.assertEqual(line["correlation_id"], "req-1")
        self.assertEqual(line["metadata"]["token"], "***MASKED***")
        self.assertEqual(line["metadata"]["nested"]["password"], "***MASKED***")
        self.assertEqual(line["metadata"]["customer_phone"], "9198******")

    def test_json_formatter_coarsens_gps_and_promotes_dispatch_ids(self):
        record = self.make_record(
            "Location fix",
            delivery_id=42,
            metadata={
                "latitude": "12.97163211",
                "longitude": 77.59461234,
                "snapshot": {"customerPhone": "+919812345678"},
            },
        )
        line = json.loads(GDPRJsonFormatter().format(record))

        self.assertEqual(line["delivery_id"], 42)
        self.assertEqual(line["metadata"]["latitude"], 12.972)
        self.assertEqual(line["metadata"]["longitude"], 77.595)
        self.assertEqual(line["metadata"]["snapshot"]["customerPhone"], "9198******")

    def test_filter_stamps_placeholder_outside_requests(self):
        record = self.make_record("background work")
        self.assertTrue(CorrelationIdFilter().filter(record))
        self.assertEqual(record.correlation_id, "N/A")


class HealthCheckTestCase(TestCase):
    def setUp(self):
        cache.clear()

    def test_health_check_ok(self):
        cache.set(BEAT_HEARTBEAT_KEY, time.time())
        response = self.client.get("/health/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")

    def test_beat_warming_up(self):
        response = self.client.get("/health/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["services"]["beat"], "warming_up")

    def test_stale_beat_is_degraded_not_failed(self):
        cache.set(BEAT_HEARTBEAT_KEY, time.time() - 600)
        response = self.client.get("/health/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "degraded")

    def test_heartbeat_task(self):
        self.assertEqual(beat_heartbeat(), "Beat Alive")
        self.assertIsNotNone(cache.get(BEAT_HEARTBEAT_KEY))


class StuckDeliveryMonitorTestCase(TestCase):
    def setUp(self):
        customer = AccountService.create_with_role("+919500000001", Role.CUSTOMER)
        owner = AccountService.create_with_role("+919500000002", Role.SHOPKEEPER)
        store = Store.objects.create(owner=owner, name="Shop", address="1 Main Rd")
        self.order = Order.objects.create(
            customer=customer, store=store, total_amount=Decimal("99.00"),
            customer_name="A", customer_phone="+919500000001", shipping_address="2 Main Rd",
        )

    def test_nominal(self):
        Delivery.objects.create(
            order=self.order, pickup_address="1 Main Rd", delivery_address="2 Main Rd",
            delivery_fee=Decimal("30.00"),
        )
        self.assertEqual(monitor_stuck_deliveries(), "All systems nominal")

    def test_old_unclaimed_delivery_is_reported(self):
        Delivery.objects.create(
            order=self.order, pickup_address="1 Main Rd", delivery_address="2 Main Rd",
            delivery_fee=Decimal("30.00"), created_at=timezone.now() - timedelta(minutes=30),
        )
        with self.assertLogs("apps.core.tasks", level="WARNING"):
            result = monitor_stuck_deliveries()
        self.assertIn("Unclaimed=1", result)


class DemoDispatchCommandTestCase(TestCase):
    def test_setup_is_repeatable(self):
        call_command("setup_demo_dispatch", partners=2, stdout=StringIO())
        call_command("setup_demo_dispatch", partners=2, stdout=StringIO())

        self.assertEqual(Store.objects.filter(name="Demo Dark Store").count(), 1)
        partners = DeliveryPartner.objects.filter(is_available=True)
        self.assertEqual(partners.count(), 2)
        self.assertTrue(all(p.is_approved for p in partners))
