from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from apps.notifications.models import Notification, NotificationType
from apps.notifications.services import NotificationService
from apps.notifications.tasks import send_push_notification
from apps.orders.models import Order
from apps.stores.models import Store
from apps.utils.exceptions import NotificationDispatchError

User = get_user_model()


class NotificationFixtureMixin:
    def make_order(self):
        self.customer = User.objects.create_user(phone="+919100000001")
        self.owner = User.objects.create_user(phone="+919100000002")
        self.store = Store.objects.create(owner=self.owner, name="Corner Shop", address="1 Main Rd")
        self.order = Order.objects.create(
            customer=self.customer, store=self.store, total_amount=Decimal("250.00"),
            customer_name="Asha", customer_phone="+919100000001", shipping_address="9 Lake View",
        )


class NotificationServiceTestCase(NotificationFixtureMixin, TestCase):
    def setUp(self):
        self.make_order()

    def test_notify_persists_validated_payload(self):
        notification = NotificationService.notify(
            self.customer,
            NotificationType.DELIVERY_UPDATE,
            {"orderId": self.order.id, "deliveryId": 7, "status": "picked_up"},
            order=self.order,
        )

        notification.refresh_from_db()
        self.assertEqual(notification.type, "delivery_update")
        self.assertEqual(notification.title, "Delivery update")
        self.assertIn("picked up", notification.message)
        self.assertEqual(notification.data["deliveryId"], 7)
        self.assertEqual(notification.data["description"], "")
        self.assertFalse(notification.is_read)

    def test_assignment_payload_with_money_and_expiry_round_trips(self):
        notification = NotificationService.notify(
            self.owner,
            NotificationType.DELIVERY_ASSIGNMENT,
            {
                "orderId": self.order.id, "deliveryId": 3, "storeName": "Corner Shop",
                "pickupAddress": "1 Main Rd", "deliveryAddress": "9 Lake View",
                "deliveryFee": Decimal("55.00"), "estimatedEarnings": Decimal("44.00"),
                "estimatedDistance": Decimal("5.00"), "estimatedTime": 70,
                "expiresAt": timezone.now(),
            },
        )
        notification.refresh_from_db()
        self.assertEqual(notification.data["deliveryFee"], "55.00")
        self.assertEqual(notification.message, f"Order #{self.order.id} from Corner Shop is available for pickup.")

    def test_invalid_payload_raises_and_persists_nothing(self):
        with self.assertRaises(NotificationDispatchError):
            NotificationService.notify(
                self.customer, NotificationType.DELIVERY_UPDATE, {"orderId": self.order.id}
            )
        self.assertFalse(Notification.objects.exists())

    def test_unknown_type_raises(self):
        with self.assertRaises(NotificationDispatchError):
            NotificationService.notify(self.customer, "carrier_pigeon", {})

    def test_database_failure_is_wrapped(self):
        with patch("apps.notifications.services.Notification.objects.create", side_effect=DatabaseError("down")):
            with self.assertRaises(NotificationDispatchError):
                NotificationService.notify(
                    self.customer, NotificationType.ORDER_UPDATE,
                    {"orderId": self.order.id, "status": "delivered"},
                )

    def test_notify_safely_logs_instead_of_raising(self):
        with self.assertLogs("apps.notifications.services", level="ERROR"):
            result = NotificationService.notify_safely(
                self.customer, NotificationType.DELIVERY_TAKEN, {"orderId": "not-a-number"}
            )
        self.assertIsNone(result)

    @patch("apps.notifications.services.send_push_notification.delay")
    def test_push_is_queued_after_commit(self, mock_delay):
        with self.captureOnCommitCallbacks(execute=True):
            notification = NotificationService.notify(
                self.customer, NotificationType.ORDER_UPDATE,
                {"orderId": self.order.id, "status": "out_for_delivery"},
            )
        mock_delay.assert_called_once_with(notification.id)


class PushTaskTestCase(NotificationFixtureMixin, TestCase):
    def setUp(self):
        self.make_order()
        self.notification = Notification.objects.create(
            user=self.customer, type=NotificationType.ORDER_UPDATE, title="t", message="m",
            data={"orderId": self.order.id, "status": "delivered"},
        )

    @override_settings(PUSH_PROVIDER_URL="", PUSH_PROVIDER_KEY="")
    def test_skipped_when_provider_not_configured(self):
        self.assertEqual(send_push_notification(self.notification.id), "Config Missing")

    @override_settings(PUSH_PROVIDER_URL="https://push.example.com/send", PUSH_PROVIDER_KEY="k")
    @patch("apps.notifications.tasks.requests.post")
    def test_posts_to_provider(self, mock_post):
        mock_post.return_value.raise_for_status.return_value = None

        self.assertEqual(send_push_notification(self.notification.id), "Sent")
        body = mock_post.call_args.kwargs["json"]
        self.assertEqual(body["to"], f"user:{self.customer.id}")
        self.assertEqual(body["data"]["type"], "order_update")


class NotificationAPITestCase(NotificationFixtureMixin, TestCase):
    def setUp(self):
        self.make_order()
        self.client = APIClient()
        self.mine = Notification.objects.create(
            user=self.customer, type=NotificationType.ORDER_UPDATE, title="a", message="a",
        )
        self.theirs = Notification.objects.create(
            user=self.owner, type=NotificationType.ORDER_UPDATE, title="b", message="b",
        )

    def test_lists_only_own_notifications(self):
        self.client.force_authenticate(user=self.customer)
        response = self.client.get("/api/notifications")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([n["id"] for n in response.data["results"]], [self.mine.id])

    def test_mark_read(self):
        self.client.force_authenticate(user=self.customer)
        response = self.client.post(f"/api/notifications/{self.mine.id}/read")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.mine.refresh_from_db()
        self.assertTrue(self.mine.is_read)

    def test_cannot_mark_someone_elses_notification(self):
        self.client.force_authenticate(user=self.customer)
        response = self.client.post(f"/api/notifications/{self.theirs.id}/read")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.theirs.refresh_from_db()
        self.assertFalse(self.theirs.is_read)
