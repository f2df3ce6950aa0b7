from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings
from kombu.exceptions import OperationalError as BrokerError

from apps.accounts.models import Role
from apps.accounts.services import AccountService
from apps.delivery.models import Delivery, DeliveryNotification
from apps.orders.models import Order, OrderStatus
from apps.partners.services import PartnerService
from apps.pricing.defaults import seed_default_zones
from apps.pricing.models import DeliveryZone
from apps.stores.models import Store


class OrderReadyHookTestCase(TestCase):
    def setUp(self):
        seed_default_zones(DeliveryZone)
        self.customer = AccountService.create_with_role("+919400000001", Role.CUSTOMER)
        owner = AccountService.create_with_role("+919400000002", Role.SHOPKEEPER)
        self.store = Store.objects.create(
            owner=owner, name="Daily Needs", address="7 Park St", area="Jayanagar",
            latitude=Decimal("12.92500000"), longitude=Decimal("77.59380000"),
        )
        self.order = Order.objects.create(
            customer=self.customer,
            store=self.store,
            status=OrderStatus.CONFIRMED,
            total_amount=Decimal("250.00"),
            customer_name="Ravi",
            customer_phone="+919400000001",
            shipping_address="22 Temple Rd",
            delivery_latitude=Decimal("12.93500000"),
            delivery_longitude=Decimal("77.59380000"),
        )

    @patch("apps.orders.signals.broadcast_delivery_offers")
    def test_ready_for_pickup_queues_broadcast_after_commit(self, mock_task):
        with self.captureOnCommitCallbacks(execute=True):
            self.order.status = OrderStatus.READY_FOR_PICKUP
            self.order.save()

        mock_task.delay.assert_called_once_with(self.order.id)

    @patch("apps.orders.signals.broadcast_delivery_offers")
    def test_other_saves_do_not_broadcast(self, mock_task):
        with self.captureOnCommitCallbacks(execute=True):
            self.order.special_instructions = "Ring twice"
            self.order.save()

            self.order.status = OrderStatus.READY_FOR_PICKUP
            self.order.save()
            # Saving again while still ready must not re-offer
            self.order.save()

        self.assertEqual(mock_task.delay.call_count, 1)

    @patch("apps.orders.signals.broadcast_delivery_offers")
    def test_reloaded_ready_order_does_not_rebroadcast(self, mock_task):
        Order.objects.filter(pk=self.order.pk).update(status=OrderStatus.READY_FOR_PICKUP)
        order = Order.objects.get(pk=self.order.pk)

        with self.captureOnCommitCallbacks(execute=True):
            order.save()

        mock_task.delay.assert_not_called()

    def test_broker_outage_does_not_fail_the_order_save(self):
        broker_down = patch(
            "apps.orders.signals.broadcast_delivery_offers.delay", side_effect=BrokerError("broker down")
        )
        with broker_down as mock_delay:
            with self.assertLogs("apps.orders.signals", level="ERROR"):
                with self.captureOnCommitCallbacks(execute=True):
                    self.order.status = OrderStatus.READY_FOR_PICKUP
                    self.order.save()

        mock_delay.assert_called_once_with(self.order.id)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.READY_FOR_PICKUP)

    @override_settings(HERE_API_KEY="")
    def test_ready_order_reaches_partners(self):
        partner_user = AccountService.create_with_role("+919400000003", Role.DELIVERY_PARTNER)
        partner = PartnerService.create_profile(partner_user, delivery_areas=["Jayanagar"])
        PartnerService.approve(partner)
        PartnerService.set_availability(partner, True)

        with patch("apps.delivery.realtime.publish_to_users"):
            with self.captureOnCommitCallbacks(execute=True):
                self.order.status = OrderStatus.READY_FOR_PICKUP
                self.order.save()

        delivery = Delivery.objects.get(order=self.order)
        self.assertEqual(delivery.delivery_fee, Decimal("35.55"))
        self.assertTrue(DeliveryNotification.objects.filter(delivery=delivery, delivery_partner=partner).exists())
