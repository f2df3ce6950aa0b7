# apps/delivery/tests.py
import threading
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from asgiref.sync import sync_to_async
from channels.db import database_sync_to_async
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.management import call_command
from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from kombu.exceptions import OperationalError as BrokerError
from rest_framework import status
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from apps.accounts.models import Role
from apps.accounts.services import AccountService
from apps.delivery import realtime
from apps.delivery.models import (
    Delivery,
    DeliveryLocationTracking,
    DeliveryNotification,
    DeliveryRoute,
    DeliveryStatusHistory,
)
from apps.delivery.routing import websocket_urlpatterns
from apps.delivery.routing_service import RouteService
from apps.delivery.services import (
    AssignmentService,
    DeliveryService,
    LocationService,
    StatusTransitionService,
)
from apps.delivery.states import DeliveryStatus, OfferStatus, allowed_transitions, can_transition
from apps.delivery.tasks import broadcast_delivery_offers, expire_stale_delivery_offers
from apps.notifications.models import Notification, NotificationType
from apps.orders.models import Order, OrderStatus
from apps.partners.services import PartnerService
from apps.pricing.defaults import seed_default_zones
from apps.pricing.models import DeliveryZone
from apps.stores.models import Store
from apps.utils.exceptions import (
    AlreadyClaimedError,
    BusinessLogicException,
    IllegalTransitionError,
    InvalidInputError,
    NotificationDispatchError,
    OfferExpiredError,
    TransportDisconnected,
    UnauthorizedLocationUpdateError,
    UnauthorizedStatusUpdateError,
)

User = get_user_model()


class DispatchFixtureMixin:
    """
    A store in Indiranagar, one confirmed order ~2.22 km away and two approved, online partners.
    """

    def build_world(self):
        seed_default_zones(DeliveryZone)
        self.customer = AccountService.create_with_role("+919200000001", Role.CUSTOMER)
        self.shopkeeper = AccountService.create_with_role("+919200000002", Role.SHOPKEEPER)
        self.staff = User.objects.create_user(phone="+919200000003", is_staff=True)

        self.store = Store.objects.create(
            owner=self.shopkeeper,
            name="Fresh Mart",
            address="12 MG Road",
            area="Indiranagar",
            latitude=Decimal("12.97160000"),
            longitude=Decimal("77.59460000"),
        )
        self.order = Order.objects.create(
            customer=self.customer,
            store=self.store,
            status=OrderStatus.CONFIRMED,
            total_amount=Decimal("480.00"),
            customer_name="Asha",
            customer_phone="+919200000001",
            shipping_address="4 Lake View",
            delivery_latitude=Decimal("12.99160000"),
            delivery_longitude=Decimal("77.59460000"),
        )
        self.partner_a = self.make_partner("+919200000011")
        self.partner_b = self.make_partner("+919200000012")

    def make_partner(self, phone, areas=("Indiranagar",), available=True):
        user = AccountService.create_with_role(phone, Role.DELIVERY_PARTNER)
        profile = PartnerService.create_profile(user, delivery_areas=list(areas))
        PartnerService.approve(profile)
        if available:
            PartnerService.set_availability(profile, True)
        return profile

    def claimed_delivery(self, partner=None):
        AssignmentService.broadcast(self.order.id)
        delivery, _ = AssignmentService.accept(self.order.id, (partner or self.partner_a).id)
        return delivery

    def advance(self, delivery, *statuses, actor=None):
        actor = actor or delivery.delivery_partner.user
        for new_status in statuses:
            StatusTransitionService.transition(delivery.id, new_status, actor)
        delivery.refresh_from_db()
        return delivery


class TransitionTableTestCase(TestCase):
    def test_forward_moves_may_skip_checkpoints_but_not_pickup(self):
        self.assertTrue(can_transition(DeliveryStatus.ASSIGNED, DeliveryStatus.PICKED_UP))
        self.assertTrue(can_transition(DeliveryStatus.PICKED_UP, DeliveryStatus.DELIVERED))
        self.assertFalse(can_transition(DeliveryStatus.ASSIGNED, DeliveryStatus.DELIVERED))
        self.assertFalse(can_transition(DeliveryStatus.PENDING, DeliveryStatus.DELIVERED))

    def test_cancel_reachable_from_every_open_state(self):
        for current in DeliveryStatus.values:
            with self.subTest(status=current):
                expected = current not in (DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED)
                self.assertEqual(can_transition(current, DeliveryStatus.CANCELLED), expected)

    def test_terminal_states_have_no_successors(self):
        self.assertEqual(allowed_transitions(DeliveryStatus.DELIVERED), [])
        self.assertEqual(allowed_transitions(DeliveryStatus.CANCELLED), [])

    def test_repeated_status_is_illegal(self):
        for current in DeliveryStatus.values:
            self.assertFalse(can_transition(current, current))


class BroadcastTestCase(DispatchFixtureMixin, TestCase):
    def setUp(self):
        self.build_world()

    def test_broadcast_opens_pending_delivery_with_quote(self):
        offers = AssignmentService.broadcast(self.order.id)

        delivery = Delivery.objects.get(order=self.order)
        self.assertEqual(delivery.status, DeliveryStatus.PENDING)
        self.assertIsNone(delivery.delivery_partner)
        self.assertEqual(delivery.pickup_address, "12 MG Road")
        self.assertEqual(delivery.delivery_address, "4 Lake View")
        self.assertEqual(delivery.estimated_distance, Decimal("2.22"))
        self.assertEqual(delivery.delivery_fee, Decimal("41.10"))
        self.assertEqual(delivery.partner_earnings, Decimal("32.88"))
        self.assertEqual(delivery.estimated_time, 48)

        self.assertEqual(
            {o.delivery_partner_id for o in offers},
            {self.partner_a.id, self.partner_b.id},
        )
        snapshot = offers[0].notification_data
        self.assertEqual(snapshot["customerName"], "Asha")
        self.assertEqual(snapshot["deliveryFee"], "41.10")

    def test_ineligible_partners_are_not_offered(self):
        elsewhere = self.make_partner("+919200000013", areas=("Koramangala",))
        offline = self.make_partner("+919200000014", available=False)
        unapproved_user = AccountService.create_with_role("+919200000015", Role.DELIVERY_PARTNER)
        PartnerService.create_profile(unapproved_user, delivery_areas=["Indiranagar"], is_available=True)

        offers = AssignmentService.broadcast(self.order.id)

        offered = {o.delivery_partner_id for o in offers}
        self.assertNotIn(elsewhere.id, offered)
        self.assertNotIn(offline.id, offered)
        self.assertNotIn(unapproved_user.delivery_partner_profile.id, offered)
        self.assertEqual(len(offered), 2)

    def test_rebroadcast_reuses_delivery_and_skips_pending_offers(self):
        AssignmentService.broadcast(self.order.id)
        newcomer = self.make_partner("+919200000016")

        offers = AssignmentService.broadcast(self.order.id)

        self.assertEqual([o.delivery_partner_id for o in offers], [newcomer.id])
        self.assertEqual(Delivery.objects.filter(order=self.order).count(), 1)
        self.assertEqual(DeliveryNotification.objects.filter(order=self.order).count(), 3)

    def test_broadcast_after_claim_raises(self):
        self.claimed_delivery()
        with self.assertRaises(AlreadyClaimedError):
            AssignmentService.broadcast(self.order.id)

    @override_settings(HERE_API_KEY="")
    def test_after_commit_offers_are_announced(self):
        with patch("apps.delivery.realtime.publish_to_users") as mock_publish:
            with self.captureOnCommitCallbacks(execute=True):
                AssignmentService.broadcast(self.order.id)

        user_ids, event_type = mock_publish.call_args.args[:2]
        self.assertEqual(set(user_ids), {self.partner_a.user_id, self.partner_b.user_id})
        self.assertEqual(event_type, realtime.ASSIGNMENT_BROADCAST)

        notifications = Notification.objects.filter(type=NotificationType.DELIVERY_ASSIGNMENT)
        self.assertEqual(
            set(notifications.values_list("user_id", flat=True)),
            {self.partner_a.user_id, self.partner_b.user_id},
        )
        # Route is calculated in the background (eager in tests)
        route = DeliveryRoute.objects.get(delivery__order=self.order)
        self.assertEqual(route.source, DeliveryRoute.Source.STRAIGHT_LINE)
        self.assertEqual(route.distance_meters, 2224)

    def test_broadcast_task_reports_outcome(self):
        self.assertEqual(broadcast_delivery_offers(self.order.id), "Offered to 2 partners")
        self.assertEqual(broadcast_delivery_offers(999999), "Order Not Found")

    def test_broker_outage_does_not_fail_the_broadcast(self):
        route_down = patch(
            "apps.delivery.tasks.calculate_delivery_route.delay", side_effect=BrokerError("broker down")
        )
        push_down = patch(
            "apps.notifications.services.send_push_notification.delay", side_effect=BrokerError("broker down")
        )
        with route_down, push_down, patch("apps.delivery.realtime.publish_to_users") as mock_direct:
            with self.assertLogs("apps.delivery.services", level="ERROR"):
                with self.captureOnCommitCallbacks(execute=True):
                    offers = AssignmentService.broadcast(self.order.id)

        self.assertEqual(len(offers), 2)
        mock_direct.assert_called_once()
        self.assertEqual(
            Notification.objects.filter(type=NotificationType.DELIVERY_ASSIGNMENT).count(), 2
        )


class AcceptRaceTestCase(DispatchFixtureMixin, TestCase):
    def setUp(self):
        self.build_world()
        AssignmentService.broadcast(self.order.id)

    def offer_of(self, partner):
        return DeliveryNotification.objects.get(order=self.order, delivery_partner=partner)

    def test_first_accept_wins(self):
        delivery, claimed = AssignmentService.accept(self.order.id, self.partner_a.id)

        self.assertTrue(claimed)
        self.assertEqual(delivery.status, DeliveryStatus.ASSIGNED)
        self.assertEqual(delivery.delivery_partner_id, self.partner_a.id)
        self.assertIsNotNone(delivery.assigned_at)
        self.assertEqual(self.offer_of(self.partner_a).status, OfferStatus.ACCEPTED)
        self.assertEqual(self.offer_of(self.partner_b).status, OfferStatus.EXPIRED)

        history = list(delivery.status_history.all())
        self.assertEqual([h.status for h in history], [DeliveryStatus.ASSIGNED])
        self.assertEqual(history[0].updated_by_id, self.partner_a.user_id)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.ASSIGNED_FOR_DELIVERY)

    def test_second_partner_gets_already_claimed(self):
        AssignmentService.accept(self.order.id, self.partner_a.id)

        with self.assertRaises(AlreadyClaimedError):
            AssignmentService.accept(self.order.id, self.partner_b.id)

        delivery = Delivery.objects.get(order=self.order)
        self.assertEqual(delivery.delivery_partner_id, self.partner_a.id)

    def test_loser_of_the_update_has_offer_expired(self):
        # Another partner's claim lands between our read of the offer and our UPDATE
        Delivery.objects.filter(order=self.order).update(
            status=DeliveryStatus.ASSIGNED, delivery_partner=self.partner_b, assigned_at=timezone.now()
        )

        with self.assertRaises(AlreadyClaimedError):
            AssignmentService.accept(self.order.id, self.partner_a.id)

        self.assertEqual(self.offer_of(self.partner_a).status, OfferStatus.EXPIRED)
        self.assertEqual(Delivery.objects.get(order=self.order).delivery_partner_id, self.partner_b.id)
        self.assertFalse(DeliveryStatusHistory.objects.exists())

    def test_double_accept_by_winner_is_noop(self):
        first, claimed_first = AssignmentService.accept(self.order.id, self.partner_a.id)
        assigned_at = first.assigned_at

        with patch("apps.delivery.realtime.publish") as mock_publish:
            with self.captureOnCommitCallbacks(execute=True) as callbacks:
                second, claimed_second = AssignmentService.accept(self.order.id, self.partner_a.id)

        self.assertTrue(claimed_first)
        self.assertFalse(claimed_second)
        self.assertEqual(second.pk, first.pk)
        self.assertEqual(second.assigned_at, assigned_at)
        self.assertEqual(callbacks, [])
        mock_publish.assert_not_called()
        self.assertEqual(DeliveryStatusHistory.objects.filter(delivery=first).count(), 1)
        self.assertEqual(
            DeliveryNotification.objects.filter(order=self.order, status=OfferStatus.EXPIRED).count(), 1
        )

    def test_stale_offer_cannot_be_accepted(self):
        DeliveryNotification.objects.filter(order=self.order).update(
            created_at=timezone.now() - timedelta(seconds=300)
        )

        with self.assertRaises(OfferExpiredError):
            AssignmentService.accept(self.order.id, self.partner_a.id)

        self.assertEqual(self.offer_of(self.partner_a).status, OfferStatus.EXPIRED)
        self.assertEqual(Delivery.objects.get(order=self.order).status, DeliveryStatus.PENDING)

    def test_accept_without_offer_is_not_found(self):
        outsider = self.make_partner("+919200000019", areas=("Koramangala",))
        with self.assertRaises(BusinessLogicException) as ctx:
            AssignmentService.accept(self.order.id, outsider.id)
        self.assertEqual(ctx.exception.code, "offer_not_found")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_partner_at_capacity_cannot_accept(self):
        with override_settings(DELIVERY_MAX_ACTIVE_PER_PARTNER=0):
            with self.assertRaises(BusinessLogicException) as ctx:
                AssignmentService.accept(self.order.id, self.partner_a.id)
        self.assertEqual(ctx.exception.code, "partner_at_capacity")
        self.assertEqual(Delivery.objects.get(order=self.order).status, DeliveryStatus.PENDING)

    def test_winner_fan_out_after_commit(self):
        with patch("apps.delivery.realtime.publish_to_users") as mock_direct, \
                patch("apps.delivery.realtime.publish") as mock_publish:
            with self.captureOnCommitCallbacks(execute=True):
                delivery, _ = AssignmentService.accept(self.order.id, self.partner_a.id)

        user_ids, event_type = mock_direct.call_args.args[:2]
        self.assertEqual(user_ids, [self.partner_b.user_id])
        self.assertEqual(event_type, realtime.ASSIGNMENT_TAKEN)
        self.assertEqual(mock_publish.call_args.args[0], realtime.STATUS_UPDATE)
        self.assertEqual(mock_publish.call_args.kwargs["delivery_id"], delivery.id)

        self.assertTrue(Notification.objects.filter(
            user=self.partner_b.user, type=NotificationType.DELIVERY_TAKEN
        ).exists())
        self.assertTrue(Notification.objects.filter(
            user=self.customer, type=NotificationType.ORDER_UPDATE
        ).exists())
        self.assertTrue(Notification.objects.filter(
            user=self.shopkeeper, type=NotificationType.DELIVERY_UPDATE
        ).exists())

    def test_notification_failure_does_not_undo_the_claim(self):
        failing = patch(
            "apps.delivery.services.NotificationService.notify",
            side_effect=NotificationDispatchError("db down"),
        )
        with failing, patch("apps.delivery.realtime.publish"), patch("apps.delivery.realtime.publish_to_users"):
            with self.assertLogs("apps.notifications.services", level="ERROR"):
                with self.captureOnCommitCallbacks(execute=True):
                    delivery, _ = AssignmentService.accept(self.order.id, self.partner_a.id)

        delivery.refresh_from_db()
        self.assertEqual(delivery.status, DeliveryStatus.ASSIGNED)

    def test_broker_outage_after_commit_does_not_reach_the_winner(self):
        push_down = patch(
            "apps.notifications.services.send_push_notification.delay",
            side_effect=BrokerError("broker down"),
        )
        with push_down, patch("apps.delivery.realtime.publish"), patch("apps.delivery.realtime.publish_to_users"):
            with self.assertLogs("apps.notifications.services", level="ERROR") as logs:
                with self.captureOnCommitCallbacks(execute=True):
                    delivery, claimed = AssignmentService.accept(self.order.id, self.partner_a.id)

        self.assertTrue(claimed)
        delivery.refresh_from_db()
        self.assertEqual(delivery.status, DeliveryStatus.ASSIGNED)
        self.assertTrue(any("could not queue push" in line for line in logs.output))

        # Every recipient still has the in-app copy
        self.assertTrue(Notification.objects.filter(
            user=self.partner_b.user, type=NotificationType.DELIVERY_TAKEN
        ).exists())
        self.assertTrue(Notification.objects.filter(
            user=self.customer, type=NotificationType.ORDER_UPDATE
        ).exists())
        self.assertTrue(Notification.objects.filter(
            user=self.shopkeeper, type=NotificationType.DELIVERY_UPDATE
        ).exists())

    def test_every_caller_that_read_before_the_claim_loses_at_the_update(self):
        newcomers = [self.make_partner(f"+91920000002{i}") for i in range(3)]
        AssignmentService.broadcast(self.order.id)
        callers = [self.partner_a, self.partner_b, *newcomers]
        winner = callers[2]

        _, claimed = AssignmentService.accept(self.order.id, winner.id)
        self.assertTrue(claimed)

        for partner in callers:
            if partner.id == winner.id:
                continue
            # As if this caller read its offer before the winner committed
            DeliveryNotification.objects.filter(order=self.order, delivery_partner=partner).update(
                status=OfferStatus.PENDING, responded_at=None
            )
            with self.assertRaises(AlreadyClaimedError):
                AssignmentService.accept(self.order.id, partner.id)

        delivery = Delivery.objects.get(order=self.order)
        self.assertEqual(delivery.delivery_partner_id, winner.id)
        self.assertEqual(DeliveryStatusHistory.objects.filter(delivery=delivery).count(), 1)
        self.assertEqual(self.offer_of(winner).status, OfferStatus.ACCEPTED)
        self.assertEqual(
            set(DeliveryNotification.objects.filter(order=self.order).exclude(
                delivery_partner=winner
            ).values_list("status", flat=True)),
            {OfferStatus.EXPIRED},
        )

    def test_winner_cannot_reclaim_a_cancelled_delivery(self):
        delivery, _ = AssignmentService.accept(self.order.id, self.partner_a.id)
        StatusTransitionService.transition(delivery.id, DeliveryStatus.CANCELLED, self.customer)

        with self.assertRaises(OfferExpiredError):
            AssignmentService.accept(self.order.id, self.partner_a.id)

        delivery.refresh_from_db()
        self.assertEqual(delivery.status, DeliveryStatus.CANCELLED)
        self.assertEqual(DeliveryStatusHistory.objects.filter(delivery=delivery).count(), 2)


class RejectAndExpiryTestCase(DispatchFixtureMixin, TestCase):
    def setUp(self):
        self.build_world()
        AssignmentService.broadcast(self.order.id)

    def test_reject_only_touches_own_offer(self):
        self.assertEqual(AssignmentService.reject(self.order.id, self.partner_b.id), 1)
        self.assertEqual(AssignmentService.reject(self.order.id, self.partner_b.id), 0)

        statuses = dict(
            DeliveryNotification.objects.filter(order=self.order).values_list("delivery_partner_id", "status")
        )
        self.assertEqual(statuses[self.partner_b.id], OfferStatus.REJECTED)
        self.assertEqual(statuses[self.partner_a.id], OfferStatus.PENDING)

        with self.assertRaises(OfferExpiredError):
            AssignmentService.accept(self.order.id, self.partner_b.id)

        delivery, claimed = AssignmentService.accept(self.order.id, self.partner_a.id)
        self.assertTrue(claimed)

    def test_expire_stale_offers(self):
        DeliveryNotification.objects.filter(delivery_partner=self.partner_a).update(
            created_at=timezone.now() - timedelta(seconds=91)
        )

        self.assertEqual(expire_stale_delivery_offers(), "Expired 1 offers")
        statuses = dict(
            DeliveryNotification.objects.filter(order=self.order).values_list("delivery_partner_id", "status")
        )
        self.assertEqual(statuses[self.partner_a.id], OfferStatus.EXPIRED)
        self.assertEqual(statuses[self.partner_b.id], OfferStatus.PENDING)

    @override_settings(DELIVERY_OFFER_TTL_SECONDS=10)
    def test_ttl_is_configurable_and_command_expires(self):
        DeliveryNotification.objects.filter(order=self.order).update(
            created_at=timezone.now() - timedelta(seconds=11)
        )
        out = StringIO()
        call_command("expire_delivery_offers", stdout=out)
        self.assertIn("Expired 2 delivery offers", out.getvalue())

    def test_pending_offers_excludes_stale_and_claimed(self):
        self.assertEqual(AssignmentService.pending_offers_for(self.partner_a).count(), 1)
        AssignmentService.accept(self.order.id, self.partner_b.id)
        self.assertEqual(AssignmentService.pending_offers_for(self.partner_a).count(), 0)


class StatusTransitionTestCase(DispatchFixtureMixin, TestCase):
    def setUp(self):
        self.build_world()

    def test_pending_cannot_jump_to_delivered(self):
        AssignmentService.broadcast(self.order.id)
        delivery = Delivery.objects.get(order=self.order)

        with self.assertRaises(IllegalTransitionError) as ctx:
            StatusTransitionService.transition(delivery.id, DeliveryStatus.DELIVERED, self.staff)

        self.assertEqual(ctx.exception.current_status, DeliveryStatus.PENDING)
        self.assertEqual(ctx.exception.details["current_status"], "pending")
        delivery.refresh_from_db()
        self.assertEqual(delivery.status, DeliveryStatus.PENDING)
        self.assertFalse(DeliveryStatusHistory.objects.filter(delivery=delivery).exists())

    def test_assignment_only_happens_through_accept(self):
        AssignmentService.broadcast(self.order.id)
        delivery = Delivery.objects.get(order=self.order)
        with self.assertRaises(IllegalTransitionError):
            StatusTransitionService.transition(delivery.id, DeliveryStatus.ASSIGNED, self.staff)

    def test_delivery_cannot_skip_pickup(self):
        delivery = self.claimed_delivery()
        with self.assertRaises(IllegalTransitionError):
            StatusTransitionService.transition(delivery.id, DeliveryStatus.DELIVERED, self.partner_a.user)

    def test_unknown_status_is_invalid_input(self):
        delivery = self.claimed_delivery()
        with self.assertRaises(InvalidInputError):
            StatusTransitionService.transition(delivery.id, "teleported", self.partner_a.user)

    def test_each_transition_appends_one_history_row(self):
        delivery = self.claimed_delivery()
        steps = [
            DeliveryStatus.EN_ROUTE_PICKUP,
            DeliveryStatus.ARRIVED_PICKUP,
            DeliveryStatus.PICKED_UP,
            DeliveryStatus.EN_ROUTE_DELIVERY,
            DeliveryStatus.ARRIVED_DELIVERY,
            DeliveryStatus.DELIVERED,
        ]
        for count, new_status in enumerate(steps, start=2):
            history = StatusTransitionService.transition(delivery.id, new_status, self.partner_a.user)
            self.assertEqual(history.delivery_id, delivery.id)
            self.assertEqual(history.status, new_status)
            self.assertEqual(DeliveryStatusHistory.objects.filter(delivery=delivery).count(), count)

        delivery.refresh_from_db()
        self.assertIsNotNone(delivery.picked_up_at)
        self.assertIsNotNone(delivery.delivered_at)
        self.assertEqual(delivery.actual_time, 0)

    def test_history_is_append_only(self):
        delivery = self.claimed_delivery()
        entry = delivery.status_history.get()
        entry.description = "rewritten"
        with self.assertRaises(RuntimeError):
            entry.save()
        with self.assertRaises(RuntimeError):
            entry.delete()
        with self.assertRaises(RuntimeError):
            DeliveryStatusHistory.objects.filter(delivery=delivery).update(description="x")

    def test_stale_duplicate_update_is_rejected(self):
        delivery = self.claimed_delivery()
        StatusTransitionService.transition(delivery.id, DeliveryStatus.PICKED_UP, self.partner_a.user)

        with self.assertRaises(IllegalTransitionError) as ctx:
            StatusTransitionService.transition(delivery.id, DeliveryStatus.PICKED_UP, self.partner_a.user)
        self.assertEqual(ctx.exception.current_status, DeliveryStatus.PICKED_UP)

    def test_only_assigned_partner_moves_delivery_forward(self):
        delivery = self.claimed_delivery()
        for actor in (self.partner_b.user, self.customer, self.shopkeeper):
            with self.subTest(actor=actor.phone):
                with self.assertRaises(UnauthorizedStatusUpdateError):
                    StatusTransitionService.transition(delivery.id, DeliveryStatus.PICKED_UP, actor)

    def test_customer_can_cancel_and_pending_offers_expire(self):
        AssignmentService.broadcast(self.order.id)
        delivery = Delivery.objects.get(order=self.order)

        StatusTransitionService.transition(delivery.id, DeliveryStatus.CANCELLED, self.customer, description="Changed my mind")

        delivery.refresh_from_db()
        self.assertEqual(delivery.status, DeliveryStatus.CANCELLED)
        self.assertFalse(DeliveryNotification.objects.filter(order=self.order, status=OfferStatus.PENDING).exists())
        with self.assertRaises(OfferExpiredError):
            AssignmentService.accept(self.order.id, self.partner_a.id)

    def test_cancelled_order_can_be_dispatched_again(self):
        delivery = self.claimed_delivery()
        StatusTransitionService.transition(delivery.id, DeliveryStatus.CANCELLED, self.partner_a.user)

        AssignmentService.broadcast(self.order.id)

        self.assertEqual(Delivery.objects.filter(order=self.order).count(), 2)
        fresh = Delivery.objects.get(order=self.order, status=DeliveryStatus.PENDING)
        second, claimed = AssignmentService.accept(self.order.id, self.partner_b.id)
        self.assertTrue(claimed)
        self.assertEqual(second.pk, fresh.pk)

    def test_delivered_updates_order_partner_and_route(self):
        delivery = self.claimed_delivery()
        DeliveryRoute.objects.create(
            delivery=delivery,
            pickup_latitude=delivery.pickup_latitude,
            pickup_longitude=delivery.pickup_longitude,
            delivery_latitude=delivery.delivery_latitude,
            delivery_longitude=delivery.delivery_longitude,
            distance_meters=2224,
            estimated_duration_seconds=400,
        )
        self.advance(delivery, DeliveryStatus.PICKED_UP, DeliveryStatus.DELIVERED)

        self.order.refresh_from_db()
        self.partner_a.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.DELIVERED)
        self.assertEqual(self.partner_a.total_deliveries, 1)
        self.assertEqual(self.partner_a.total_earnings, Decimal("32.88"))
        self.assertIsNotNone(DeliveryRoute.objects.get(delivery=delivery).actual_duration_seconds)

    def test_status_fan_out_and_notifications_after_commit(self):
        delivery = self.claimed_delivery()
        Notification.objects.all().delete()

        with patch("apps.delivery.realtime.publish") as mock_publish:
            with self.captureOnCommitCallbacks(execute=True):
                StatusTransitionService.transition(
                    delivery.id, DeliveryStatus.PICKED_UP, self.partner_a.user,
                    location=(12.9716, 77.5946), description="Collected",
                )
            event_type, order_id, data = mock_publish.call_args.args
            self.assertEqual(event_type, realtime.STATUS_UPDATE)
            self.assertEqual(order_id, self.order.id)
            self.assertEqual(data["status"], DeliveryStatus.PICKED_UP)
            self.assertEqual(data["description"], "Collected")

        customer_note = Notification.objects.get(user=self.customer)
        self.assertEqual(customer_note.type, NotificationType.ORDER_UPDATE)
        self.assertEqual(customer_note.data["status"], "out_for_delivery")
        shop_note = Notification.objects.get(user=self.shopkeeper)
        self.assertEqual(shop_note.type, NotificationType.DELIVERY_UPDATE)
        self.assertEqual(shop_note.data["status"], "picked_up")

    def test_transition_survives_broker_outage(self):
        delivery = self.claimed_delivery()
        Notification.objects.all().delete()

        push_down = patch(
            "apps.notifications.services.send_push_notification.delay", side_effect=BrokerError("broker down")
        )
        with push_down, patch("apps.delivery.realtime.publish"):
            with self.assertLogs("apps.notifications.services", level="ERROR"):
                with self.captureOnCommitCallbacks(execute=True):
                    history = StatusTransitionService.transition(
                        delivery.id, DeliveryStatus.PICKED_UP, self.partner_a.user
                    )

        self.assertEqual(history.status, DeliveryStatus.PICKED_UP)
        delivery.refresh_from_db()
        self.assertEqual(delivery.status, DeliveryStatus.PICKED_UP)
        self.assertEqual(
            set(Notification.objects.values_list("user_id", flat=True)),
            {self.customer.id, self.shopkeeper.id},
        )

    def test_no_fan_out_before_commit(self):
        delivery = self.claimed_delivery()
        with patch("apps.delivery.realtime.publish") as mock_publish:
            with self.captureOnCommitCallbacks(execute=False) as callbacks:
                StatusTransitionService.transition(delivery.id, DeliveryStatus.PICKED_UP, self.partner_a.user)
            mock_publish.assert_not_called()
        self.assertEqual(len(callbacks), 1)


class LocationIngestTestCase(DispatchFixtureMixin, TestCase):
    def setUp(self):
        self.build_world()
        self.delivery = self.claimed_delivery()

    def test_other_partner_is_rejected_and_nothing_written(self):
        with self.assertRaises(UnauthorizedLocationUpdateError):
            LocationService.ingest(self.delivery.id, self.partner_b.id, 12.98, 77.59)
        self.assertFalse(DeliveryLocationTracking.objects.exists())

    def test_latest_fix_is_current(self):
        first = LocationService.ingest(self.delivery.id, self.partner_a.id, 12.9716, 77.5946, heading=90, speed=4.5)
        second = LocationService.ingest(self.delivery.id, self.partner_a.id, 12.9800, 77.5946, accuracy=8)

        first.refresh_from_db()
        self.assertFalse(first.is_active)
        self.assertTrue(second.is_active)
        self.assertEqual(LocationService.current_location(self.delivery), second)
        self.assertEqual(self.delivery.locations.count(), 2)

    def test_out_of_range_values_are_invalid(self):
        bad_calls = [
            {"latitude": 91, "longitude": 0},
            {"latitude": 0, "longitude": -181},
            {"latitude": 0, "longitude": 0, "heading": 361},
            {"latitude": 0, "longitude": 0, "speed": -1},
            {"latitude": 0, "longitude": 0, "accuracy": -0.5},
            {"latitude": "north", "longitude": 0},
            {"latitude": None, "longitude": 0},
        ]
        for kwargs in bad_calls:
            with self.subTest(**{k: str(v) for k, v in kwargs.items()}):
                with self.assertRaises(InvalidInputError):
                    LocationService.ingest(self.delivery.id, self.partner_a.id, **kwargs)
        self.assertFalse(DeliveryLocationTracking.objects.exists())

    def test_ingest_closed_after_delivery(self):
        self.advance(self.delivery, DeliveryStatus.PICKED_UP, DeliveryStatus.ARRIVED_DELIVERY)
        with self.assertRaises(UnauthorizedLocationUpdateError):
            LocationService.ingest(self.delivery.id, self.partner_a.id, 12.98, 77.59)

    def test_ingest_rejected_while_pending(self):
        StatusTransitionService.transition(self.delivery.id, DeliveryStatus.CANCELLED, self.partner_a.user)
        AssignmentService.broadcast(self.order.id)
        pending = Delivery.objects.get(order=self.order, status=DeliveryStatus.PENDING)
        with self.assertRaises(UnauthorizedLocationUpdateError):
            LocationService.ingest(pending.id, self.partner_a.id, 12.98, 77.59)

    def test_location_published_to_watchers(self):
        with patch("apps.delivery.realtime.publish") as mock_publish:
            with self.captureOnCommitCallbacks(execute=True):
                LocationService.ingest(self.delivery.id, self.partner_a.id, 12.9716, 77.5946)
        event_type, order_id, data = mock_publish.call_args.args
        self.assertEqual(event_type, realtime.LOCATION_UPDATE)
        self.assertEqual(order_id, self.order.id)
        self.assertEqual(data["latitude"], Decimal("12.97160000"))


class EndToEndDispatchTestCase(DispatchFixtureMixin, TestCase):
    def test_broadcast_race_progress_and_tracking(self):
        self.build_world()

        offers = AssignmentService.broadcast(self.order.id)
        self.assertEqual(len(offers), 2)
        self.assertTrue(all(o.status == OfferStatus.PENDING for o in offers))

        delivery, _ = AssignmentService.accept(self.order.id, self.partner_a.id)
        self.assertEqual(delivery.status, DeliveryStatus.ASSIGNED)
        self.assertEqual(delivery.delivery_partner_id, self.partner_a.id)
        self.assertEqual(
            DeliveryNotification.objects.get(order=self.order, delivery_partner=self.partner_b).status,
            OfferStatus.EXPIRED,
        )

        with self.assertRaises(AlreadyClaimedError):
            AssignmentService.accept(self.order.id, self.partner_b.id)

        before = DeliveryStatusHistory.objects.filter(delivery=delivery).count()
        StatusTransitionService.transition(delivery.id, DeliveryStatus.PICKED_UP, self.partner_a.user)
        StatusTransitionService.transition(delivery.id, DeliveryStatus.EN_ROUTE_DELIVERY, self.partner_a.user)

        LocationService.ingest(delivery.id, self.partner_a.id, 12.9800, 77.5946)
        with self.assertRaises(UnauthorizedLocationUpdateError):
            LocationService.ingest(delivery.id, self.partner_b.id, 12.9800, 77.5946)

        StatusTransitionService.transition(delivery.id, DeliveryStatus.DELIVERED, self.partner_a.user)

        self.assertEqual(DeliveryStatusHistory.objects.filter(delivery=delivery).count(), before + 3)
        self.assertEqual(DeliveryLocationTracking.objects.filter(delivery=delivery).count(), 1)
        delivery.refresh_from_db()
        self.assertEqual(delivery.status, DeliveryStatus.DELIVERED)


class RatingTestCase(DispatchFixtureMixin, TestCase):
    def setUp(self):
        self.build_world()
        self.delivery = self.claimed_delivery()

    def test_customer_rates_once_after_delivery(self):
        with self.assertRaises(BusinessLogicException) as ctx:
            DeliveryService.rate(self.delivery.id, self.customer, 5)
        self.assertEqual(ctx.exception.code, "delivery_not_completed")

        self.advance(self.delivery, DeliveryStatus.PICKED_UP, DeliveryStatus.DELIVERED)
        rated = DeliveryService.rate(self.delivery.id, self.customer, 4, "Quick and polite")
        self.assertEqual(rated.customer_rating, 4)
        self.assertEqual(rated.customer_feedback, "Quick and polite")

        with self.assertRaises(BusinessLogicException) as ctx:
            DeliveryService.rate(self.delivery.id, self.customer, 1)
        self.assertEqual(ctx.exception.code, "already_rated")
        self.assertEqual(ctx.exception.status_code, 409)

    def test_only_the_customer_may_rate(self):
        self.advance(self.delivery, DeliveryStatus.PICKED_UP, DeliveryStatus.DELIVERED)
        with self.assertRaises(BusinessLogicException) as ctx:
            DeliveryService.rate(self.delivery.id, self.shopkeeper, 5)
        self.assertEqual(ctx.exception.status_code, 403)

    def test_rating_range(self):
        for bad in (0, 6, 4.5, True, "5"):
            with self.subTest(rating=bad):
                with self.assertRaises(InvalidInputError):
                    DeliveryService.rate(self.delivery.id, self.customer, bad)


class RouteServiceTestCase(DispatchFixtureMixin, TestCase):
    def setUp(self):
        cache.clear()
        self.build_world()
        AssignmentService.broadcast(self.order.id)
        self.delivery = Delivery.objects.get(order=self.order)

    @override_settings(HERE_API_KEY="", DELIVERY_AVERAGE_SPEED_KMPH=20)
    def test_straight_line_without_key(self):
        route = RouteService.calculate_and_store(self.delivery)
        self.assertEqual(route.source, DeliveryRoute.Source.STRAIGHT_LINE)
        self.assertEqual(route.distance_meters, 2224)
        self.assertEqual(route.estimated_duration_seconds, 400)

    @override_settings(HERE_API_KEY="test-key", HERE_ROUTING_URL="https://router.example.com/v8/routes")
    @patch("apps.delivery.routing_service.requests.get")
    def test_here_route_is_stored(self, mock_get):
        mock_get.return_value.raise_for_status.return_value = None
        mock_get.return_value.json.return_value = {
            "routes": [{
                "id": "route-1",
                "sections": [{"summary": {"length": 3100, "duration": 620}, "polyline": "BFoz5xJ67i1B1B7PzIhaxL7Y"}],
            }]
        }

        route = RouteService.calculate_and_store(self.delivery)

        self.assertEqual(route.source, DeliveryRoute.Source.HERE)
        self.assertEqual(route.distance_meters, 3100)
        self.assertEqual(route.here_route_id, "route-1")
        self.assertEqual(mock_get.call_args.kwargs["params"]["transportMode"], "bicycle")

    @override_settings(HERE_API_KEY="test-key", HERE_ROUTING_URL="https://router.example.com/v8/routes")
    @patch("apps.delivery.routing_service.requests.get")
    def test_provider_failure_falls_back(self, mock_get):
        import requests
        mock_get.side_effect = requests.ConnectionError("unreachable")

        with self.assertLogs("apps.delivery.routing_service", level="ERROR"):
            route = RouteService.calculate_and_store(self.delivery)

        self.assertEqual(route.source, DeliveryRoute.Source.STRAIGHT_LINE)
        self.assertEqual(DeliveryRoute.objects.filter(delivery=self.delivery).count(), 1)

    @override_settings(HERE_API_KEY="test-key", HERE_ROUTING_URL="https://router.example.com/v8/routes")
    @patch("apps.delivery.routing_service.requests.get")
    def test_repeated_failures_open_the_circuit(self, mock_get):
        import requests
        mock_get.side_effect = requests.Timeout("slow")
        origin, destination = (12.9716, 77.5946), (12.9916, 77.5946)

        with self.assertLogs("apps.delivery.routing_service", level="ERROR"):
            for _ in range(5):
                RouteService.estimate(origin, destination)
        self.assertEqual(mock_get.call_count, 5)

        with self.assertLogs("apps.delivery.routing_service", level="WARNING") as logs:
            _, source = RouteService.estimate(origin, destination)

        self.assertEqual(source, DeliveryRoute.Source.STRAIGHT_LINE)
        self.assertEqual(mock_get.call_count, 5)
        self.assertIn("circuit open", logs.output[0])

    def test_missing_coordinates_skip_routing(self):
        Delivery.objects.filter(pk=self.delivery.pk).update(delivery_latitude=None)
        self.delivery.refresh_from_db()
        self.assertIsNone(RouteService.calculate_and_store(self.delivery))


class RealtimePublishTestCase(TestCase):
    def test_audiences(self):
        with patch("apps.delivery.realtime._group_send", return_value=True) as mock_send:
            realtime.publish(realtime.LOCATION_UPDATE, 7, {"latitude": Decimal("1.5")}, delivery_id=3)

        groups = [c.args[0] for c in mock_send.call_args_list]
        self.assertEqual(groups, ["order.7.customer", "order.7.shopkeeper"])
        event = mock_send.call_args.args[1]
        self.assertEqual(event, {"type": "location_update", "orderId": 7, "deliveryId": 3, "data": {"latitude": "1.5"}})

    def test_status_updates_reach_all_three_roles(self):
        with patch("apps.delivery.realtime._group_send", return_value=True) as mock_send:
            sent = realtime.publish(realtime.STATUS_UPDATE, 7, {"status": "picked_up"})
        self.assertEqual(sent, 3)
        self.assertIn("order.7.delivery_partner", [c.args[0] for c in mock_send.call_args_list])

    def test_direct_events_go_to_user_groups(self):
        with patch("apps.delivery.realtime._group_send", return_value=True) as mock_send:
            realtime.publish_to_users([4, 5], realtime.ASSIGNMENT_BROADCAST, 7, {})
        self.assertEqual([c.args[0] for c in mock_send.call_args_list], ["user.4", "user.5"])

    def test_wrong_routing_is_a_programming_error(self):
        with self.assertRaises(ValueError):
            realtime.publish(realtime.ASSIGNMENT_BROADCAST, 7, {})
        with self.assertRaises(ValueError):
            realtime.publish_to_users([1], realtime.STATUS_UPDATE, 7, {})

    def test_publish_failures_are_logged_not_raised(self):
        with patch("apps.delivery.realtime._group_send", side_effect=ConnectionError("redis down")):
            with self.assertLogs("apps.delivery.realtime", level="ERROR"):
                sent = realtime.publish(realtime.STATUS_UPDATE, 7, {})
        self.assertEqual(sent, 0)


class SessionRegistryTestCase(TestCase):
    def test_register_and_deregister(self):
        registry = realtime.SessionRegistry()
        first = registry.register(1, Role.CUSTOMER)
        second = registry.register(1, Role.CUSTOMER)

        self.assertEqual(len(registry), 2)
        self.assertNotEqual(first.session_id, second.session_id)

        registry.deregister(first)
        self.assertFalse(first.is_active)
        self.assertEqual(registry.sessions_for(1), [second])
        with self.assertRaises(TransportDisconnected):
            registry.require(first)
        with self.assertRaises(TransportDisconnected):
            registry.touch(first)


class DispatchAPITestCase(DispatchFixtureMixin, TestCase):
    def setUp(self):
        self.build_world()
        self.client = APIClient()

    def test_store_owner_broadcasts(self):
        self.client.force_authenticate(user=self.customer)
        response = self.client.post(f"/api/delivery-notifications/{self.order.id}/broadcast")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.shopkeeper)
        response = self.client.post(f"/api/delivery-notifications/{self.order.id}/broadcast")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(len(response.data["offers"]), 2)
        self.assertIsNotNone(response.data["deliveryId"])

    def test_pending_offers_listing(self):
        AssignmentService.broadcast(self.order.id)
        self.client.force_authenticate(user=self.partner_a.user)

        response = self.client.get("/api/delivery-notifications")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]["orderId"], self.order.id)
        self.assertEqual(response.data[0]["notificationData"]["storeName"], "Fresh Mart")

    def test_accept_race_over_http(self):
        AssignmentService.broadcast(self.order.id)

        self.client.force_authenticate(user=self.partner_a.user)
        won = self.client.post(
            f"/api/delivery-notifications/{self.order.id}/accept",
            {"deliveryPartnerId": self.partner_a.id}, format="json",
        )
        again = self.client.post(
            f"/api/delivery-notifications/{self.order.id}/accept",
            {"deliveryPartnerId": self.partner_a.id}, format="json",
        )

        self.client.force_authenticate(user=self.partner_b.user)
        lost = self.client.post(
            f"/api/delivery-notifications/{self.order.id}/accept",
            {"deliveryPartnerId": self.partner_b.id}, format="json",
        )

        self.assertEqual(won.status_code, status.HTTP_200_OK)
        self.assertEqual(won.data["deliveryPartnerId"], self.partner_a.id)
        self.assertEqual(won.data["status"], "assigned")
        self.assertEqual(again.status_code, status.HTTP_200_OK)
        self.assertEqual(again.data["id"], won.data["id"])
        self.assertEqual(lost.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(lost.data["error"]["code"], "already_claimed")

    def test_cannot_act_for_another_partner(self):
        AssignmentService.broadcast(self.order.id)
        self.client.force_authenticate(user=self.partner_b.user)
        response = self.client.post(
            f"/api/delivery-notifications/{self.order.id}/accept",
            {"deliveryPartnerId": self.partner_a.id}, format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(Delivery.objects.get(order=self.order).status, DeliveryStatus.PENDING)

    def test_reject_endpoint(self):
        AssignmentService.broadcast(self.order.id)
        self.client.force_authenticate(user=self.partner_b.user)
        response = self.client.post(
            f"/api/delivery-notifications/{self.order.id}/reject",
            {"deliveryPartnerId": self.partner_b.id}, format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(
            DeliveryNotification.objects.get(delivery_partner=self.partner_b).status, OfferStatus.REJECTED
        )

    def test_customer_cannot_accept(self):
        self.client.force_authenticate(user=self.customer)
        response = self.client.post(
            f"/api/delivery-notifications/{self.order.id}/accept",
            {"deliveryPartnerId": self.partner_a.id}, format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


class TrackingAPITestCase(DispatchFixtureMixin, TestCase):
    def setUp(self):
        self.build_world()
        self.client = APIClient()
        self.delivery = self.claimed_delivery()

    def test_illegal_status_returns_current_status(self):
        self.client.force_authenticate(user=self.partner_a.user)
        response = self.client.patch(
            f"/api/tracking/status/{self.delivery.id}", {"status": "delivered"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["code"], "illegal_transition")
        self.assertEqual(response.data["error"]["details"]["current_status"], "assigned")

    def test_status_update_returns_delivery_and_history(self):
        self.client.force_authenticate(user=self.partner_a.user)
        response = self.client.patch(
            f"/api/tracking/status/{self.delivery.id}",
            {"status": "picked_up", "description": "Bag sealed", "latitude": 12.9716, "longitude": 77.5946},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["delivery"]["status"], "picked_up")
        self.assertEqual(response.data["history"]["status"], "picked_up")
        self.assertEqual(response.data["history"]["updatedBy"], self.partner_a.user_id)

    def test_unauthorized_status_update(self):
        self.client.force_authenticate(user=self.partner_b.user)
        response = self.client.patch(
            f"/api/tracking/status/{self.delivery.id}", {"status": "picked_up"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_location_ping(self):
        self.client.force_authenticate(user=self.partner_a.user)
        response = self.client.post("/api/tracking/location", {
            "deliveryId": self.delivery.id,
            "deliveryPartnerId": self.partner_a.id,
            "latitude": 12.98,
            "longitude": 77.59,
            "heading": 45,
        }, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["isActive"])

    def test_location_ping_from_other_partner_is_401(self):
        self.client.force_authenticate(user=self.partner_b.user)
        response = self.client.post("/api/tracking/location", {
            "deliveryId": self.delivery.id,
            "deliveryPartnerId": self.partner_b.id,
            "latitude": 12.98,
            "longitude": 77.59,
        }, format="json")
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(response.data["error"]["code"], "unauthorized_location_update")
        self.assertFalse(DeliveryLocationTracking.objects.exists())

    def test_location_ping_out_of_range(self):
        self.client.force_authenticate(user=self.partner_a.user)
        response = self.client.post("/api/tracking/location", {
            "deliveryId": self.delivery.id,
            "deliveryPartnerId": self.partner_a.id,
            "latitude": 95,
            "longitude": 77.59,
        }, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["code"], "invalid_input")

    @override_settings(HERE_API_KEY="")
    def test_tracking_aggregate(self):
        LocationService.ingest(self.delivery.id, self.partner_a.id, 12.98, 77.59)
        RouteService.calculate_and_store(self.delivery)

        self.client.force_authenticate(user=self.customer)
        response = self.client.get(f"/api/tracking/{self.delivery.id}")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["delivery"]["id"], self.delivery.id)
        self.assertEqual(response.data["currentLocation"]["currentLatitude"], Decimal("12.98000000"))
        self.assertEqual(response.data["route"]["distanceMeters"], 2224)
        self.assertEqual([h["status"] for h in response.data["statusHistory"]], ["assigned"])

    def test_tracking_hidden_from_strangers(self):
        stranger = AccountService.create_with_role("+919200000099", Role.CUSTOMER)
        self.client.force_authenticate(user=stranger)
        response = self.client.get(f"/api/tracking/{self.delivery.id}")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    @override_settings(HERE_API_KEY="")
    def test_route_endpoint(self):
        self.client.force_authenticate(user=self.shopkeeper)
        response = self.client.post(f"/api/tracking/route/{self.delivery.id}")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["source"], "straight_line")

    def test_active_deliveries_and_rating(self):
        self.client.force_authenticate(user=self.partner_a.user)
        response = self.client.get("/api/deliveries/active")
        self.assertEqual([d["id"] for d in response.data], [self.delivery.id])

        self.advance(self.delivery, DeliveryStatus.PICKED_UP, DeliveryStatus.DELIVERED)
        response = self.client.get("/api/deliveries/active")
        self.assertEqual(response.data, [])

        self.client.force_authenticate(user=self.customer)
        response = self.client.post(f"/api/deliveries/{self.delivery.id}/rate", {"rating": 5}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["customerRating"], 5)

        response = self.client.post(f"/api/deliveries/{self.delivery.id}/rate", {"rating": 9}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["code"], "validation_error")


class WebSocketHubTestCase(DispatchFixtureMixin, TransactionTestCase):
    """
    Channels consumer against the in-memory layer.
    """

    def setUp(self):
        self.build_world()
        self.delivery = Delivery.objects.create(
            order=self.order,
            delivery_partner=self.partner_a,
            status=DeliveryStatus.ASSIGNED,
            pickup_address=self.store.address,
            delivery_address=self.order.shipping_address,
            delivery_fee=Decimal("41.10"),
            assigned_at=timezone.now(),
        )
        self.application = URLRouter(websocket_urlpatterns)

    async def open_socket(self):
        communicator = WebsocketCommunicator(self.application, "/ws")
        connected, _ = await communicator.connect()
        self.assertTrue(connected)
        return communicator

    async def authenticate(self, communicator, user, user_type):
        token = str(await sync_to_async(AccessToken.for_user)(user))
        await communicator.send_json_to({"type": "auth", "userId": user.id, "userType": user_type, "token": token})
        return await communicator.receive_json_from()

    async def test_ping_pong(self):
        communicator = await self.open_socket()
        await communicator.send_json_to({"type": "ping"})
        self.assertEqual(await communicator.receive_json_from(), {"type": "pong"})
        await communicator.disconnect()

    async def test_auth_success_registers_session(self):
        communicator = await self.open_socket()
        reply = await self.authenticate(communicator, self.customer, Role.CUSTOMER)

        self.assertEqual(reply["type"], "auth_success")
        self.assertEqual(reply["userId"], self.customer.id)
        self.assertTrue(reply["sessionId"])
        self.assertEqual(len(realtime.registry.sessions_for(self.customer.id)), 1)

        await communicator.disconnect()
        self.assertEqual(realtime.registry.sessions_for(self.customer.id), [])

    async def test_auth_rejects_bad_token_and_wrong_role(self):
        communicator = await self.open_socket()
        await communicator.send_json_to({"type": "auth", "userId": self.customer.id, "userType": "customer", "token": "junk"})
        reply = await communicator.receive_json_from()
        self.assertEqual(reply["type"], "error")
        self.assertEqual(reply["code"], "auth_failed")

        reply = await self.authenticate(communicator, self.customer, Role.DELIVERY_PARTNER)
        self.assertEqual(reply["code"], "auth_failed")
        await communicator.disconnect()

    async def test_token_must_match_claimed_user(self):
        communicator = await self.open_socket()
        token = str(await sync_to_async(AccessToken.for_user)(self.customer))
        await communicator.send_json_to({
            "type": "auth", "userId": self.shopkeeper.id, "userType": "customer", "token": token,
        })
        reply = await communicator.receive_json_from()
        self.assertEqual(reply["code"], "auth_failed")
        await communicator.disconnect()

    async def test_subscribe_requires_auth(self):
        communicator = await self.open_socket()
        await communicator.send_json_to({"type": "subscribe", "orderId": self.order.id})
        reply = await communicator.receive_json_from()
        self.assertEqual(reply["code"], "not_authenticated")
        await communicator.disconnect()

    async def test_customer_receives_location_updates(self):
        communicator = await self.open_socket()
        await self.authenticate(communicator, self.customer, Role.CUSTOMER)

        await communicator.send_json_to({"type": "subscribe", "deliveryId": self.delivery.id})
        reply = await communicator.receive_json_from()
        self.assertEqual(reply, {"type": "subscribed", "orderId": self.order.id, "deliveryId": self.delivery.id})

        await database_sync_to_async(realtime.publish)(
            realtime.LOCATION_UPDATE, self.order.id, {"latitude": Decimal("12.98")}, delivery_id=self.delivery.id
        )
        event = await communicator.receive_json_from()
        self.assertEqual(event["type"], "location_update")
        self.assertEqual(event["deliveryId"], self.delivery.id)
        self.assertEqual(event["data"], {"latitude": "12.98"})
        await communicator.disconnect()

    async def test_partner_does_not_receive_location_updates(self):
        communicator = await self.open_socket()
        await self.authenticate(communicator, self.partner_a.user, Role.DELIVERY_PARTNER)
        await communicator.send_json_to({"type": "subscribe", "orderId": self.order.id})
        self.assertEqual((await communicator.receive_json_from())["type"], "subscribed")

        await database_sync_to_async(realtime.publish)(realtime.LOCATION_UPDATE, self.order.id, {})
        self.assertTrue(await communicator.receive_nothing())

        await database_sync_to_async(realtime.publish)(realtime.STATUS_UPDATE, self.order.id, {"status": "picked_up"})
        self.assertEqual((await communicator.receive_json_from())["type"], "status_update")
        await communicator.disconnect()

    async def test_cannot_watch_someone_elses_order(self):
        communicator = await self.open_socket()
        await self.authenticate(communicator, self.partner_b.user, Role.DELIVERY_PARTNER)
        await communicator.send_json_to({"type": "subscribe", "orderId": self.order.id})
        reply = await communicator.receive_json_from()
        self.assertEqual(reply["code"], "forbidden")
        await communicator.disconnect()

    async def test_assignment_broadcast_reaches_partner_socket(self):
        communicator = await self.open_socket()
        await self.authenticate(communicator, self.partner_b.user, Role.DELIVERY_PARTNER)

        await database_sync_to_async(realtime.publish_to_users)(
            [self.partner_b.user_id], realtime.ASSIGNMENT_BROADCAST, self.order.id, {"storeName": "Fresh Mart"}
        )
        event = await communicator.receive_json_from()
        self.assertEqual(event["type"], "assignment_broadcast")
        self.assertEqual(event["data"]["storeName"], "Fresh Mart")
        await communicator.disconnect()

    async def test_malformed_messages(self):
        communicator = await self.open_socket()
        await communicator.send_to(text_data="not json")
        self.assertEqual((await communicator.receive_json_from())["code"], "invalid_message")
        await communicator.send_json_to({"type": "teleport"})
        self.assertEqual((await communicator.receive_json_from())["code"], "unknown_message_type")
        await communicator.disconnect()


class ConcurrentAcceptTestCase(DispatchFixtureMixin, TransactionTestCase):
    """
    Real threads, one database connection each. On SQLite the writers queue on
    BEGIN IMMEDIATE; on PostgreSQL they race on the conditional UPDATE.
    """

    def test_exactly_one_of_many_concurrent_accepts_wins(self):
        self.build_world()
        partners = [self.partner_a, self.partner_b] + [
            self.make_partner(f"+91920000010{i}") for i in range(4)
        ]
        AssignmentService.broadcast(self.order.id)

        barrier = threading.Barrier(len(partners))
        results = {}

        def attempt(partner_id):
            try:
                barrier.wait(timeout=10)
                AssignmentService.accept(self.order.id, partner_id)
                results[partner_id] = "won"
            except AlreadyClaimedError:
                results[partner_id] = "lost"
            except Exception as exc:
                results[partner_id] = f"error: {exc!r}"
            finally:
                connection.close()

        with patch("apps.delivery.realtime.publish"), patch("apps.delivery.realtime.publish_to_users"):
            threads = [threading.Thread(target=attempt, args=(p.id,)) for p in partners]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=60)

        self.assertEqual(len(results), len(partners), results)
        winners = [pid for pid, outcome in results.items() if outcome == "won"]
        self.assertEqual(len(winners), 1, results)
        self.assertEqual(list(results.values()).count("lost"), len(partners) - 1, results)

        delivery = Delivery.objects.get(order=self.order)
        self.assertEqual(delivery.status, DeliveryStatus.ASSIGNED)
        self.assertEqual(delivery.delivery_partner_id, winners[0])
        self.assertEqual(
            set(DeliveryNotification.objects.filter(order=self.order).exclude(
                delivery_partner_id=winners[0]
            ).values_list("status", flat=True)),
            {OfferStatus.EXPIRED},
        )
        self.assertEqual(DeliveryStatusHistory.objects.filter(delivery=delivery).count(), 1)
