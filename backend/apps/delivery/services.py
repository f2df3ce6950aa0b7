# apps/delivery/services.py
import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from rest_framework import status

from apps.notifications.models import NotificationType
from apps.notifications.services import NotificationService
from apps.orders.models import Order, OrderStatus
from apps.partners.services import PartnerService
from apps.pricing.services import DeliveryFeeService, to_money
from apps.utils.exceptions import (
    AlreadyClaimedError,
    BusinessLogicException,
    IllegalTransitionError,
    InvalidInputError,
    OfferExpiredError,
    UnauthorizedLocationUpdateError,
    UnauthorizedStatusUpdateError,
)
from . import realtime
from .geo import distance_km
from .models import (
    Delivery,
    DeliveryLocationTracking,
    DeliveryNotification,
    DeliveryRoute,
    DeliveryStatusHistory,
)
from .states import (
    ACTIVE_STATUSES,
    CUSTOMER_NOTIFY_STATUSES,
    ORDER_STATUS_MIRROR,
    RESERVED_TRANSITIONS,
    SHOPKEEPER_NOTIFY_STATUSES,
    TERMINAL_STATUSES,
    TIMESTAMP_FIELDS,
    TRACKABLE_STATUSES,
    DeliveryStatus,
    OfferStatus,
    can_transition,
)

logger = logging.getLogger(__name__)

COORDINATE_PLACES = Decimal("0.00000001")
METRIC_PLACES = Decimal("0.01")


def offer_ttl():
    return timedelta(seconds=getattr(settings, "DELIVERY_OFFER_TTL_SECONDS", 90))


def estimate_minutes(distance):
    """30 minutes of handling plus 8 minutes per km."""
    if distance is None:
        return None
    return int((Decimal("30") + Decimal(distance) * 8).to_integral_value(rounding=ROUND_HALF_UP))


def partner_share(fee):
    commission = Decimal(str(getattr(settings, "DELIVERY_PLATFORM_COMMISSION", "0.20")))
    return to_money(fee * (Decimal("1") - commission))


def _number(value, name, low=None, high=None, places=METRIC_PLACES, required=True):
    if value is None:
        if required:
            raise InvalidInputError(f"{name} is required", details={"field": name})
        return None
    if isinstance(value, bool):
        raise InvalidInputError(f"{name} must be a number", details={"field": name})
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidInputError(f"{name} must be a number", details={"field": name, "value": str(value)})
    if not number.is_finite():
        raise InvalidInputError(f"{name} must be finite", details={"field": name})
    if (low is not None and number < low) or (high is not None and number > high):
        raise InvalidInputError(
            f"{name} must be between {low} and {high}" if high is not None else f"{name} must be >= {low}",
            details={"field": name, "value": str(value)},
        )
    return number.quantize(places, rounding=ROUND_HALF_UP)


def parse_position(latitude, longitude, required=True):
    lat = _number(latitude, "latitude", -90, 90, COORDINATE_PLACES, required)
    lng = _number(longitude, "longitude", -180, 180, COORDINATE_PLACES, required)
    if (lat is None) != (lng is None):
        raise InvalidInputError("latitude and longitude must be sent together")
    return lat, lng


def offer_not_found():
    return BusinessLogicException(
        "No delivery offer found for this partner.",
        code="offer_not_found",
        status_code=status.HTTP_404_NOT_FOUND,
    )


def _notify_status_change(delivery, new_status, description):
    """
    Durable notifications for the customer and shopkeeper.
    The customer hears about the order when the status moves it, otherwise about the delivery.
    """
    order = delivery.order
    delivery_payload = {
        "orderId": order.id,
        "deliveryId": delivery.id,
        "status": new_status,
        "description": description,
    }

    if new_status in CUSTOMER_NOTIFY_STATUSES:
        order_status = ORDER_STATUS_MIRROR.get(new_status)
        if order_status:
            NotificationService.notify_safely(
                order.customer,
                NotificationType.ORDER_UPDATE,
                {"orderId": order.id, "status": order_status, "description": description},
                order=order,
            )
        else:
            NotificationService.notify_safely(
                order.customer, NotificationType.DELIVERY_UPDATE, delivery_payload, order=order
            )

    if new_status in SHOPKEEPER_NOTIFY_STATUSES:
        NotificationService.notify_safely(
            order.store.owner, NotificationType.DELIVERY_UPDATE, delivery_payload, order=order
        )


def _announce_status(delivery, history):
    realtime.publish(
        realtime.STATUS_UPDATE,
        delivery.order_id,
        {
            "status": history.status,
            "description": history.description,
            "timestamp": history.timestamp,
            "deliveryPartnerId": delivery.delivery_partner_id,
            "latitude": history.latitude,
            "longitude": history.longitude,
        },
        delivery_id=delivery.id,
    )
    _notify_status_change(delivery, history.status, history.description)


def _mirror_order_status(order_id, delivery_status, now):
    order_status = ORDER_STATUS_MIRROR.get(delivery_status)
    if not order_status:
        return 0
    # update() skips post_save, so the ready_for_pickup broadcast hook never fires from here
    return Order.objects.filter(pk=order_id).exclude(
        status__in=[OrderStatus.DELIVERED, OrderStatus.CANCELLED]
    ).update(status=order_status, updated_at=now)


class AssignmentService:
    """
    First-accept-first-serve dispatch.
    A pending delivery is offered to every eligible partner; the Delivery row itself is the
    only contended resource and is claimed with a single conditional UPDATE.
    """

    @staticmethod
    def _open_delivery(order):
        delivery = order.deliveries.exclude(status__in=TERMINAL_STATUSES).first()
        if delivery:
            return delivery

        store = order.store
        distance = distance_km(store.latitude, store.longitude, order.delivery_latitude, order.delivery_longitude)
        if distance is None:
            logger.warning(f"Order {order.id} has no coordinates for both ends, quoting the minimum fee")
        quote = DeliveryFeeService.calculate(distance if distance is not None else Decimal("0"))

        delivery = Delivery.objects.create(
            order=order,
            status=DeliveryStatus.PENDING,
            pickup_address=store.address,
            delivery_address=order.shipping_address,
            pickup_latitude=store.latitude,
            pickup_longitude=store.longitude,
            delivery_latitude=order.delivery_latitude,
            delivery_longitude=order.delivery_longitude,
            delivery_fee=quote["fee"],
            partner_earnings=partner_share(quote["fee"]),
            estimated_distance=distance,
            estimated_time=estimate_minutes(distance),
            special_instructions=order.special_instructions,
        )
        logger.info(f"Delivery {delivery.id} opened for order {order.id} (fee {delivery.delivery_fee})")
        return delivery

    @staticmethod
    def assignment_payload(order, delivery, expires_at):
        return {
            "orderId": order.id,
            "deliveryId": delivery.id,
            "storeName": order.store.name,
            "pickupAddress": delivery.pickup_address,
            "deliveryAddress": delivery.delivery_address,
            "deliveryFee": delivery.delivery_fee,
            "estimatedEarnings": delivery.partner_earnings,
            "estimatedDistance": delivery.estimated_distance,
            "estimatedTime": delivery.estimated_time,
            "expiresAt": expires_at,
        }

    @staticmethod
    def broadcast(order_id):
        """
        Opens (or reuses) the pending delivery for the order and offers it to every
        eligible partner that does not already hold a pending offer.
        Returns the offers created by this call.
        """
        with transaction.atomic():
            order = (
                Order.objects.select_for_update(of=("self",))
                .select_related("store", "customer")
                .get(pk=order_id)
            )
            if order.status in (OrderStatus.DELIVERED, OrderStatus.CANCELLED):
                raise InvalidInputError(f"Order {order.id} is {order.status}", code="order_closed")

            delivery = AssignmentService._open_delivery(order)
            if delivery.status != DeliveryStatus.PENDING:
                raise AlreadyClaimedError(
                    "This order already has a delivery partner.",
                    details={"delivery_id": delivery.id, "status": delivery.status},
                )

            offered = set(
                delivery.offers.filter(status=OfferStatus.PENDING).values_list("delivery_partner_id", flat=True)
            )
            candidates = [p for p in PartnerService.eligible_for(order.store) if p.id not in offered]

            now = timezone.now()
            payload = AssignmentService.assignment_payload(order, delivery, now + offer_ttl())
            snapshot = realtime.jsonable({
                **payload,
                "customerName": order.customer_name,
                "customerPhone": order.customer_phone,
                "orderTotal": order.total_amount,
                "paymentMethod": order.payment_method,
            })

            offers = DeliveryNotification.objects.bulk_create([
                DeliveryNotification(
                    order=order,
                    delivery=delivery,
                    delivery_partner=partner,
                    status=OfferStatus.PENDING,
                    notification_data=snapshot,
                    created_at=now,
                )
                for partner in candidates
            ])

            if not candidates:
                logger.warning(f"No eligible delivery partners for order {order.id} (area '{order.store.area}')")
            else:
                logger.info(f"Order {order.id} offered to {len(candidates)} partners")

            transaction.on_commit(
                lambda: AssignmentService._announce_offers(order, delivery, candidates, payload, snapshot),
                robust=True,
            )

        return offers

    @staticmethod
    def _announce_offers(order, delivery, partners, payload, snapshot):
        from apps.delivery.tasks import calculate_delivery_route

        if partners:
            realtime.publish_to_users(
                [p.user_id for p in partners],
                realtime.ASSIGNMENT_BROADCAST,
                order.id,
                snapshot,
                delivery_id=delivery.id,
            )
        for partner in partners:
            NotificationService.notify_safely(
                partner.user, NotificationType.DELIVERY_ASSIGNMENT, payload, order=order
            )

        if not hasattr(delivery, "route"):
            try:
                calculate_delivery_route.delay(delivery.id)
            except Exception as e:
                logger.error(f"Could not queue route calculation for delivery {delivery.id}: {e}")

    @staticmethod
    def accept(order_id, delivery_partner_id):
        """
        Claims the order's pending delivery for the partner.
        Returns (delivery, claimed); claimed is False when this partner already holds it.
        Losers get AlreadyClaimedError and their offer is expired.
        """
        now = timezone.now()
        outcome = None

        with transaction.atomic():
            offer = (
                DeliveryNotification.objects.select_related("delivery_partner", "delivery")
                .filter(order_id=order_id, delivery_partner_id=delivery_partner_id)
                .order_by("-created_at", "-id")
                .first()
            )
            if offer is None:
                raise offer_not_found()

            delivery = offer.delivery
            partner = offer.delivery_partner

            if offer.status == OfferStatus.ACCEPTED:
                if delivery.delivery_partner_id == partner.id and delivery.status not in TERMINAL_STATUSES:
                    return delivery, False
                raise OfferExpiredError(
                    "This delivery is no longer active.",
                    details={"delivery_id": delivery.id, "status": delivery.status},
                )

            if offer.status == OfferStatus.REJECTED:
                raise OfferExpiredError("You declined this delivery.")

            stale = offer.status == OfferStatus.PENDING and offer.created_at < now - offer_ttl()
            if offer.status == OfferStatus.EXPIRED or stale:
                if stale:
                    DeliveryNotification.objects.filter(pk=offer.pk, status=OfferStatus.PENDING).update(
                        status=OfferStatus.EXPIRED, responded_at=now
                    )
                claimed_elsewhere = Delivery.objects.filter(pk=delivery.pk).exclude(
                    status__in=[DeliveryStatus.PENDING, DeliveryStatus.CANCELLED]
                ).exists()
                outcome = "lost" if claimed_elsewhere else "expired"
            else:
                max_active = getattr(settings, "DELIVERY_MAX_ACTIVE_PER_PARTNER", 3)
                if PartnerService.active_delivery_count(partner) >= max_active:
                    raise BusinessLogicException(
                        f"You already have {max_active} active deliveries.",
                        code="partner_at_capacity",
                        status_code=status.HTTP_409_CONFLICT,
                    )

                # The claim. Only one concurrent caller can match status=pending with no partner.
                claimed = Delivery.objects.filter(
                    pk=delivery.pk,
                    order_id=order_id,
                    status=DeliveryStatus.PENDING,
                    delivery_partner__isnull=True,
                ).update(
                    status=DeliveryStatus.ASSIGNED,
                    delivery_partner_id=partner.id,
                    assigned_at=now,
                    updated_at=now,
                )

                if claimed:
                    outcome = "won"
                    delivery, losers, history = AssignmentService._settle_win(offer, partner, now)
                    transaction.on_commit(
                        lambda: AssignmentService._announce_win(delivery, history, losers),
                        robust=True,
                    )
                else:
                    DeliveryNotification.objects.filter(pk=offer.pk, status=OfferStatus.PENDING).update(
                        status=OfferStatus.EXPIRED, responded_at=now
                    )
                    outcome = "lost"

        if outcome == "lost":
            logger.info(f"Partner {delivery_partner_id} lost the race for order {order_id}")
            raise AlreadyClaimedError("This order has already been taken by another partner.")
        if outcome == "expired":
            raise OfferExpiredError("This delivery offer has expired.")

        logger.info(f"Partner {delivery_partner_id} won order {order_id} (delivery {delivery.id})")
        return delivery, True

    @staticmethod
    def _settle_win(offer, partner, now):
        DeliveryNotification.objects.filter(pk=offer.pk).update(status=OfferStatus.ACCEPTED, responded_at=now)

        siblings = DeliveryNotification.objects.filter(
            delivery_id=offer.delivery_id, status=OfferStatus.PENDING
        ).exclude(pk=offer.pk)
        losers = [o.delivery_partner.user for o in siblings.select_related("delivery_partner__user")]
        siblings.update(status=OfferStatus.EXPIRED, responded_at=now)

        history = DeliveryStatusHistory.objects.create(
            delivery_id=offer.delivery_id,
            status=DeliveryStatus.ASSIGNED,
            description="Accepted by delivery partner",
            updated_by_id=partner.user_id,
            timestamp=now,
        )
        _mirror_order_status(offer.order_id, DeliveryStatus.ASSIGNED, now)

        delivery = Delivery.objects.select_related(
            "order__store__owner", "order__customer", "delivery_partner__user"
        ).get(pk=offer.delivery_id)
        return delivery, losers, history

    @staticmethod
    def _announce_win(delivery, history, losers):
        if losers:
            realtime.publish_to_users(
                [user.id for user in losers],
                realtime.ASSIGNMENT_TAKEN,
                delivery.order_id,
                {"orderId": delivery.order_id, "deliveryId": delivery.id},
                delivery_id=delivery.id,
            )
        for user in losers:
            NotificationService.notify_safely(
                user,
                NotificationType.DELIVERY_TAKEN,
                {"orderId": delivery.order_id, "deliveryId": delivery.id},
                order=delivery.order,
            )

        _announce_status(delivery, history)

    @staticmethod
    def reject(order_id, delivery_partner_id):
        """
        Declines the partner's own pending offer. Other candidates are untouched; repeating is a no-op.
        """
        offers = DeliveryNotification.objects.filter(order_id=order_id, delivery_partner_id=delivery_partner_id)
        if not offers.exists():
            raise offer_not_found()

        rejected = offers.filter(status=OfferStatus.PENDING).update(
            status=OfferStatus.REJECTED, responded_at=timezone.now()
        )
        if rejected:
            logger.info(f"Partner {delivery_partner_id} rejected order {order_id}")
        return rejected

    @staticmethod
    def pending_offers_for(partner):
        cutoff = timezone.now() - offer_ttl()
        return (
            DeliveryNotification.objects.select_related("order", "delivery")
            .filter(
                delivery_partner=partner,
                status=OfferStatus.PENDING,
                created_at__gte=cutoff,
                delivery__status=DeliveryStatus.PENDING,
            )
            .order_by("-created_at")
        )

    @staticmethod
    def expire_stale_offers(now=None):
        now = now or timezone.now()
        expired = DeliveryNotification.objects.filter(
            status=OfferStatus.PENDING,
            created_at__lt=now - offer_ttl(),
        ).update(status=OfferStatus.EXPIRED, responded_at=now)
        if expired:
            logger.info(f"Expired {expired} stale delivery offers")
        return expired


class StatusTransitionService:

    @staticmethod
    def _authorize(delivery, actor, new_status):
        if actor is None or not actor.is_authenticated:
            raise UnauthorizedStatusUpdateError("Authentication required to update a delivery.")
        if actor.is_staff:
            return
        if delivery.delivery_partner_id and delivery.delivery_partner.user_id == actor.id:
            return
        order = delivery.order
        if new_status == DeliveryStatus.CANCELLED and actor.id in (order.customer_id, order.store.owner_id):
            return
        raise UnauthorizedStatusUpdateError("You are not allowed to update this delivery.")

    @staticmethod
    def transition(delivery_id, new_status, actor, location=None, description="", metadata=None):
        """
        Moves a delivery to `new_status` and appends the matching history row in one transaction.
        The UPDATE is guarded on the status that was read, so a stale or duplicate request fails
        with IllegalTransitionError instead of overwriting newer state.
        Fan-out and notifications run after commit.
        """
        if new_status not in DeliveryStatus.values:
            raise InvalidInputError(f"Unknown delivery status '{new_status}'", details={"status": new_status})

        latitude, longitude = parse_position(*(location or (None, None)), required=False)

        with transaction.atomic():
            delivery = Delivery.objects.select_related(
                "order__store__owner", "order__customer", "delivery_partner__user"
            ).get(pk=delivery_id)

            StatusTransitionService._authorize(delivery, actor, new_status)

            current = delivery.status
            if (current, new_status) in RESERVED_TRANSITIONS:
                raise IllegalTransitionError(
                    "Deliveries are assigned by accepting an offer.", current, new_status
                )
            if not can_transition(current, new_status):
                raise IllegalTransitionError(
                    f"Cannot move a delivery from '{current}' to '{new_status}'.", current, new_status
                )

            now = timezone.now()
            changes = {"status": new_status, "updated_at": now}
            if new_status in TIMESTAMP_FIELDS:
                changes[TIMESTAMP_FIELDS[new_status]] = now
            if new_status == DeliveryStatus.DELIVERED and delivery.assigned_at:
                changes["actual_time"] = int((now - delivery.assigned_at).total_seconds() // 60)

            updated = Delivery.objects.filter(pk=delivery.pk, status=current).update(**changes)
            if not updated:
                persisted = Delivery.objects.filter(pk=delivery.pk).values_list("status", flat=True).first()
                raise IllegalTransitionError(
                    "The delivery changed while this update was in flight.", persisted, new_status
                )

            history = DeliveryStatusHistory.objects.create(
                delivery=delivery,
                status=new_status,
                description=description or "",
                latitude=latitude,
                longitude=longitude,
                updated_by=actor,
                metadata=metadata or {},
                timestamp=now,
            )

            _mirror_order_status(delivery.order_id, new_status, now)

            if new_status == DeliveryStatus.CANCELLED:
                delivery.offers.filter(status=OfferStatus.PENDING).update(
                    status=OfferStatus.EXPIRED, responded_at=now
                )
                DeliveryLocationTracking.objects.filter(delivery=delivery, is_active=True).update(is_active=False)

            if new_status == DeliveryStatus.DELIVERED:
                PartnerService.record_completed_delivery(delivery.delivery_partner_id, delivery.partner_earnings)
                if delivery.picked_up_at:
                    DeliveryRoute.objects.filter(delivery=delivery).update(
                        actual_duration_seconds=int((now - delivery.picked_up_at).total_seconds()),
                        updated_at=now,
                    )
                DeliveryLocationTracking.objects.filter(delivery=delivery, is_active=True).update(is_active=False)

            delivery.refresh_from_db()
            transaction.on_commit(lambda: _announce_status(delivery, history), robust=True)

        logger.info(f"Delivery {delivery.id}: {current} -> {new_status} by user {actor.id}")
        return history


class LocationService:

    @staticmethod
    def ingest(delivery_id, delivery_partner_id, latitude, longitude, heading=None, speed=None, accuracy=None):
        """
        Appends a GPS fix for the assigned partner of an in-progress delivery.
        The previous fixes stay as route history but stop being "current".
        """
        lat, lng = parse_position(latitude, longitude)
        heading = _number(heading, "heading", 0, 360, required=False)
        speed = _number(speed, "speed", 0, required=False)
        accuracy = _number(accuracy, "accuracy", 0, required=False)

        with transaction.atomic():
            delivery = Delivery.objects.select_for_update().filter(pk=delivery_id).first()

            if delivery is None or delivery.delivery_partner_id is None or \
                    delivery.delivery_partner_id != delivery_partner_id:
                raise UnauthorizedLocationUpdateError("You are not assigned to this delivery.")
            if delivery.status not in TRACKABLE_STATUSES:
                raise UnauthorizedLocationUpdateError(
                    f"Location updates are closed for a delivery that is {delivery.status}.",
                    details={"current_status": delivery.status},
                )

            DeliveryLocationTracking.objects.filter(delivery=delivery, is_active=True).update(is_active=False)
            point = DeliveryLocationTracking.objects.create(
                delivery=delivery,
                delivery_partner_id=delivery_partner_id,
                current_latitude=lat,
                current_longitude=lng,
                heading=heading,
                speed=speed,
                accuracy=accuracy,
            )

            transaction.on_commit(lambda: realtime.publish(
                realtime.LOCATION_UPDATE,
                delivery.order_id,
                {
                    "latitude": point.current_latitude,
                    "longitude": point.current_longitude,
                    "heading": point.heading,
                    "speed": point.speed,
                    "accuracy": point.accuracy,
                    "timestamp": point.timestamp,
                },
                delivery_id=delivery.id,
            ))

        return point

    @staticmethod
    def current_location(delivery):
        return delivery.locations.filter(is_active=True).order_by("-timestamp", "-id").first()


class DeliveryService:

    @staticmethod
    def can_view(delivery, user):
        if not (user and user.is_authenticated):
            return False
        if user.is_staff:
            return True
        order = delivery.order
        if user.id in (order.customer_id, order.store.owner_id):
            return True
        return bool(delivery.delivery_partner_id and delivery.delivery_partner.user_id == user.id)

    @staticmethod
    def tracking_snapshot(delivery):
        return {
            "delivery": delivery,
            "current_location": LocationService.current_location(delivery),
            "route": DeliveryRoute.objects.filter(delivery=delivery).first(),
            "status_history": list(delivery.status_history.all()),
        }

    @staticmethod
    def active_for_partner(partner):
        return (
            Delivery.objects.select_related("order", "order__store")
            .filter(delivery_partner=partner, status__in=ACTIVE_STATUSES)
            .order_by("assigned_at")
        )

    @staticmethod
    def rate(delivery_id, customer, rating, feedback=""):
        """
        One rating per delivery, by the order's customer, once it is delivered.
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidInputError("Rating must be a whole number from 1 to 5", details={"rating": rating})

        delivery = Delivery.objects.select_related("order").get(pk=delivery_id)
        if delivery.order.customer_id != customer.id:
            raise BusinessLogicException(
                "Only the customer who placed the order can rate this delivery.",
                code="not_order_customer",
                status_code=status.HTTP_403_FORBIDDEN,
            )
        if delivery.status != DeliveryStatus.DELIVERED:
            raise BusinessLogicException(
                "Only completed deliveries can be rated.", code="delivery_not_completed"
            )

        rated = Delivery.objects.filter(
            pk=delivery.pk, status=DeliveryStatus.DELIVERED, customer_rating__isnull=True
        ).update(customer_rating=rating, customer_feedback=feedback or "", updated_at=timezone.now())
        if not rated:
            raise BusinessLogicException(
                "This delivery has already been rated.",
                code="already_rated",
                status_code=status.HTTP_409_CONFLICT,
            )

        delivery.refresh_from_db()
        return delivery
