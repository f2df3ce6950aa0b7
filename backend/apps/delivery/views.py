# apps/delivery/views.py
from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from apps.accounts.permissions import IsDeliveryPartner
from apps.orders.models import Order
from .models import Delivery
from .routing_service import RouteService
from .serializers import (
    DeliveryOfferSerializer,
    DeliverySerializer,
    LocationPingSerializer,
    LocationSerializer,
    OfferResponseSerializer,
    RatingSerializer,
    RouteSerializer,
    StatusHistorySerializer,
    StatusUpdateSerializer,
    TrackingSerializer,
)
from .services import AssignmentService, DeliveryService, LocationService, StatusTransitionService
from .states import DeliveryStatus


def _error(code, message, http_status):
    return Response({"error": {"code": code, "message": message}}, status=http_status)


def _own_partner_profile(user, delivery_partner_id=None):
    """
    The caller's partner profile, or None when they have none or claim somebody else's id.
    """
    profile = getattr(user, "delivery_partner_profile", None)
    if profile is None:
        return None
    if delivery_partner_id is not None and profile.id != delivery_partner_id:
        return None
    return profile


def _tracked_delivery(delivery_id):
    return get_object_or_404(
        Delivery.objects.select_related("order__store", "delivery_partner"),
        id=delivery_id,
    )


class PendingOffersAPIView(APIView):
    """
    Partner: offers still open for acceptance.
    Polled by the partner app as a fallback to the socket.
    """
    permission_classes = [IsAuthenticated, IsDeliveryPartner]

    def get(self, request):
        profile = _own_partner_profile(request.user)
        if profile is None:
            return _error("not_a_partner", "User is not a registered delivery partner", status.HTTP_403_FORBIDDEN)

        offers = AssignmentService.pending_offers_for(profile)
        return Response(DeliveryOfferSerializer(offers, many=True).data)


class BroadcastDeliveryAPIView(APIView):
    """
    Store owner / staff: (re)offer a ready order to available partners.
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, order_id):
        order = get_object_or_404(Order.objects.select_related("store"), id=order_id)
        if not (request.user.is_staff or order.store.owner_id == request.user.id):
            return _error("forbidden", "Only the store owner can dispatch this order", status.HTTP_403_FORBIDDEN)

        offers = AssignmentService.broadcast(order.id)
        delivery = order.deliveries.filter(status=DeliveryStatus.PENDING).first()

        return Response(
            {
                "orderId": order.id,
                "deliveryId": delivery.id if delivery else None,
                "offers": DeliveryOfferSerializer(offers, many=True).data,
            },
            status=status.HTTP_201_CREATED,
        )


class AcceptDeliveryAPIView(APIView):
    """
    Partner: first accept wins. Losers get 409 already_claimed.
    """
    permission_classes = [IsAuthenticated, IsDeliveryPartner]

    def post(self, request, order_id):
        serializer = OfferResponseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        partner_id = serializer.validated_data["deliveryPartnerId"]
        if _own_partner_profile(request.user, partner_id) is None:
            return _error("partner_mismatch", "deliveryPartnerId does not belong to you", status.HTTP_403_FORBIDDEN)

        delivery, _ = AssignmentService.accept(order_id, partner_id)
        return Response(DeliverySerializer(delivery).data)


class RejectDeliveryAPIView(APIView):
    permission_classes = [IsAuthenticated, IsDeliveryPartner]

    def post(self, request, order_id):
        serializer = OfferResponseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        partner_id = serializer.validated_data["deliveryPartnerId"]
        if _own_partner_profile(request.user, partner_id) is None:
            return _error("partner_mismatch", "deliveryPartnerId does not belong to you", status.HTTP_403_FORBIDDEN)

        AssignmentService.reject(order_id, partner_id)
        return Response({"status": "rejected"})


class LocationPingAPIView(APIView):
    """
    Partner: high-frequency GPS updates.
    Secured with ScopedRateThrottle & WebSocket broadcast.
    """
    permission_classes = [IsAuthenticated]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = 'location_ping'

    def post(self, request):
        serializer = LocationPingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        if _own_partner_profile(request.user, data["deliveryPartnerId"]) is None:
            return _error(
                "unauthorized_location_update",
                "deliveryPartnerId does not belong to you",
                status.HTTP_401_UNAUTHORIZED,
            )

        point = LocationService.ingest(
            data["deliveryId"],
            data["deliveryPartnerId"],
            data["latitude"],
            data["longitude"],
            heading=data.get("heading"),
            speed=data.get("speed"),
            accuracy=data.get("accuracy"),
        )
        return Response(LocationSerializer(point).data)


class DeliveryStatusAPIView(APIView):
    permission_classes = [IsAuthenticated]

    def patch(self, request, delivery_id):
        delivery = _tracked_delivery(delivery_id)

        serializer = StatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        location = None
        if data.get("latitude") is not None or data.get("longitude") is not None:
            location = (data.get("latitude"), data.get("longitude"))

        history = StatusTransitionService.transition(
            delivery.id,
            data["status"],
            request.user,
            location=location,
            description=data["description"],
            metadata=data["metadata"],
        )

        delivery.refresh_from_db()
        return Response({
            "delivery": DeliverySerializer(delivery).data,
            "history": StatusHistorySerializer(history).data,
        })


class DeliveryTrackingAPIView(APIView):
    """
    Aggregate view for tracking screens: delivery, current location, route and history.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request, delivery_id):
        delivery = _tracked_delivery(delivery_id)
        if not DeliveryService.can_view(delivery, request.user):
            return _error("forbidden", "You cannot view this delivery", status.HTTP_403_FORBIDDEN)

        snapshot = DeliveryService.tracking_snapshot(delivery)
        return Response(TrackingSerializer(snapshot).data)


class DeliveryRouteAPIView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, delivery_id):
        delivery = _tracked_delivery(delivery_id)
        if not DeliveryService.can_view(delivery, request.user):
            return _error("forbidden", "You cannot view this delivery", status.HTTP_403_FORBIDDEN)

        route = RouteService.calculate_and_store(delivery)
        if route is None:
            return _error(
                "missing_coordinates",
                "Pickup and drop-off coordinates are required for routing",
                status.HTTP_400_BAD_REQUEST,
            )
        return Response(RouteSerializer(route).data)


class MyActiveDeliveriesAPIView(APIView):
    """
    Partner: deliveries currently in hand.
    """
    permission_classes = [IsAuthenticated, IsDeliveryPartner]

    def get(self, request):
        profile = _own_partner_profile(request.user)
        if profile is None:
            return _error("not_a_partner", "User is not a registered delivery partner", status.HTTP_403_FORBIDDEN)

        deliveries = DeliveryService.active_for_partner(profile)
        return Response(DeliverySerializer(deliveries, many=True).data)


class RateDeliveryAPIView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, delivery_id):
        get_object_or_404(Delivery, id=delivery_id)

        serializer = RatingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        delivery = DeliveryService.rate(
            delivery_id,
            request.user,
            serializer.validated_data["rating"],
            serializer.validated_data["feedback"],
        )
        return Response(DeliverySerializer(delivery).data)
