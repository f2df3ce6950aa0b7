# apps/delivery/urls.py
from django.urls import path
from .views import (
    PendingOffersAPIView,
    BroadcastDeliveryAPIView,
    AcceptDeliveryAPIView,
    RejectDeliveryAPIView,
    LocationPingAPIView,
    DeliveryStatusAPIView,
    DeliveryTrackingAPIView,
    DeliveryRouteAPIView,
    MyActiveDeliveriesAPIView,
    RateDeliveryAPIView,
)

urlpatterns = [
    # Dispatch
    path("delivery-notifications", PendingOffersAPIView.as_view()),
    path("delivery-notifications/<int:order_id>/broadcast", BroadcastDeliveryAPIView.as_view()),
    path("delivery-notifications/<int:order_id>/accept", AcceptDeliveryAPIView.as_view()),
    path("delivery-notifications/<int:order_id>/reject", RejectDeliveryAPIView.as_view()),

    # Tracking
    path("tracking/location", LocationPingAPIView.as_view()),
    path("tracking/status/<int:delivery_id>", DeliveryStatusAPIView.as_view()),
    path("tracking/route/<int:delivery_id>", DeliveryRouteAPIView.as_view()),
    path("tracking/<int:delivery_id>", DeliveryTrackingAPIView.as_view()),

    # Partner / customer
    path("deliveries/active", MyActiveDeliveriesAPIView.as_view()),
    path("deliveries/<int:delivery_id>/rate", RateDeliveryAPIView.as_view()),
]
