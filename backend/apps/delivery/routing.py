# apps/delivery/routing.py
from django.urls import path

from .consumers import DeliveryTrackingConsumer

websocket_urlpatterns = [
    path("ws", DeliveryTrackingConsumer.as_asgi()),
]
