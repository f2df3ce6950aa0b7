from django.urls import path
from .views import CalculateDeliveryFeeAPIView, DeliveryZoneListAPIView

urlpatterns = [
    path("calculate-delivery-fee", CalculateDeliveryFeeAPIView.as_view()),
    path("delivery-zones", DeliveryZoneListAPIView.as_view()),
]
