# apps/partners/urls.py
from django.urls import path
from .views import MyPartnerProfileAPIView, PartnerAvailabilityAPIView

urlpatterns = [
    path("me", MyPartnerProfileAPIView.as_view()),
    path("availability", PartnerAvailabilityAPIView.as_view()),
]
