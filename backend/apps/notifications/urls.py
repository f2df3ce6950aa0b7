# apps/notifications/urls.py
from django.urls import path
from .views import MyNotificationListAPIView, MarkNotificationReadAPIView

urlpatterns = [
    path("notifications", MyNotificationListAPIView.as_view()),
    path("notifications/<int:notification_id>/read", MarkNotificationReadAPIView.as_view()),
]
