# apps/notifications/views.py
from rest_framework import generics, status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .models import Notification
from .serializers import NotificationSerializer
from .services import NotificationService


class MyNotificationListAPIView(generics.ListAPIView):
    """
    Caller's notification history, newest first. Filter with ?is_read=false or ?type=...
    """
    permission_classes = [IsAuthenticated]
    serializer_class = NotificationSerializer
    filterset_fields = ["is_read", "type"]

    def get_queryset(self):
        return Notification.objects.filter(user=self.request.user).order_by("-created_at")


class MarkNotificationReadAPIView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, notification_id):
        if not Notification.objects.filter(id=notification_id, user=request.user).exists():
            return Response(
                {"error": {"code": "not_found", "message": "Notification not found"}},
                status=status.HTTP_404_NOT_FOUND,
            )
        NotificationService.mark_read(request.user, notification_id)
        return Response({"status": "read"})
