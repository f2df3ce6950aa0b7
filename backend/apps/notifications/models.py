# apps/notifications/models.py
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models


class NotificationType(models.TextChoices):
    DELIVERY_ASSIGNMENT = "delivery_assignment", "Delivery Assignment"
    DELIVERY_TAKEN = "delivery_taken", "Delivery Taken"
    DELIVERY_UPDATE = "delivery_update", "Delivery Update"
    ORDER_UPDATE = "order_update", "Order Update"


class Notification(models.Model):
    """
    Durable, user-visible record of an event. The payload in `data` has been
    validated against the schema registered for `type`.
    """
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="notifications",
    )
    order = models.ForeignKey(
        "orders.Order",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="notifications",
    )

    type = models.CharField(max_length=30, choices=NotificationType.choices)
    title = models.CharField(max_length=100)
    message = models.TextField()
    data = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)

    is_read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user", "-created_at"], name="notification_user_recent_idx"),
        ]

    def __str__(self):
        return f"{self.type} -> {self.user_id}"
