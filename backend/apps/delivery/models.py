from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

from apps.orders.models import Order
from apps.partners.models import DeliveryPartner
from .states import DeliveryStatus, OfferStatus, TERMINAL_STATUSES, ACTIVE_STATUSES


class Delivery(models.Model):
    """
    One dispatch attempt for an order. At most one non-terminal Delivery exists per order;
    while it is pending nobody holds it.
    """
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name="deliveries",
    )

    delivery_partner = models.ForeignKey(
        DeliveryPartner,
        on_delete=models.PROTECT,
        related_name="deliveries",
        null=True,
        blank=True
    )

    status = models.CharField(max_length=30, choices=DeliveryStatus.choices, default=DeliveryStatus.PENDING)

    pickup_address = models.TextField()
    delivery_address = models.TextField()
    pickup_latitude = models.DecimalField(max_digits=10, decimal_places=8, null=True, blank=True)
    pickup_longitude = models.DecimalField(max_digits=11, decimal_places=8, null=True, blank=True)
    delivery_latitude = models.DecimalField(max_digits=10, decimal_places=8, null=True, blank=True)
    delivery_longitude = models.DecimalField(max_digits=11, decimal_places=8, null=True, blank=True)

    delivery_fee = models.DecimalField(max_digits=10, decimal_places=2)
    partner_earnings = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    estimated_distance = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    estimated_time = models.PositiveIntegerField(null=True, blank=True, help_text="Minutes")
    actual_time = models.PositiveIntegerField(null=True, blank=True, help_text="Minutes")
    special_instructions = models.TextField(blank=True)

    assigned_at = models.DateTimeField(null=True, blank=True)
    picked_up_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)

    customer_rating = models.PositiveSmallIntegerField(null=True, blank=True)
    customer_feedback = models.TextField(blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=~Q(status__in=sorted(TERMINAL_STATUSES)),
                name="one_open_delivery_per_order",
            ),
            models.CheckConstraint(
                condition=~Q(status=DeliveryStatus.PENDING) | Q(delivery_partner__isnull=True),
                name="pending_delivery_unclaimed",
            ),
            models.CheckConstraint(
                condition=Q(customer_rating__isnull=True) | Q(customer_rating__gte=1, customer_rating__lte=5),
                name="delivery_rating_range",
            ),
        ]
        indexes = [
            models.Index(
                fields=['delivery_partner', 'status'],
                name='active_partner_delivery_idx',
                condition=Q(status__in=sorted(ACTIVE_STATUSES))
            ),
            models.Index(fields=['status', 'created_at'], name='delivery_status_created_idx'),
        ]

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def __str__(self):
        return f"Delivery {self.id} (order {self.order_id}) - {self.status}"


class DeliveryNotification(models.Model):
    """
    An offer of a pending delivery to one partner.
    """
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="delivery_offers")
    delivery = models.ForeignKey(Delivery, on_delete=models.CASCADE, related_name="offers")
    delivery_partner = models.ForeignKey(
        DeliveryPartner, on_delete=models.CASCADE, related_name="offers"
    )
    status = models.CharField(max_length=20, choices=OfferStatus.choices, default=OfferStatus.PENDING)
    notification_data = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    responded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["delivery", "delivery_partner"],
                condition=Q(status=OfferStatus.PENDING),
                name="one_pending_offer_per_partner",
            ),
            models.UniqueConstraint(
                fields=["delivery"],
                condition=Q(status=OfferStatus.ACCEPTED),
                name="one_accepted_offer_per_delivery",
            ),
        ]
        indexes = [
            models.Index(fields=["delivery_partner", "status", "-created_at"], name="offer_partner_inbox_idx"),
            models.Index(fields=["status", "created_at"], name="offer_expiry_scan_idx"),
        ]

    def __str__(self):
        return f"Offer order {self.order_id} -> partner {self.delivery_partner_id} ({self.status})"


class DeliveryStatusHistoryQuerySet(models.QuerySet):
    def update(self, **kwargs):
        raise RuntimeError("Delivery status history is append-only (bulk update blocked)")

    def delete(self):
        raise RuntimeError("Delivery status history is append-only (bulk delete blocked)")


class DeliveryStatusHistoryManager(models.Manager):
    def get_queryset(self):
        return DeliveryStatusHistoryQuerySet(self.model, using=self._db)


class DeliveryStatusHistory(models.Model):
    """
    Append-only record of every status a delivery has entered.
    """
    delivery = models.ForeignKey(Delivery, on_delete=models.CASCADE, related_name="status_history")
    status = models.CharField(max_length=30, choices=DeliveryStatus.choices)
    description = models.TextField(blank=True)
    latitude = models.DecimalField(max_digits=10, decimal_places=8, null=True, blank=True)
    longitude = models.DecimalField(max_digits=11, decimal_places=8, null=True, blank=True)
    updated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    metadata = models.JSONField(default=dict, blank=True)
    timestamp = models.DateTimeField(default=timezone.now)

    objects = DeliveryStatusHistoryManager()

    class Meta:
        ordering = ["timestamp", "id"]
        verbose_name_plural = "delivery status history"
        indexes = [
            models.Index(fields=["delivery", "timestamp"], name="history_delivery_time_idx"),
        ]

    def save(self, *args, **kwargs):
        if self.pk:
            raise RuntimeError("Delivery status history is append-only (update blocked)")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise RuntimeError("Delivery status history is append-only (delete blocked)")

    def __str__(self):
        return f"{self.delivery_id}: {self.status} @ {self.timestamp:%H:%M:%S}"


class DeliveryLocationTracking(models.Model):
    delivery = models.ForeignKey(Delivery, on_delete=models.CASCADE, related_name="locations")
    delivery_partner = models.ForeignKey(DeliveryPartner, on_delete=models.CASCADE, related_name="location_pings")
    current_latitude = models.DecimalField(max_digits=10, decimal_places=8)
    current_longitude = models.DecimalField(max_digits=11, decimal_places=8)
    heading = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    speed = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    accuracy = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    timestamp = models.DateTimeField(default=timezone.now)
    is_active = models.BooleanField(default=True)

    class Meta:
        indexes = [
            models.Index(fields=["delivery", "-timestamp"], name="location_latest_idx"),
        ]

    def __str__(self):
        return f"{self.delivery_id} @ {self.current_latitude},{self.current_longitude}"


class DeliveryRoute(models.Model):
    class Source(models.TextChoices):
        HERE = "here", "HERE Routing"
        STRAIGHT_LINE = "straight_line", "Straight-line estimate"

    delivery = models.OneToOneField(Delivery, on_delete=models.CASCADE, related_name="route")
    pickup_latitude = models.DecimalField(max_digits=10, decimal_places=8)
    pickup_longitude = models.DecimalField(max_digits=11, decimal_places=8)
    delivery_latitude = models.DecimalField(max_digits=10, decimal_places=8)
    delivery_longitude = models.DecimalField(max_digits=11, decimal_places=8)
    route_geometry = models.TextField(blank=True)
    distance_meters = models.PositiveIntegerField()
    estimated_duration_seconds = models.PositiveIntegerField()
    actual_duration_seconds = models.PositiveIntegerField(null=True, blank=True)
    source = models.CharField(max_length=20, choices=Source.choices, default=Source.STRAIGHT_LINE)
    here_route_id = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Route for delivery {self.delivery_id} ({self.distance_meters} m)"
