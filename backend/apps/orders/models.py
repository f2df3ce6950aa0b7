from django.conf import settings
from django.db import models
from django.utils import timezone

User = settings.AUTH_USER_MODEL


class OrderStatus(models.TextChoices):
    CREATED = "created", "Created"
    CONFIRMED = "confirmed", "Confirmed"
    READY_FOR_PICKUP = "ready_for_pickup", "Ready For Pickup"
    ASSIGNED_FOR_DELIVERY = "assigned_for_delivery", "Assigned For Delivery"
    OUT_FOR_DELIVERY = "out_for_delivery", "Out For Delivery"
    DELIVERED = "delivered", "Delivered"
    CANCELLED = "cancelled", "Cancelled"


class Order(models.Model):
    PAYMENT_METHOD_CHOICES = (
        ("COD", "Cash on Delivery"),
        ("ONLINE", "Online"),
    )

    customer = models.ForeignKey(User, on_delete=models.CASCADE, related_name="orders")
    store = models.ForeignKey('stores.Store', on_delete=models.PROTECT, related_name="orders")

    status = models.CharField(max_length=30, choices=OrderStatus.choices, default=OrderStatus.CREATED)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, default="COD")
    total_amount = models.DecimalField(max_digits=10, decimal_places=2)

    # Snapshot of contact and address at time of order
    customer_name = models.CharField(max_length=100)
    customer_phone = models.CharField(max_length=15)
    shipping_address = models.TextField()
    delivery_latitude = models.DecimalField(max_digits=10, decimal_places=8, null=True, blank=True)
    delivery_longitude = models.DecimalField(max_digits=11, decimal_places=8, null=True, blank=True)
    special_instructions = models.TextField(blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['store', 'status', 'created_at'], name='order_store_status_idx'),
            models.Index(fields=['customer', '-created_at'], name='order_customer_recent_idx'),
        ]

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        if "status" in field_names:
            instance._loaded_status = instance.status
        return instance

    @property
    def has_drop_coordinates(self):
        return self.delivery_latitude is not None and self.delivery_longitude is not None

    def __str__(self):
        return f"Order #{self.id} ({self.status})"


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")

    # Denormalized to preserve order history even if the catalogue changes
    product_name = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField()
    price = models.DecimalField(max_digits=10, decimal_places=2)

    def __str__(self):
        return f"{self.product_name} x {self.quantity}"
