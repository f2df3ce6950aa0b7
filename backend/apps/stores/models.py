# apps/stores/models.py
from django.db import models
from django.utils import timezone
from django.conf import settings

User = settings.AUTH_USER_MODEL


class Store(models.Model):
    """
    Pickup point for deliveries. Owned by a shopkeeper.
    Catalogue and storefront data live elsewhere; only what dispatch reads is kept here.
    """
    owner = models.ForeignKey(User, on_delete=models.PROTECT, related_name="stores")
    name = models.CharField(max_length=100)
    address = models.TextField()
    phone = models.CharField(max_length=15, blank=True)

    # Matched against DeliveryPartner.delivery_areas; blank means "any partner"
    area = models.CharField(max_length=100, blank=True, db_index=True)

    latitude = models.DecimalField(max_digits=10, decimal_places=8, null=True, blank=True)
    longitude = models.DecimalField(max_digits=11, decimal_places=8, null=True, blank=True)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        indexes = [
            models.Index(fields=["area", "is_active"], name="store_area_active_idx"),
        ]

    @property
    def has_coordinates(self):
        return self.latitude is not None and self.longitude is not None

    def __str__(self):
        return self.name
