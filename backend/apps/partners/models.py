# apps/partners/models.py
from django.conf import settings
from django.db import models
from django.utils import timezone

User = settings.AUTH_USER_MODEL


class DeliveryPartner(models.Model):
    class ApprovalStatus(models.TextChoices):
        PENDING = "pending", "Pending"
        APPROVED = "approved", "Approved"
        REJECTED = "rejected", "Rejected"

    class VehicleType(models.TextChoices):
        BICYCLE = "bicycle", "Bicycle"
        MOTORCYCLE = "motorcycle", "Motorcycle"
        SCOOTER = "scooter", "Scooter"
        CAR = "car", "Car"

    user = models.OneToOneField(
        User, on_delete=models.CASCADE, related_name="delivery_partner_profile"
    )

    vehicle_type = models.CharField(max_length=20, choices=VehicleType.choices, default=VehicleType.MOTORCYCLE)
    vehicle_number = models.CharField(max_length=30, blank=True)
    # Free-text area names matched against Store.area
    delivery_areas = models.JSONField(default=list, blank=True)

    status = models.CharField(max_length=20, choices=ApprovalStatus.choices, default=ApprovalStatus.PENDING)
    approved_by = models.ForeignKey(
        User, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    approval_date = models.DateTimeField(null=True, blank=True)
    rejection_reason = models.TextField(blank=True)

    is_active = models.BooleanField(default=True)
    is_available = models.BooleanField(default=False)

    total_deliveries = models.PositiveIntegerField(default=0)
    total_earnings = models.DecimalField(max_digits=10, decimal_places=2, default=0)

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        indexes = [
            models.Index(
                fields=['status', 'is_active', 'is_available'],
                name='partner_dispatch_idx'
            ),
        ]

    @property
    def is_approved(self):
        return self.status == self.ApprovalStatus.APPROVED

    def serves_area(self, area):
        """A store without an area accepts every partner."""
        if not area:
            return True
        wanted = area.strip().lower()
        return any(str(a).strip().lower() == wanted for a in self.delivery_areas or [])

    def __str__(self):
        return f"Partner {self.user.phone}"
