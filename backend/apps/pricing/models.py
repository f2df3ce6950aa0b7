from django.db import models
from django.utils import timezone


class DeliveryZone(models.Model):
    """
    Distance band with its own fee formula: base_fee + distance * per_km_rate.
    A band owns (previous band's max_distance, max_distance].
    """
    name = models.CharField(max_length=100, unique=True)
    min_distance = models.DecimalField(max_digits=8, decimal_places=2)
    max_distance = models.DecimalField(max_digits=8, decimal_places=2)
    base_fee = models.DecimalField(max_digits=10, decimal_places=2)
    per_km_rate = models.DecimalField(max_digits=10, decimal_places=2)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["max_distance"]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(max_distance__gte=models.F("min_distance")),
                name="zone_max_gte_min",
            ),
        ]

    def __str__(self):
        return f"{self.name} ({self.min_distance}-{self.max_distance} km)"
