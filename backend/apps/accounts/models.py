from django.contrib.auth.models import AbstractBaseUser, PermissionsMixin
from django.db import models
from django.utils import timezone
from .managers import UserManager


class Role(models.TextChoices):
    CUSTOMER = "customer", "Customer"
    SHOPKEEPER = "shopkeeper", "Shopkeeper"
    DELIVERY_PARTNER = "delivery_partner", "Delivery Partner"


class User(AbstractBaseUser, PermissionsMixin):
    """
    Marketplace account identified by phone number.
    One account may act in several roles (a shopkeeper can also order as a customer).
    """
    phone = models.CharField(max_length=15, unique=True, db_index=True)
    email = models.EmailField(blank=True, null=True)

    first_name = models.CharField(max_length=50, blank=True)
    last_name = models.CharField(max_length=50, blank=True)

    is_active = models.BooleanField(default=True)
    is_staff = models.BooleanField(default=False)

    created_at = models.DateTimeField(default=timezone.now)

    objects = UserManager()

    USERNAME_FIELD = "phone"
    REQUIRED_FIELDS = []

    def __str__(self):
        return self.phone

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip() or self.phone

    def has_role(self, role):
        return self.roles.filter(role=role).exists()


class UserRole(models.Model):
    """
    Role-Based Access Control.
    The same role check gates HTTP views and the WebSocket handshake.
    """
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="roles")
    role = models.CharField(max_length=20, choices=Role.choices)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = ("user", "role")

    def __str__(self):
        return f"{self.user.phone} - {self.role}"
