# apps/accounts/permissions.py
from rest_framework import permissions

from .models import Role


class HasRole(permissions.BasePermission):
    role = None

    def has_permission(self, request, view):
        return bool(
            request.user and
            request.user.is_authenticated and
            request.user.roles.filter(role=self.role).exists()
        )


class IsCustomer(HasRole):
    role = Role.CUSTOMER


class IsShopkeeper(HasRole):
    role = Role.SHOPKEEPER


class IsDeliveryPartner(HasRole):
    role = Role.DELIVERY_PARTNER


class IsShopkeeperOrStaff(permissions.BasePermission):
    def has_permission(self, request, view):
        user = request.user
        if not (user and user.is_authenticated):
            return False
        return user.is_staff or user.roles.filter(role=Role.SHOPKEEPER).exists()
