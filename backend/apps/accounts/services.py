from django.db import transaction
from .models import User, UserRole, Role


class AccountService:

    @staticmethod
    @transaction.atomic
    def create_with_role(phone, role, **extra_fields):
        """
        Get-or-create the account for a phone number and attach a role.
        The same person can hold several roles on one account.
        """
        if role not in Role.values:
            raise ValueError(f"Unknown role: {role}")

        phone = User.objects.normalize_phone(phone)
        user, _ = User.objects.get_or_create(phone=phone, defaults=extra_fields)
        UserRole.objects.get_or_create(user=user, role=role)
        return user
