# apps/partners/services.py
import logging

from django.conf import settings
from django.db import transaction
from django.db.models import Count, F, Q
from django.utils import timezone

from apps.accounts.models import Role
from apps.delivery.states import ACTIVE_STATUSES
from apps.utils.exceptions import BusinessLogicException, InvalidInputError
from .models import DeliveryPartner

logger = logging.getLogger(__name__)


class PartnerService:

    @staticmethod
    @transaction.atomic
    def create_profile(user, **fields):
        """
        Idempotent profile creation.
        """
        if not user.roles.filter(role=Role.DELIVERY_PARTNER).exists():
            raise InvalidInputError("User does not have the delivery partner role", code="role_required")

        profile, created = DeliveryPartner.objects.get_or_create(user=user, defaults=fields)
        if created:
            logger.info(f"Delivery partner profile created for user {user.id}")
        return profile

    @staticmethod
    def approve(profile: DeliveryPartner, approved_by=None):
        profile.status = DeliveryPartner.ApprovalStatus.APPROVED
        profile.approved_by = approved_by
        profile.approval_date = timezone.now()
        profile.rejection_reason = ""
        profile.save(update_fields=["status", "approved_by", "approval_date", "rejection_reason"])
        return profile

    @staticmethod
    def reject(profile: DeliveryPartner, reason, rejected_by=None):
        profile.status = DeliveryPartner.ApprovalStatus.REJECTED
        profile.approved_by = rejected_by
        profile.approval_date = timezone.now()
        profile.rejection_reason = reason
        profile.is_available = False
        profile.save(update_fields=["status", "approved_by", "approval_date", "rejection_reason", "is_available"])
        return profile

    @staticmethod
    def active_delivery_count(profile: DeliveryPartner):
        return profile.deliveries.filter(status__in=ACTIVE_STATUSES).count()

    @staticmethod
    def set_availability(profile: DeliveryPartner, available: bool):
        """
        Toggles availability with safety checks.
        """
        if available:
            if not profile.is_approved:
                raise BusinessLogicException(
                    "Your partner application has not been approved yet.",
                    code="approval_required"
                )
            if not profile.is_active:
                raise BusinessLogicException("Partner account is deactivated.", code="partner_inactive")
        elif PartnerService.active_delivery_count(profile):
            raise BusinessLogicException(
                "Cannot go offline while you have active deliveries.",
                code="active_delivery_restriction"
            )

        profile.is_available = available
        profile.save(update_fields=["is_available"])
        return profile

    @staticmethod
    def eligible_for(store):
        """
        Partners who may receive an offer for a pickup at `store`.
        Approved, active, available, under the load cap and serving the store's area.
        """
        max_active = getattr(settings, "DELIVERY_MAX_ACTIVE_PER_PARTNER", 3)

        candidates = DeliveryPartner.objects.select_related("user").filter(
            status=DeliveryPartner.ApprovalStatus.APPROVED,
            is_active=True,
            is_available=True,
            user__is_active=True,
        ).annotate(
            active_delivery_count=Count(
                "deliveries",
                filter=Q(deliveries__status__in=ACTIVE_STATUSES)
            )
        ).filter(
            active_delivery_count__lt=max_active
        ).order_by("active_delivery_count", "id")

        # JSON containment is not portable across backends; areas are matched in Python.
        return [p for p in candidates if p.serves_area(store.area)]

    @staticmethod
    def record_completed_delivery(partner_id, earnings):
        DeliveryPartner.objects.filter(pk=partner_id).update(
            total_deliveries=F("total_deliveries") + 1,
            total_earnings=F("total_earnings") + earnings,
        )
