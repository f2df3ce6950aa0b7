from decimal import Decimal

from django.test import TestCase
from rest_framework import status
from rest_framework.test import APIClient

from apps.accounts.models import Role
from apps.accounts.services import AccountService
from apps.partners.models import DeliveryPartner
from apps.partners.services import PartnerService
from apps.stores.models import Store
from apps.utils.exceptions import BusinessLogicException, InvalidInputError


class PartnerServiceTestCase(TestCase):
    def setUp(self):
        self.user = AccountService.create_with_role("+919300000001", Role.DELIVERY_PARTNER)
        self.owner = AccountService.create_with_role("+919300000002", Role.SHOPKEEPER)
        self.store = Store.objects.create(owner=self.owner, name="Corner Shop", address="1 High St", area="HSR Layout")

    def test_profile_requires_partner_role(self):
        with self.assertRaises(InvalidInputError):
            PartnerService.create_profile(self.owner)

    def test_profile_creation_is_idempotent(self):
        first = PartnerService.create_profile(self.user, delivery_areas=["HSR Layout"])
        second = PartnerService.create_profile(self.user, delivery_areas=["Elsewhere"])
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(second.delivery_areas, ["HSR Layout"])

    def test_unapproved_partner_cannot_go_online(self):
        profile = PartnerService.create_profile(self.user)
        with self.assertRaises(BusinessLogicException) as ctx:
            PartnerService.set_availability(profile, True)
        self.assertEqual(ctx.exception.code, "approval_required")

    def test_rejection_takes_partner_offline(self):
        profile = PartnerService.create_profile(self.user)
        PartnerService.approve(profile)
        PartnerService.set_availability(profile, True)

        PartnerService.reject(profile, "Documents expired")

        profile.refresh_from_db()
        self.assertEqual(profile.status, DeliveryPartner.ApprovalStatus.REJECTED)
        self.assertFalse(profile.is_available)
        self.assertEqual(profile.rejection_reason, "Documents expired")

    def test_area_matching_is_case_insensitive(self):
        profile = PartnerService.create_profile(self.user, delivery_areas=[" hsr layout "])
        self.assertTrue(profile.serves_area("HSR Layout"))
        self.assertFalse(profile.serves_area("Whitefield"))
        self.assertTrue(profile.serves_area(""))

    def test_eligible_for_store(self):
        profile = PartnerService.create_profile(self.user, delivery_areas=["HSR Layout"])
        self.assertEqual(PartnerService.eligible_for(self.store), [])

        PartnerService.approve(profile)
        PartnerService.set_availability(profile, True)
        self.assertEqual(PartnerService.eligible_for(self.store), [profile])

        self.store.area = "Whitefield"
        self.assertEqual(PartnerService.eligible_for(self.store), [])

    def test_completed_delivery_counters(self):
        profile = PartnerService.create_profile(self.user)
        PartnerService.record_completed_delivery(profile.id, Decimal("32.88"))
        PartnerService.record_completed_delivery(profile.id, Decimal("10.00"))

        profile.refresh_from_db()
        self.assertEqual(profile.total_deliveries, 2)
        self.assertEqual(profile.total_earnings, Decimal("42.88"))


class PartnerAPITestCase(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = AccountService.create_with_role("+919300000011", Role.DELIVERY_PARTNER)
        self.profile = PartnerService.create_profile(self.user, delivery_areas=["HSR Layout"])

    def test_profile_endpoint(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.get("/api/partners/me")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "pending")
        self.assertEqual(response.data["active_delivery_count"], 0)

    def test_availability_toggle(self):
        PartnerService.approve(self.profile)
        self.client.force_authenticate(user=self.user)

        response = self.client.post("/api/partners/availability", {"is_available": True}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.profile.refresh_from_db()
        self.assertTrue(self.profile.is_available)

    def test_availability_before_approval(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.post("/api/partners/availability", {"is_available": True}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["code"], "approval_required")

    def test_non_partner_is_forbidden(self):
        customer = AccountService.create_with_role("+919300000012", Role.CUSTOMER)
        self.client.force_authenticate(user=customer)
        response = self.client.get("/api/partners/me")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
