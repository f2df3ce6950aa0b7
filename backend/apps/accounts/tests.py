# apps/accounts/tests.py
from django.test import TestCase
from django.contrib.auth import get_user_model
from django.core.cache import cache
from rest_framework.test import APIClient
from rest_framework import status
from rest_framework_simplejwt.exceptions import AuthenticationFailed
from rest_framework_simplejwt.tokens import AccessToken

from apps.accounts.authentication import SecureJWTAuthentication
from apps.accounts.models import Role
from apps.accounts.services import AccountService

User = get_user_model()


class AccountServiceTestCase(TestCase):
    def test_create_user_manager_normalizes_phone(self):
        user = User.objects.create_user(phone=" +91 99999-99999 ", password="password123")
        self.assertEqual(user.phone, "+919999999999")
        self.assertTrue(user.check_password("password123"))
        self.assertFalse(user.is_staff)

    def test_phone_required(self):
        with self.assertRaises(ValueError):
            User.objects.create_user(phone=None, password="pass")

    def test_same_account_holds_multiple_roles(self):
        user = AccountService.create_with_role("+919000000001", Role.SHOPKEEPER)
        again = AccountService.create_with_role("+919000000001", Role.CUSTOMER)

        self.assertEqual(user.pk, again.pk)
        self.assertTrue(user.has_role(Role.SHOPKEEPER))
        self.assertTrue(user.has_role(Role.CUSTOMER))
        self.assertFalse(user.has_role(Role.DELIVERY_PARTNER))
        self.assertIn(user, User.objects.with_role(Role.CUSTOMER))

    def test_unknown_role_rejected(self):
        with self.assertRaises(ValueError):
            AccountService.create_with_role("+919000000002", "rider")


class AuthAPITestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.user = AccountService.create_with_role("+919876543210", Role.CUSTOMER)

    def test_me_endpoint_authenticated(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.get("/api/auth/me")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["phone"], self.user.phone)
        self.assertEqual(response.data["roles"], ["customer"])

    def test_me_endpoint_unauthenticated(self):
        response = self.client.get("/api/auth/me")
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_logout_revokes_access_token(self):
        token = AccessToken.for_user(self.user)
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")

        response = self.client.post("/api/auth/logout", {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)

        with self.assertRaises(AuthenticationFailed):
            SecureJWTAuthentication().authenticate_raw(str(token))

        response = self.client.get("/api/auth/me")
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_authenticate_raw_returns_user(self):
        token = AccessToken.for_user(self.user)
        user, validated = SecureJWTAuthentication().authenticate_raw(str(token))
        self.assertEqual(user, self.user)
        self.assertEqual(str(validated["user_id"]), str(self.user.pk))
