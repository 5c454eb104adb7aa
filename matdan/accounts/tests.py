from audit.models import AuditLogEntry
from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient

from .models import User


class RegistrationTest(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.payload = {
            "username": "alice",
            "password": "correct-horse-battery",
            "email": "alice@example.com",
            "phone": "+15551234567",
            "roll_no": "CS-2024-001",
        }

    def test_new_voter_starts_unverified(self):
        response = self.client.post(reverse("register"), self.payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertNotIn("password", response.data)
        user = User.objects.get(username="alice")
        self.assertFalse(user.is_verified)
        self.assertTrue(user.check_password("correct-horse-battery"))
        entry = AuditLogEntry.objects.get(event_type=AuditLogEntry.EventType.USER_REGISTERED)
        self.assertEqual(entry.voter, user)

    def test_email_required(self):
        del self.payload["email"]
        response = self.client.post(reverse("register"), self.payload, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_phone_must_be_numeric(self):
        self.payload["phone"] = "call-me"
        response = self.client.post(reverse("register"), self.payload, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("phone", response.data)

    def test_signed_in_user_cannot_register(self):
        self.client.force_authenticate(User.objects.create_user(username="bob", password="pw-123456!"))
        response = self.client.post(reverse("register"), self.payload, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


class LoginTest(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(
            username="alice", password="correct-horse-battery", email="alice@example.com"
        )

    def test_login_returns_token(self):
        response = self.client.post(
            reverse("api_token_auth"),
            {"username": "alice", "password": "correct-horse-battery"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["token"])
        self.assertFalse(response.data["is_verified"])
        self.assertTrue(
            AuditLogEntry.objects.filter(
                event_type=AuditLogEntry.EventType.USER_LOGIN, voter=self.user
            ).exists()
        )

        self.client.credentials(HTTP_AUTHORIZATION=f"Token {response.data['token']}")
        profile = self.client.get(reverse("voter_profile"))
        self.assertEqual(profile.status_code, status.HTTP_200_OK)
        self.assertEqual(profile.data["username"], "alice")

    def test_wrong_password(self):
        response = self.client.post(
            reverse("api_token_auth"),
            {"username": "alice", "password": "nope"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(AuditLogEntry.objects.exists())
