from unittest.mock import patch

from accounts.models import User
from django.db import DatabaseError
from django.test import RequestFactory, TestCase, override_settings
from django.urls import reverse
from rest_framework.test import APIClient

from .logger import EventType, client_ip, record_event
from .models import AuditLogEntry


class RecordEventTest(TestCase):
    def setUp(self):
        self.voter = User.objects.create_user(username="alice", password="pw-123456!")

    def test_entry_written(self):
        entry = record_event(
            EventType.OTP_SENT, voter=self.voter, ip_address="192.0.2.1", details={"channel": "sms"}
        )

        self.assertIsNotNone(entry.pk)
        self.assertEqual(entry.event_type, "otp_sent")
        self.assertEqual(entry.details, {"channel": "sms"})
        self.assertIsNotNone(entry.created_at)

    def test_storage_failure_is_logged_not_raised(self):
        with patch.object(AuditLogEntry.objects, "create", side_effect=DatabaseError("disk full")):
            with self.assertLogs("audit", level="ERROR") as logs:
                entry = record_event(EventType.VOTE_CAST, voter=self.voter)

        self.assertIsNone(entry)
        self.assertIn("vote_cast", logs.output[0])
        self.assertFalse(AuditLogEntry.objects.exists())

    def test_entries_are_append_only(self):
        entry = record_event(EventType.USER_LOGIN, voter=self.voter)

        entry.details = {"tampered": True}
        with self.assertRaises(ValueError):
            entry.save()
        with self.assertRaises(ValueError):
            entry.delete()
        self.assertEqual(AuditLogEntry.objects.get(pk=entry.pk).details, {})

    def test_entry_survives_voter_deletion(self):
        entry = record_event(EventType.USER_REGISTERED, voter=self.voter)
        self.voter.delete()
        self.assertIsNone(AuditLogEntry.objects.get(pk=entry.pk).voter)


class ClientIpTest(TestCase):
    def test_forwarded_header_ignored_by_default(self):
        request = RequestFactory().get("/", HTTP_X_FORWARDED_FOR="203.0.113.7", REMOTE_ADDR="198.51.100.4")
        self.assertEqual(client_ip(request), "198.51.100.4")

    @override_settings(AUDIT_TRUST_X_FORWARDED_FOR=True)
    def test_forwarded_header_used_behind_trusted_proxy(self):
        request = RequestFactory().get("/", HTTP_X_FORWARDED_FOR="203.0.113.7, 10.0.0.1")
        self.assertEqual(client_ip(request), "203.0.113.7")

    @override_settings(AUDIT_TRUST_X_FORWARDED_FOR=True)
    def test_malformed_forwarded_header_falls_back_to_peer(self):
        request = RequestFactory().get("/", HTTP_X_FORWARDED_FOR="not-an-ip", REMOTE_ADDR="198.51.100.4")
        self.assertEqual(client_ip(request), "198.51.100.4")

    def test_malformed_peer_address_dropped(self):
        request = RequestFactory().get("/", REMOTE_ADDR="not-an-ip")
        self.assertIsNone(client_ip(request))

    def test_forged_header_not_recorded_on_registration(self):
        response = APIClient().post(
            reverse("register"),
            {"username": "eve", "password": "correct-horse-battery", "email": "eve@example.com"},
            format="json",
            HTTP_X_FORWARDED_FOR="not-an-ip",
            REMOTE_ADDR="198.51.100.4",
        )

        self.assertEqual(response.status_code, 201)
        entry = AuditLogEntry.objects.get(event_type=EventType.USER_REGISTERED)
        self.assertEqual(entry.ip_address, "198.51.100.4")
