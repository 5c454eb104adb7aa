import threading
from datetime import timedelta
from unittest.mock import patch

import requests
from accounts.models import User
from audit.models import AuditLogEntry
from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from .channels import EmailChannel, SmsChannel, to_e164
from .models import OtpRequest
from .services import (
    AttemptsExceededError,
    DeliveryFailedError,
    InvalidCodeError,
    InvalidFormatError,
    NoPendingRequestError,
    OtpExpiredError,
    OtpService,
    RateLimitedError,
)

MESSAGING = {
    "SENDGRID_API_URL": "https://sendgrid.test/v3/mail/send",
    "SENDGRID_API_KEY": "sg-key",
    "SENDGRID_FROM_EMAIL": "noreply@example.com",
    "SENDGRID_FROM_NAME": "Voting System",
    "TWILIO_API_URL": "https://twilio.test/2010-04-01",
    "TWILIO_ACCOUNT_SID": "AC123",
    "TWILIO_AUTH_TOKEN": "secret",
    "TWILIO_PHONE_NUMBER": "+15550000000",
    "TIMEOUT_SECONDS": 5,
}


class _RecordingChannel:
    """Stands in for a messaging provider and remembers what it was asked to send."""

    def __init__(self, success=True, error="provider down"):
        self.success = success
        self.error = error
        self.sent = []

    def send(self, to, code):
        self.sent.append((to, code))
        if self.success:
            return True, None
        return False, self.error

    @property
    def last_code(self):
        return self.sent[-1][1]


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def make_voter(username="alice", **kwargs):
    kwargs.setdefault("email", f"{username}@example.com")
    kwargs.setdefault("phone", "+15551234567")
    return User.objects.create_user(username=username, password="pw-123456!", **kwargs)


class OtpIssueTests(TestCase):
    def setUp(self):
        self.voter = make_voter()
        self.email = _RecordingChannel()
        self.sms = _RecordingChannel()
        self.service = OtpService(channels={"email": self.email, "sms": self.sms})

    def test_issue_stores_hash_not_code(self):
        result = self.service.issue_otp(self.voter, "email")

        self.assertEqual(result, {"email": True, "sms": False})
        otp_request = OtpRequest.objects.get(voter=self.voter)
        code = self.email.last_code
        self.assertRegex(code, r"^[0-9]{6}$")
        self.assertNotIn(code, otp_request.code_hash)
        self.assertTrue(otp_request.matches(code))
        self.assertEqual(otp_request.attempts, 0)
        self.assertEqual(otp_request.max_attempts, 3)
        self.assertFalse(otp_request.verified)
        self.assertEqual(otp_request.delivery_channel, OtpRequest.Channel.EMAIL)

    def test_issue_expires_after_five_minutes(self):
        before = timezone.now()
        self.service.issue_otp(self.voter, "email")
        otp_request = OtpRequest.objects.get(voter=self.voter)

        self.assertGreaterEqual(otp_request.expires_at, before + timedelta(minutes=5))
        self.assertLessEqual(otp_request.expires_at, timezone.now() + timedelta(minutes=5))

    def test_each_request_gets_its_own_salt(self):
        with patch.object(OtpService, "generate_code", return_value="424242"):
            self.service.issue_otp(self.voter, "email")
            self.service.issue_otp(self.voter, "email")

        first, second = OtpRequest.objects.order_by("id")
        self.assertNotEqual(first.salt, second.salt)
        self.assertNotEqual(first.code_hash, second.code_hash)

    def test_issue_uses_explicit_contact_addresses(self):
        self.service.issue_otp(self.voter, "both", email="other@example.com", phone="+447700900123")

        self.assertEqual(self.email.sent[0][0], "other@example.com")
        self.assertEqual(self.sms.sent[0][0], "+447700900123")
        self.assertEqual(self.email.last_code, self.sms.last_code)

    def test_both_channels_reports_partial_success(self):
        self.sms.success = False

        result = self.service.issue_otp(self.voter, "both")

        self.assertEqual(result, {"email": True, "sms": False})
        entry = AuditLogEntry.objects.get(event_type=AuditLogEntry.EventType.OTP_SENT)
        self.assertEqual(entry.voter, self.voter)
        self.assertTrue(entry.details["email_sent"])
        self.assertFalse(entry.details["sms_sent"])
        self.assertEqual(entry.details["errors"], ["sms: provider down"])

    def test_delivery_failure_still_persists_request(self):
        self.email.success = False

        with self.assertRaises(DeliveryFailedError) as ctx:
            self.service.issue_otp(self.voter, "email")

        self.assertEqual(ctx.exception.channel_errors, {"email": "provider down"})
        self.assertEqual(OtpRequest.objects.filter(voter=self.voter).count(), 1)
        self.assertTrue(
            AuditLogEntry.objects.filter(event_type=AuditLogEntry.EventType.OTP_SENT).exists()
        )

    def test_missing_phone_is_a_channel_failure(self):
        voter = make_voter("bob", phone=None)

        with self.assertRaises(DeliveryFailedError) as ctx:
            self.service.issue_otp(voter, "sms")

        self.assertIn("sms", ctx.exception.channel_errors)
        self.assertEqual(self.sms.sent, [])

    def test_unknown_channel_rejected(self):
        with self.assertRaises(ValueError):
            self.service.issue_otp(self.voter, "pigeon")
        self.assertFalse(OtpRequest.objects.exists())

    def test_sixth_request_within_hour_is_rate_limited(self):
        for _ in range(5):
            self.service.issue_otp(self.voter, "email")

        with self.assertRaises(RateLimitedError):
            self.service.issue_otp(self.voter, "email")
        self.assertEqual(OtpRequest.objects.filter(voter=self.voter).count(), 5)

    def test_rate_limit_window_rolls_forward(self):
        for _ in range(5):
            self.service.issue_otp(self.voter, "email")
        OtpRequest.objects.filter(voter=self.voter).update(
            created_at=timezone.now() - timedelta(minutes=61)
        )

        result = self.service.issue_otp(self.voter, "email")

        self.assertTrue(result["email"])
        self.assertEqual(OtpRequest.objects.filter(voter=self.voter).count(), 6)

    def test_failed_deliveries_count_against_rate_limit(self):
        self.email.success = False
        for _ in range(5):
            with self.assertRaises(DeliveryFailedError):
                self.service.issue_otp(self.voter, "email")

        self.email.success = True
        with self.assertRaises(RateLimitedError):
            self.service.issue_otp(self.voter, "email")

    def test_rate_limit_is_per_voter(self):
        for _ in range(5):
            self.service.issue_otp(self.voter, "email")

        other = make_voter("carol")
        self.assertTrue(self.service.issue_otp(other, "email")["email"])


class OtpVerifyTests(TestCase):
    def setUp(self):
        self.voter = make_voter()
        self.email = _RecordingChannel()
        self.service = OtpService(channels={"email": self.email, "sms": _RecordingChannel()})

    def _issue(self, code):
        with patch.object(OtpService, "generate_code", return_value=code):
            self.service.issue_otp(self.voter, "email")

    def test_correct_code_verifies_voter(self):
        self._issue("123456")

        otp_request = self.service.verify_otp(self.voter, "123456", ip_address="10.0.0.1")

        self.assertTrue(otp_request.verified)
        self.voter.refresh_from_db()
        self.assertTrue(self.voter.is_verified)
        otp_request.refresh_from_db()
        self.assertTrue(otp_request.verified)
        self.assertEqual(otp_request.attempts, 1)
        entry = AuditLogEntry.objects.get(event_type=AuditLogEntry.EventType.OTP_VERIFIED)
        self.assertEqual(entry.details, {"channel": "email"})
        self.assertEqual(entry.ip_address, "10.0.0.1")

    def test_verify_after_success_has_no_pending_request(self):
        self._issue("123456")
        self.service.verify_otp(self.voter, "123456")

        with self.assertRaises(NoPendingRequestError):
            self.service.verify_otp(self.voter, "123456")
        with self.assertRaises(NoPendingRequestError):
            self.service.verify_otp(self.voter, "654321")

    def test_no_request_issued(self):
        with self.assertRaises(NoPendingRequestError):
            self.service.verify_otp(self.voter, "123456")

    def test_wrong_codes_count_down_then_lock(self):
        self._issue("123456")

        remaining = []
        for _ in range(3):
            with self.assertRaises(InvalidCodeError) as ctx:
                self.service.verify_otp(self.voter, "000000")
            remaining.append(ctx.exception.remaining_attempts)
        self.assertEqual(remaining, [2, 1, 0])

        # Even the right code is refused once the budget is spent.
        with self.assertRaises(AttemptsExceededError):
            self.service.verify_otp(self.voter, "123456")

        self.voter.refresh_from_db()
        self.assertFalse(self.voter.is_verified)
        self.assertEqual(OtpRequest.objects.get(voter=self.voter).attempts, 3)

    def test_invalid_code_audit_carries_remaining_attempts(self):
        self._issue("123456")

        with self.assertRaises(InvalidCodeError):
            self.service.verify_otp(self.voter, "999999")

        entry = AuditLogEntry.objects.get(event_type=AuditLogEntry.EventType.OTP_FAILED)
        self.assertEqual(entry.details, {"reason": "invalid_otp", "remaining_attempts": 2})

    def test_expired_code_rejected_even_if_correct(self):
        self._issue("123456")
        OtpRequest.objects.filter(voter=self.voter).update(
            expires_at=timezone.now() - timedelta(seconds=1)
        )

        with self.assertRaises(OtpExpiredError):
            self.service.verify_otp(self.voter, "123456")

        otp_request = OtpRequest.objects.get(voter=self.voter)
        self.assertEqual(otp_request.attempts, 0)
        self.assertFalse(otp_request.verified)
        entry = AuditLogEntry.objects.get(event_type=AuditLogEntry.EventType.OTP_FAILED)
        self.assertEqual(entry.details, {"reason": "expired"})

    def test_malformed_codes_fail_fast(self):
        self._issue("123456")

        for code in ["12345", "1234567", "abcdef", "12 456", "", None, "１２３４５６"]:
            with self.assertRaises(InvalidFormatError):
                self.service.verify_otp(self.voter, code)

        self.assertEqual(OtpRequest.objects.get(voter=self.voter).attempts, 0)

    def test_newest_request_supersedes_older_codes(self):
        with patch.object(OtpService, "generate_code", side_effect=["111111", "222222"]):
            self.service.issue_otp(self.voter, "email")
            self.service.issue_otp(self.voter, "email")

        with self.assertRaises(InvalidCodeError) as ctx:
            self.service.verify_otp(self.voter, "111111")
        self.assertEqual(ctx.exception.remaining_attempts, 2)

        otp_request = self.service.verify_otp(self.voter, "222222")
        self.assertEqual(otp_request, OtpRequest.objects.order_by("-id").first())
        self.assertFalse(OtpRequest.objects.order_by("id").first().verified)

    def test_superseded_code_stays_dead_after_newest_verified(self):
        with patch.object(OtpService, "generate_code", side_effect=["111111", "222222"]):
            self.service.issue_otp(self.voter, "email")
            self.service.issue_otp(self.voter, "email")
        self.service.verify_otp(self.voter, "222222")

        with self.assertRaises(NoPendingRequestError):
            self.service.verify_otp(self.voter, "111111")

        older = OtpRequest.objects.order_by("id").first()
        self.assertFalse(older.verified)
        self.assertEqual(older.attempts, 0)

    def test_same_timestamp_tie_breaks_on_creation_order(self):
        with patch.object(OtpService, "generate_code", side_effect=["111111", "222222"]):
            self.service.issue_otp(self.voter, "email")
            self.service.issue_otp(self.voter, "email")
        OtpRequest.objects.filter(voter=self.voter).update(created_at=timezone.now())

        self.service.verify_otp(self.voter, "222222")

        self.assertTrue(OtpRequest.objects.order_by("-id").first().verified)

    def test_reissue_after_lockout_restores_budget(self):
        self._issue("123456")
        for _ in range(3):
            with self.assertRaises(InvalidCodeError):
                self.service.verify_otp(self.voter, "000000")

        self._issue("654321")
        self.service.verify_otp(self.voter, "654321")

        self.voter.refresh_from_db()
        self.assertTrue(self.voter.is_verified)


@override_settings(MESSAGING_CONFIG=MESSAGING)
class MessagingChannelTests(TestCase):
    def test_email_posts_to_sendgrid(self):
        with patch("otp.channels.requests.post", return_value=_FakeResponse(202)) as post:
            result = EmailChannel().send("alice@example.com", "123456")

        self.assertEqual(result, (True, None))
        args, kwargs = post.call_args
        self.assertEqual(args[0], MESSAGING["SENDGRID_API_URL"])
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sg-key")
        self.assertEqual(kwargs["timeout"], 5)
        self.assertEqual(kwargs["json"]["subject"], "Your OTP Verification Code")
        self.assertIn("123456", kwargs["json"]["content"][0]["value"])
        self.assertEqual(kwargs["json"]["personalizations"][0]["to"], [{"email": "alice@example.com"}])

    def test_email_provider_rejection(self):
        with patch("otp.channels.requests.post", return_value=_FakeResponse(401, text="unauthorized")):
            self.assertEqual(
                EmailChannel().send("alice@example.com", "123456"),
                (False, "Email delivery failed"),
            )

    def test_email_timeout_is_channel_failure(self):
        with patch("otp.channels.requests.post", side_effect=requests.Timeout("slow")):
            self.assertEqual(
                EmailChannel().send("alice@example.com", "123456"),
                (False, "Email service timed out"),
            )

    def test_sms_posts_e164_number_to_twilio(self):
        with patch("otp.channels.requests.post", return_value=_FakeResponse(201, payload={})) as post:
            result = SmsChannel().send("44 7700 900123", "123456")

        self.assertEqual(result, (True, None))
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://twilio.test/2010-04-01/Accounts/AC123/Messages.json")
        self.assertEqual(kwargs["data"]["To"], "+447700900123")
        self.assertEqual(kwargs["data"]["From"], "+15550000000")
        self.assertIn("123456", kwargs["data"]["Body"])
        self.assertEqual(kwargs["auth"], ("AC123", "secret"))

    def test_sms_trial_number_error_is_explained(self):
        response = _FakeResponse(400, payload={"code": 21608, "message": "unverified"})
        with patch("otp.channels.requests.post", return_value=response):
            success, error = SmsChannel().send("+15551234567", "123456")

        self.assertFalse(success)
        self.assertIn("Twilio trial", error)

    def test_sms_connection_error(self):
        with patch("otp.channels.requests.post", side_effect=requests.ConnectionError("down")):
            self.assertEqual(
                SmsChannel().send("+15551234567", "123456"),
                (False, "SMS service error"),
            )

    @override_settings(MESSAGING_CONFIG={**MESSAGING, "TWILIO_AUTH_TOKEN": ""})
    def test_unconfigured_provider_never_called(self):
        with patch("otp.channels.requests.post") as post:
            self.assertEqual(
                SmsChannel().send("+15551234567", "123456"),
                (False, "SMS service not configured"),
            )
        post.assert_not_called()

    def test_to_e164(self):
        self.assertEqual(to_e164("+1 555 123 4567"), "+15551234567")
        self.assertEqual(to_e164("15551234567"), "+15551234567")


@override_settings(MESSAGING_CONFIG=MESSAGING)
class OtpApiTests(TestCase):
    def setUp(self):
        self.voter = make_voter()
        self.client = APIClient()
        self.client.force_authenticate(self.voter)

    def test_requires_authentication(self):
        response = APIClient().post(reverse("otp:send_otp"), {"channel": "email"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_send_and_verify(self):
        with patch("otp.channels.requests.post", return_value=_FakeResponse(202)), patch.object(
            OtpService, "generate_code", return_value="246810"
        ):
            response = self.client.post(reverse("otp:send_otp"), {"channel": "email"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["data"]["channels"], {"email": True, "sms": False})

        response = self.client.post(reverse("otp:verify_otp"), {"code": "246810"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["data"]["verified"])
        self.voter.refresh_from_db()
        self.assertTrue(self.voter.is_verified)

    def test_send_rejects_unknown_channel(self):
        response = self.client.post(reverse("otp:send_otp"), {"channel": "fax"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_send_reports_delivery_failure(self):
        with patch("otp.channels.requests.post", side_effect=requests.Timeout("slow")):
            response = self.client.post(reverse("otp:send_otp"), {"channel": "both"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_502_BAD_GATEWAY)
        self.assertEqual(
            response.data["details"],
            {"email": "Email service timed out", "sms": "SMS service timed out"},
        )

    def test_send_rate_limited(self):
        with patch("otp.channels.requests.post", return_value=_FakeResponse(202)):
            for _ in range(5):
                self.client.post(reverse("otp:send_otp"), {"channel": "email"}, format="json")
            response = self.client.post(reverse("otp:send_otp"), {"channel": "email"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_429_TOO_MANY_REQUESTS)

    def test_verify_discloses_remaining_attempts_only(self):
        with patch("otp.channels.requests.post", return_value=_FakeResponse(202)), patch.object(
            OtpService, "generate_code", return_value="246810"
        ):
            self.client.post(reverse("otp:send_otp"), {"channel": "email"}, format="json")

        response = self.client.post(reverse("otp:verify_otp"), {"code": "111111"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["remaining_attempts"], 2)
        self.assertNotIn("246810", str(response.data))

    def test_verify_malformed_code(self):
        response = self.client.post(reverse("otp:verify_otp"), {"code": "12ab56"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("format", response.data["message"])

    def test_verify_blank_code_is_a_format_error(self):
        response = self.client.post(reverse("otp:verify_otp"), {"code": ""}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("format", response.data["message"])

    def test_verify_without_pending_request(self):
        response = self.client.post(reverse("otp:verify_otp"), {"code": "123456"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)


@skipUnlessDBFeature("has_select_for_update")
class ParallelGuessTests(TransactionTestCase):
    """Wrong guesses fired at once must not get past the attempt budget."""

    def test_parallel_guesses_respect_budget(self):
        voter = make_voter()
        service = OtpService(channels={"email": _RecordingChannel(), "sms": _RecordingChannel()})
        with patch.object(OtpService, "generate_code", return_value="123456"):
            service.issue_otp(voter, "email")

        workers = 8
        barrier = threading.Barrier(workers)
        outcomes = []
        lock = threading.Lock()

        def guess():
            try:
                barrier.wait()
                try:
                    service.verify_otp(voter, "000000")
                    outcome = "verified"
                except InvalidCodeError:
                    outcome = "invalid"
                except AttemptsExceededError:
                    outcome = "exceeded"
                with lock:
                    outcomes.append(outcome)
            finally:
                connection.close()

        threads = [threading.Thread(target=guess) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        otp_request = OtpRequest.objects.get(voter=voter)
        self.assertEqual(otp_request.attempts, otp_request.max_attempts)
        self.assertEqual(outcomes.count("invalid"), 3)
        self.assertEqual(outcomes.count("exceeded"), workers - 3)
        self.assertFalse(otp_request.verified)
