import hashlib
import hmac
import secrets

from django.conf import settings
from django.db import models
from django.utils import timezone


class OtpRequest(models.Model):
    """
    One issuance attempt of a one-time passcode.

    Only the salted HMAC of the code is stored. Rows are never deleted;
    only `attempts` and `verified` change after creation. Only the most
    recently created row for a voter is eligible for matching, and only
    while it is unverified; issuing a new row supersedes every older one.
    """

    class Channel(models.TextChoices):
        EMAIL = "email", "Email"
        SMS = "sms", "SMS"
        BOTH = "both", "Email and SMS"

    voter = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="otp_requests"
    )
    code_hash = models.CharField(max_length=64)
    salt = models.CharField(max_length=32)
    expires_at = models.DateTimeField()
    attempts = models.PositiveIntegerField(default=0)
    max_attempts = models.PositiveIntegerField(default=3)
    delivery_channel = models.CharField(max_length=8, choices=Channel.choices)
    verified = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at", "-id")
        indexes = [
            models.Index(fields=["voter", "verified", "-created_at"], name="otp_voter_pending"),
            models.Index(fields=["voter", "created_at"], name="otp_voter_created"),
        ]

    def __str__(self):
        return f"otp:{self.voter_id}:{self.pk}"

    @classmethod
    def generate_salt(cls) -> str:
        return secrets.token_hex(16)

    @classmethod
    def compute_hash(cls, *, code: str, salt: str) -> str:
        secret = str(settings.OTP_CONFIG["HASH_SECRET"]).encode("utf-8")
        message = f"{salt}:{code}".encode("utf-8")
        return hmac.new(secret, message, hashlib.sha256).hexdigest()

    def matches(self, code: str) -> bool:
        candidate = self.compute_hash(code=code, salt=self.salt)
        return hmac.compare_digest(candidate, self.code_hash)

    def is_expired(self, now=None) -> bool:
        now = now or timezone.now()
        return now > self.expires_at

    @property
    def remaining_attempts(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    @property
    def channels(self):
        if self.delivery_channel == self.Channel.BOTH:
            return [self.Channel.EMAIL, self.Channel.SMS]
        return [self.delivery_channel]
