from django.conf import settings
from django.db import models


class AuditLogEntry(models.Model):
    """
    Append-only record of a security-relevant event.
    Rows are written by the services and never updated or deleted.
    """

    class EventType(models.TextChoices):
        USER_REGISTERED = "user_registered", "User registered"
        USER_LOGIN = "user_login", "User login"
        OTP_SENT = "otp_sent", "OTP sent"
        OTP_VERIFIED = "otp_verified", "OTP verified"
        OTP_FAILED = "otp_failed", "OTP failed"
        VOTE_CAST = "vote_cast", "Vote cast"
        VOTE_REJECTED = "vote_rejected", "Vote rejected"
        ELECTION_CREATED = "election_created", "Election created"
        ELECTION_UPDATED = "election_updated", "Election updated"
        CANDIDATE_ADDED = "candidate_added", "Candidate added"
        ADMIN_ACTION = "admin_action", "Admin action"

    event_type = models.CharField(max_length=32, choices=EventType.choices)
    voter = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_entries",
    )
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    details = models.JSONField(blank=True, default=dict)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name_plural = "Audit log entries"
        ordering = ("created_at", "id")
        indexes = [
            models.Index(fields=["event_type", "created_at"], name="audit_event_ts"),
            models.Index(fields=["voter", "created_at"], name="audit_voter_ts"),
        ]

    def __str__(self):
        return f"{self.event_type}:{self.voter_id}"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ValueError("Audit log entries are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Audit log entries are append-only")
