from uuid import uuid4

from django.core.validators import MinLengthValidator
from django.db import models
from django.utils import timezone


class Election(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        UPCOMING = "upcoming", "Upcoming"
        ACTIVE = "active", "Active"
        ENDED = "ended", "Ended"

    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    title = models.CharField(max_length=255, validators=[MinLengthValidator(3)])
    description = models.TextField(blank=True, null=True)
    start_time = models.DateTimeField()
    end_time = models.DateTimeField()
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.DRAFT,
        help_text="Draft and ended are administrator overrides; otherwise the time window decides.",
    )
    created_by = models.ForeignKey(
        "accounts.User",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_elections",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return self.title

    def effective_status(self, now=None) -> str:
        """
        Status at `now`, derived from the [start_time, end_time) window.
        A draft election is never open and an administrator may end an
        election early; every other stored label is informational.
        """
        if self.status in (self.Status.DRAFT, self.Status.ENDED):
            return self.status
        now = now or timezone.now()
        if now < self.start_time:
            return self.Status.UPCOMING
        if now >= self.end_time:
            return self.Status.ENDED
        return self.Status.ACTIVE

    def is_open(self, now=None) -> bool:
        return self.effective_status(now) == self.Status.ACTIVE


class Candidate(models.Model):
    """
    Candidate model - represents a candidate in an election.
    """

    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="candidates")
    name = models.CharField(max_length=255)
    bio = models.TextField(blank=True, null=True)
    image_url = models.URLField(blank=True, null=True)
    position = models.PositiveIntegerField(default=0, help_text="Display order on the ballot")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["position", "created_at", "id"]

    def __str__(self):
        return f"{self.name} ({self.election_id})"
