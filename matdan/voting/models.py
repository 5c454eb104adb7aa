from uuid import uuid4

from django.conf import settings
from django.db import models


class Vote(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    voter = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="votes")
    election = models.ForeignKey("elections.Election", on_delete=models.PROTECT, related_name="votes")
    candidate = models.ForeignKey("elections.Candidate", on_delete=models.PROTECT, related_name="votes")
    ballot_token = models.CharField(max_length=32, unique=True, editable=False)
    cast_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        """
        Metadata options for the Vote model
        """
        # The authoritative one-ballot-per-voter-per-election guarantee.
        unique_together = ("voter", "election")
        ordering = ["-cast_at"]

    def __str__(self):
        """
        Returns a string representation of the Vote instance, useful for the Django Admin.
        Deliberately omits the chosen candidate.
        """
        return f"Vote {self.ballot_token} in {self.election_id}"
