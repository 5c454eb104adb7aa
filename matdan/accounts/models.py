import logging

from django.contrib.auth.models import AbstractUser
from django.db import models

logger = logging.getLogger("accounts")


class User(AbstractUser):
    """
    Voter identity record.
    `is_verified` is flipped to True only by a successful OTP verification.
    """

    phone = models.CharField(max_length=20, null=True, blank=True)
    roll_no = models.CharField(max_length=64, unique=True, null=True, blank=True)
    is_verified = models.BooleanField(default=False)

    def __str__(self):
        return self.username

    def save(self, *args, **kwargs):
        if self.pk and User.objects.filter(pk=self.pk).exists():
            logger.debug(f"Updating voter -> {self.username}")
        else:
            logger.info(f"Saving voter: {self.username}")
        super().save(*args, **kwargs)
