import logging
import re
import secrets
from datetime import timedelta
from typing import Dict, Optional, Tuple

from audit.logger import EventType, record_event
from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from .channels import MessagingChannel, get_channels
from .models import OtpRequest

logger = logging.getLogger(__name__)

OTP_CODE_RE = re.compile(r"[0-9]{6}")

# Verification outcomes; the failure values double as audit `reason`s.
NO_PENDING = "no_pending_request"
EXPIRED = "expired"
ATTEMPTS_EXCEEDED = "max_attempts_exceeded"
INVALID_CODE = "invalid_otp"
VERIFIED = "verified"


class OtpServiceError(Exception):
    """Base exception for the OTP services"""

    message = "OTP request failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)


class RateLimitedError(OtpServiceError):
    """Raised when a voter asks for too many codes in the rate-limit window"""

    message = "Too many OTP requests. Please wait before requesting another."


class DeliveryFailedError(OtpServiceError):
    """Raised when no requested channel delivered the code"""

    def __init__(self, channel_errors: Dict[str, str]):
        self.channel_errors = channel_errors
        detail = "; ".join(f"{channel}: {error}" for channel, error in channel_errors.items())
        if detail:
            super().__init__(f"Failed to send OTP: {detail}")
        else:
            super().__init__("Failed to send OTP. Please check your contact details.")


class InvalidFormatError(OtpServiceError):
    message = "Invalid OTP format. Enter the 6-digit code."


class NoPendingRequestError(OtpServiceError):
    message = "No pending OTP request found"


class OtpExpiredError(OtpServiceError):
    message = "OTP has expired. Please request a new one."


class AttemptsExceededError(OtpServiceError):
    message = "Maximum attempts exceeded. Please request a new OTP."


class InvalidCodeError(OtpServiceError):
    def __init__(self, remaining_attempts: int):
        self.remaining_attempts = remaining_attempts
        super().__init__(f"Invalid OTP. {remaining_attempts} attempts remaining.")


class OtpStorageUnavailableError(OtpServiceError):
    message = "The verification service is temporarily unavailable. Please try again."


class OtpService:
    """
    Issues and verifies one-time passcodes.

    All counters (rate limit, attempts) live in the database so that every
    serving instance sees the same state.
    """

    def __init__(self, channels: Optional[Dict[str, MessagingChannel]] = None):
        self.channels = channels if channels is not None else get_channels()

    @property
    def config(self) -> Dict:
        return settings.OTP_CONFIG

    @staticmethod
    def generate_code() -> str:
        return f"{secrets.randbelow(10 ** 6):06d}"

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_otp(
        self,
        voter,
        channel: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, bool]:
        """
        Create a passcode for `voter` and send it over `channel`.

        Args:
            voter: The authenticated voter
            channel: "email", "sms" or "both"
            email, phone: Contact addresses; default to the voter's profile

        Returns:
            Per-channel delivery flags, e.g. {"email": True, "sms": False}

        Raises:
            RateLimitedError: Too many requests in the window
            DeliveryFailedError: No requested channel delivered
            OtpStorageUnavailableError: The request could not be stored
        """
        if channel not in OtpRequest.Channel.values:
            raise ValueError(f"Unknown delivery channel: {channel}")

        code = self.generate_code()
        try:
            otp_request = self._create_request(voter, channel, code)
        except DatabaseError:
            logger.exception(f"Failed to store OTP request for voter {voter.pk}")
            raise OtpStorageUnavailableError()

        # The row is committed before dispatch so failed deliveries still count
        # against the rate limit.
        results, errors = self._dispatch(otp_request, code, email=email, phone=phone, voter=voter)

        record_event(
            EventType.OTP_SENT,
            voter=voter,
            ip_address=ip_address,
            details={
                "channel": channel,
                "email_sent": results.get("email", False),
                "sms_sent": results.get("sms", False),
                "errors": [f"{name}: {error}" for name, error in errors.items()],
            },
        )

        if not any(results.values()):
            logger.warning(f"OTP delivery failed for voter {voter.pk}: {errors}")
            raise DeliveryFailedError(errors)

        logger.info(f"OTP issued for voter {voter.pk} via {channel}")
        return {
            "email": results.get("email", False),
            "sms": results.get("sms", False),
        }

    @transaction.atomic
    def _create_request(self, voter, channel: str, code: str) -> OtpRequest:
        # Lock the voter row so concurrent issuances are counted one at a time.
        get_user_model().objects.select_for_update().only("pk").get(pk=voter.pk)

        now = timezone.now()
        window_start = now - timedelta(seconds=self.config["RATE_LIMIT_WINDOW_SECONDS"])
        recent = OtpRequest.objects.filter(voter=voter, created_at__gte=window_start).count()
        if recent >= self.config["RATE_LIMIT_COUNT"]:
            logger.warning(f"OTP rate limit hit for voter {voter.pk} ({recent} recent requests)")
            raise RateLimitedError()

        salt = OtpRequest.generate_salt()
        return OtpRequest.objects.create(
            voter=voter,
            code_hash=OtpRequest.compute_hash(code=code, salt=salt),
            salt=salt,
            expires_at=now + timedelta(seconds=self.config["CODE_TTL_SECONDS"]),
            attempts=0,
            max_attempts=self.config["MAX_ATTEMPTS"],
            delivery_channel=channel,
        )

    def _dispatch(
        self, otp_request: OtpRequest, code: str, email=None, phone=None, voter=None
    ) -> Tuple[Dict[str, bool], Dict[str, str]]:
        """Fan the code out to each requested channel independently."""
        addresses = {
            "email": email or getattr(voter, "email", None),
            "sms": phone or getattr(voter, "phone", None),
        }
        results: Dict[str, bool] = {}
        errors: Dict[str, str] = {}

        for name in otp_request.channels:
            address = addresses.get(name)
            if not address:
                results[name] = False
                errors[name] = "No email address provided" if name == "email" else "No phone number provided"
                continue
            success, error = self.channels[name].send(address, code)
            results[name] = success
            if not success:
                errors[name] = error or "Delivery failed"

        return results, errors

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_otp(self, voter, code: str, ip_address: Optional[str] = None) -> OtpRequest:
        """
        Check `code` against the voter's most recent pending request and mark
        the voter verified on a match.

        Every call that reaches the comparison consumes one attempt.

        Raises:
            InvalidFormatError, NoPendingRequestError, OtpExpiredError,
            AttemptsExceededError, InvalidCodeError, OtpStorageUnavailableError
        """
        if not isinstance(code, str) or not OTP_CODE_RE.fullmatch(code):
            raise InvalidFormatError()

        try:
            outcome, otp_request = self._attempt(voter, code)
        except DatabaseError:
            logger.exception(f"OTP verification storage failure for voter {voter.pk}")
            raise OtpStorageUnavailableError()

        if outcome == NO_PENDING:
            logger.info(f"No pending OTP request for voter {voter.pk}")
            raise NoPendingRequestError()

        if outcome == EXPIRED:
            self._record_failure(voter, ip_address, reason=EXPIRED)
            raise OtpExpiredError()

        if outcome == ATTEMPTS_EXCEEDED:
            self._record_failure(voter, ip_address, reason=ATTEMPTS_EXCEEDED)
            raise AttemptsExceededError()

        if outcome == INVALID_CODE:
            remaining = otp_request.remaining_attempts
            self._record_failure(
                voter, ip_address, reason=INVALID_CODE, remaining_attempts=remaining
            )
            raise InvalidCodeError(remaining)

        record_event(
            EventType.OTP_VERIFIED,
            voter=voter,
            ip_address=ip_address,
            details={"channel": otp_request.delivery_channel},
        )
        logger.info(f"Voter {voter.pk} verified via OTP request {otp_request.pk}")
        return otp_request

    @transaction.atomic
    def _attempt(self, voter, code: str) -> Tuple[str, Optional[OtpRequest]]:
        # Only the newest request is matchable; older ones are superseded for good.
        otp_request = (
            OtpRequest.objects.select_for_update()
            .filter(voter=voter)
            .order_by("-created_at", "-id")
            .first()
        )
        if otp_request is None or otp_request.verified:
            return NO_PENDING, None

        if otp_request.is_expired():
            return EXPIRED, otp_request

        # Compare-and-increment: a parallel guess that loses the race updates no rows.
        consumed = OtpRequest.objects.filter(
            pk=otp_request.pk,
            verified=False,
            attempts__lt=F("max_attempts"),
        ).update(attempts=F("attempts") + 1)
        if not consumed:
            return ATTEMPTS_EXCEEDED, otp_request

        otp_request.refresh_from_db(fields=["attempts"])
        if not otp_request.matches(code):
            return INVALID_CODE, otp_request

        OtpRequest.objects.filter(pk=otp_request.pk).update(verified=True)
        otp_request.verified = True
        get_user_model().objects.filter(pk=voter.pk).update(is_verified=True)
        voter.is_verified = True
        return VERIFIED, otp_request

    def _record_failure(self, voter, ip_address, reason: str, **details) -> None:
        logger.info(f"OTP verification failed for voter {voter.pk}: {reason}")
        record_event(
            EventType.OTP_FAILED,
            voter=voter,
            ip_address=ip_address,
            details={"reason": reason, **details},
        )


# Singleton instance
_otp_service: Optional[OtpService] = None


def get_otp_service() -> OtpService:
    """Get or create the OTP service singleton"""
    global _otp_service
    if _otp_service is None:
        _otp_service = OtpService()
    return _otp_service
