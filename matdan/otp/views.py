import logging

from audit.logger import client_ip
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from .serializers import SendOtpSerializer, VerifyOtpSerializer
from .services import (
    AttemptsExceededError,
    DeliveryFailedError,
    InvalidCodeError,
    InvalidFormatError,
    NoPendingRequestError,
    OtpExpiredError,
    OtpServiceError,
    OtpStorageUnavailableError,
    RateLimitedError,
    get_otp_service,
)

logger = logging.getLogger(__name__)


class SendOtpView(APIView):
    """
    POST /api/v1/otp/send/

    Issue a passcode to the authenticated voter.

    Request: {"channel": "email" | "sms" | "both", "email"?: "...", "phone"?: "..."}
    Response: {"status": "success", "data": {"channels": {"email": true, "sms": false}}}
    """

    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = SendOtpSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            channels = get_otp_service().issue_otp(
                voter=request.user,
                channel=data["channel"],
                email=data.get("email"),
                phone=data.get("phone"),
                ip_address=client_ip(request),
            )
        except RateLimitedError as e:
            return Response(
                {"status": "error", "message": str(e)},
                status=status.HTTP_429_TOO_MANY_REQUESTS,
            )
        except DeliveryFailedError as e:
            return Response(
                {"status": "error", "message": str(e), "details": e.channel_errors},
                status=status.HTTP_502_BAD_GATEWAY,
            )
        except OtpStorageUnavailableError as e:
            return Response(
                {"status": "error", "message": str(e)},
                status=status.HTTP_503_SERVICE_UNAVAILABLE,
            )

        return Response(
            {
                "status": "success",
                "message": "OTP sent successfully",
                "data": {"channels": channels},
            }
        )


class VerifyOtpView(APIView):
    """
    POST /api/v1/otp/verify/

    Check a submitted passcode and mark the voter verified.

    Request: {"code": "123456"}
    Response: {"status": "success", "data": {"verified": true}}
              {"status": "error", "message": "...", "remaining_attempts": 1}
    """

    permission_classes = [permissions.IsAuthenticated]

    _error_statuses = (
        (InvalidFormatError, status.HTTP_400_BAD_REQUEST),
        (InvalidCodeError, status.HTTP_400_BAD_REQUEST),
        (NoPendingRequestError, status.HTTP_404_NOT_FOUND),
        (OtpExpiredError, status.HTTP_410_GONE),
        (AttemptsExceededError, status.HTTP_429_TOO_MANY_REQUESTS),
        (OtpStorageUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    )

    def post(self, request):
        serializer = VerifyOtpSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            get_otp_service().verify_otp(
                voter=request.user,
                code=serializer.validated_data["code"],
                ip_address=client_ip(request),
            )
        except OtpServiceError as e:
            return self._error_response(e)

        return Response(
            {
                "status": "success",
                "message": "OTP verified successfully",
                "data": {"verified": True},
            }
        )

    def _error_response(self, error):
        body = {"status": "error", "message": str(error)}
        if isinstance(error, InvalidCodeError):
            body["remaining_attempts"] = error.remaining_attempts
        for error_class, http_status in self._error_statuses:
            if isinstance(error, error_class):
                return Response(body, status=http_status)
        logger.error(f"Unhandled OTP service error: {error}")
        return Response(
            {"status": "error", "message": "OTP verification failed"},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
