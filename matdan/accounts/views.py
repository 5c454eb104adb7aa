import logging

from audit.logger import EventType, client_ip, record_event
from django.utils import timezone
from rest_framework import generics, permissions
from rest_framework.authtoken.models import Token
from rest_framework.authtoken.views import ObtainAuthToken
from rest_framework.response import Response

from .permissions import IsAnonymousUser
from .serializers import UserRegistrationSerializer, VoterProfileSerializer

logger = logging.getLogger("accounts")


class CustomAuthToken(ObtainAuthToken):
    """
    Token login. Provides a token upon successful login and updates `last_login`.
    """

    def post(self, request, *args, **kwargs):
        logger.info("Authentication attempt for user: %s", request.data.get("username"))

        serializer = self.serializer_class(
            data=request.data, context={"request": request}
        )

        try:
            # validate the credentials. if invalid, it will raise ValidationError.
            serializer.is_valid(raise_exception=True)
        except Exception as e:
            logger.warning(
                "Authentication failed for user: %s. Error: %s",
                request.data.get("username"),
                str(e),
            )
            raise

        user = serializer.validated_data["user"]
        token, created = Token.objects.get_or_create(user=user)

        user.last_login = timezone.now()
        user.save(update_fields=["last_login"])

        logger.info("User authenticated successfully: %s", user.username)
        if created:
            logger.info("New token created for user: %s", user.username)

        record_event(EventType.USER_LOGIN, voter=user, ip_address=client_ip(request))

        return Response(
            {
                "token": token.key,
                "user_id": user.pk,
                "email": user.email,
                "is_verified": user.is_verified,
            }
        )


class UserRegistrationView(generics.CreateAPIView):
    """
    API endpoint for creating new voters.
    """

    serializer_class = UserRegistrationSerializer
    # Allow only anonymous users to register
    permission_classes = [IsAnonymousUser]

    def perform_create(self, serializer):
        user = serializer.save()
        record_event(
            EventType.USER_REGISTERED,
            voter=user,
            ip_address=client_ip(self.request),
            details={"email": user.email},
        )

    def create(self, request, *args, **kwargs):
        logger.info("User registration attempt: %s", request.data.get("username"))
        try:
            response = super().create(request, *args, **kwargs)
            logger.info(
                "User registered successfully -> %s", request.data.get("username")
            )
            return response
        except Exception as e:
            logger.error(
                "User registration failed for %s. Error: %s",
                request.data.get("username"),
                str(e),
            )
            raise


class VoterProfileView(generics.RetrieveAPIView):
    """
    The authenticated voter's own profile, including verification state.
    """

    serializer_class = VoterProfileSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_object(self):
        return self.request.user
