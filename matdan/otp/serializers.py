from rest_framework import serializers

from .models import OtpRequest


class SendOtpSerializer(serializers.Serializer):
    """
    Validates an issuance request. Contact addresses fall back to the voter's profile.
    """

    channel = serializers.ChoiceField(choices=OtpRequest.Channel.choices)
    email = serializers.EmailField(required=False, allow_blank=True)
    phone = serializers.CharField(required=False, allow_blank=True, max_length=20)

    def validate_phone(self, value):
        if value and not value.lstrip("+").replace(" ", "").isdigit():
            raise serializers.ValidationError("Phone number may only contain digits and a leading '+'.")
        return value

    def validate(self, data):
        user = self.context["request"].user
        channel = data["channel"]
        email = data.get("email") or user.email
        phone = data.get("phone") or user.phone

        if channel == OtpRequest.Channel.EMAIL and not email:
            raise serializers.ValidationError({"email": "An email address is required for email delivery."})
        if channel == OtpRequest.Channel.SMS and not phone:
            raise serializers.ValidationError({"phone": "A phone number is required for SMS delivery."})
        if channel == OtpRequest.Channel.BOTH and not (email or phone):
            raise serializers.ValidationError("An email address or phone number is required.")

        data["email"] = email or None
        data["phone"] = phone or None
        return data


class VerifyOtpSerializer(serializers.Serializer):
    # Format is checked by the service so malformed codes get the same error everywhere.
    code = serializers.CharField(trim_whitespace=False, allow_blank=True)
