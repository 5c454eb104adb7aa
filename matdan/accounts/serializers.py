#serializer module provides functionalities for serializing & deserializing complex data into JSON
import logging

from rest_framework import serializers

from .models import User

logger = logging.getLogger("accounts")


class UserRegistrationSerializer(serializers.ModelSerializer):
    """
    serializer for creating a voter.
    """

    password = serializers.CharField(
        write_only=True, required=True, style={"input_type": "password"}
    )
    email = serializers.EmailField(required=True)

    class Meta:
        model = User
        fields = ("username", "password", "email", "phone", "roll_no")

    def validate_phone(self, value):
        if value and not value.lstrip("+").replace(" ", "").isdigit():
            raise serializers.ValidationError("Phone number may only contain digits and a leading '+'.")
        return value

    def create(self, validated_data):
        """
        Create the voter with a hashed password. New voters start unverified.
        """
        user = User.objects.create_user(
            username=validated_data["username"],
            email=validated_data.get("email"),
            password=validated_data["password"],
            phone=validated_data.get("phone"),
            roll_no=validated_data.get("roll_no"),
        )
        logger.info(f"New voter registered: {user.username}")
        return user


class VoterProfileSerializer(serializers.ModelSerializer):
    class Meta:
        model = User
        fields = ("id", "username", "email", "phone", "roll_no", "is_verified")
        read_only_fields = fields
