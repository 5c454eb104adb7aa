from rest_framework import serializers


class VoteCreateSerializer(serializers.Serializer):
    """
    Input for casting a vote. Eligibility is decided by the voting service,
    which needs to see every request, so only the shape is checked here.
    """

    candidate_id = serializers.UUIDField()


class ReceiptQuerySerializer(serializers.Serializer):
    token = serializers.CharField(max_length=32)
