import logging

from rest_framework import serializers

from .models import Candidate, Election

logger = logging.getLogger("elections")


class ElectionSerializer(serializers.ModelSerializer):
    """
    Serializer for creating and updating Election instances.
    `effective_status` is what voters see: the stored label reconciled with the time window.
    """

    effective_status = serializers.SerializerMethodField()

    class Meta:
        model = Election
        fields = (
            "id",
            "title",
            "description",
            "start_time",
            "end_time",
            "status",
            "effective_status",
        )

    def get_effective_status(self, obj):
        return obj.effective_status()

    def validate(self, data):
        """
        Business rules not covered by model field validation.
        """
        # self.instance is the object being updated, or None for a new object creation.
        instance = self.instance
        start_time = data.get("start_time", instance.start_time if instance else None)
        end_time = data.get("end_time", instance.end_time if instance else None)

        logger.debug(
            f"Validating election: Start_time:{start_time}, End_time:{end_time}, instance = {instance}"
        )

        # End time must be after start time.
        if start_time and end_time and start_time >= end_time:
            logger.warning("End time must be after start time.")
            raise serializers.ValidationError(
                "The election's end time must be after its start time."
            )
        return data


class CandidateSerializer(serializers.ModelSerializer):
    """
    Serializer for creating and listing the candidates of an election.
    """

    class Meta:
        model = Candidate
        fields = ["id", "name", "bio", "image_url", "position", "election"]
        # `election` is determined by the URL
        read_only_fields = ["election"]

    def validate(self, data):
        instance = self.instance
        name = data.get("name", instance.name if instance else None)
        election_id = self.context.get(
            "election_id", instance.election_id if instance else None
        )

        logger.debug(
            f"Validating candidate: name = {name}, election = {election_id}, instance = {instance}"
        )

        if not name or len(name.strip()) <= 1:
            logger.warning("Candidate name too short.")
            raise serializers.ValidationError("Name cannot be of 1 letter")

        # Candidate names are unique within an election
        qs = Candidate.objects.filter(name=name)
        if election_id:
            qs = qs.filter(election_id=election_id)
        if instance:
            qs = qs.exclude(pk=instance.pk)
        if qs.exists():
            logger.warning(
                f"Candidate with name: '{name}' already exists in the election: '{election_id}'"
            )
            raise serializers.ValidationError("Candidate with the name already exists")
        return data
