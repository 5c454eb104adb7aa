import logging

from audit.logger import EventType, client_ip, record_event
from django.shortcuts import get_object_or_404
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import generics
from rest_framework.filters import OrderingFilter
from rest_framework.viewsets import ModelViewSet

from .models import Candidate, Election
from .permissions import IsAdminOrReadOnly
from .serializers import CandidateSerializer, ElectionSerializer

logger = logging.getLogger("elections")


class ElectionViewSet(ModelViewSet):
    """
    API endpoint to list, create and manage elections.
    Voters never see drafts.
    """

    serializer_class = ElectionSerializer
    permission_classes = [IsAdminOrReadOnly]

    filter_backends = [DjangoFilterBackend, OrderingFilter]
    filterset_fields = ["status"]
    ordering_fields = ["start_time", "created_at"]

    def get_queryset(self):
        queryset = Election.objects.all()
        if not self.request.user.is_staff:
            queryset = queryset.exclude(status=Election.Status.DRAFT)
        return queryset

    def perform_create(self, serializer):
        election = serializer.save(created_by=self.request.user)
        logger.info(f"Election created by admin: {self.request.user.username} - {election.id}")
        record_event(
            EventType.ELECTION_CREATED,
            voter=self.request.user,
            ip_address=client_ip(self.request),
            details={"election_id": str(election.id), "title": election.title},
        )

    def perform_update(self, serializer):
        election = serializer.save()
        logger.info(f"Election updated by admin: {self.request.user.username} - {election.id}")
        record_event(
            EventType.ELECTION_UPDATED,
            voter=self.request.user,
            ip_address=client_ip(self.request),
            details={"election_id": str(election.id), "status": election.status},
        )


class CandidateListByElectionView(generics.ListCreateAPIView):
    serializer_class = CandidateSerializer
    permission_classes = [IsAdminOrReadOnly]

    def get_election(self):
        queryset = Election.objects.all()
        if not self.request.user.is_staff:
            queryset = queryset.exclude(status=Election.Status.DRAFT)
        return get_object_or_404(queryset, pk=self.kwargs["election_id"])

    def get_queryset(self):
        return Candidate.objects.filter(election=self.get_election())

    def perform_create(self, serializer):
        """
        Associate the candidate with the election from the URL.
        """
        election = self.get_election()
        candidate = serializer.save(election=election)
        logger.info(f"Candidate added by admin: {self.request.user.username} - {candidate.id}")
        record_event(
            EventType.CANDIDATE_ADDED,
            voter=self.request.user,
            ip_address=client_ip(self.request),
            details={"election_id": str(election.id), "candidate_id": str(candidate.id)},
        )

    def get_serializer_context(self):
        context = super().get_serializer_context()
        context["election_id"] = self.kwargs.get("election_id")
        return context
