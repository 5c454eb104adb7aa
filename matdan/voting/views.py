import logging

from audit.logger import client_ip
from django.shortcuts import get_object_or_404
from elections.models import Election
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from .serializers import ReceiptQuerySerializer, VoteCreateSerializer
from .services import (
    DuplicateVoteError,
    InActiveElectionError,
    InvalidCandidateError,
    StorageUnavailableError,
    VerificationRequiredError,
    VotingServiceError,
    get_voting_service,
)

# __name__ = 'voting.views' automatically
logger = logging.getLogger(__name__)


def _open_elections(user):
    queryset = Election.objects.all()
    if not user.is_staff:
        queryset = queryset.exclude(status=Election.Status.DRAFT)
    return queryset


class VoteCreateView(APIView):
    """
    POST /api/v1/voting/<election_id>/vote/

    Cast the authenticated voter's single ballot in an election.

    Request: {"candidate_id": "<uuid>"}
    Response: {"status": "success", "data": {"ballot_token": "VT-XXXXXXXXXXXX", ...}}
    """

    # Ensure that only authenticated users can access that endpoint.
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, election_id):
        serializer = VoteCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        election = get_object_or_404(_open_elections(request.user), id=election_id)
        voting_service = get_voting_service()

        try:
            vote = voting_service.cast_vote(
                user=request.user,
                election=election,
                candidate_id=serializer.validated_data["candidate_id"],
                ip_address=client_ip(request),
            )
        except VerificationRequiredError as e:
            return Response(
                {"status": "error", "reason": e.reason, "message": str(e)},
                status=status.HTTP_403_FORBIDDEN,
            )

        except InActiveElectionError as e:
            return Response(
                {"status": "error", "reason": e.reason, "message": str(e)},
                status=status.HTTP_403_FORBIDDEN,
            )

        except DuplicateVoteError as e:
            return Response(
                {"status": "error", "reason": e.reason, "message": str(e)},
                status=status.HTTP_409_CONFLICT,
            )

        except InvalidCandidateError as e:
            return Response(
                {"status": "error", "reason": e.reason, "message": str(e)},
                status=status.HTTP_400_BAD_REQUEST,
            )

        except StorageUnavailableError as e:
            return Response(
                {"status": "error", "reason": e.reason, "message": str(e)},
                status=status.HTTP_503_SERVICE_UNAVAILABLE,
            )

        except VotingServiceError as e:
            logger.error(f"Voting service error: {e}")
            return Response(
                {
                    "status": "error",
                    "message": "An error occurred while processing your vote",
                },
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        return Response(
            {
                "status": "success",
                "message": "Vote cast successfully.",
                "data": {
                    "ballot_token": vote.ballot_token,
                    "election": election.title,
                    "cast_at": vote.cast_at.isoformat(),
                },
            },
            status=status.HTTP_201_CREATED,
        )


class ReceiptView(APIView):
    """
    GET /api/v1/voting/<election_id>/receipt/?token=VT-XXXXXXXXXXXX

    Read back the authenticated voter's own receipt.
    The token alone is not enough: voter and election must match too.
    """

    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, election_id):
        serializer = ReceiptQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)

        receipt = get_voting_service().get_receipt(
            user=request.user,
            election_id=election_id,
            ballot_token=serializer.validated_data["token"],
        )

        if receipt is None:
            return Response(
                {"status": "error", "message": "Vote receipt not found"},
                status=status.HTTP_404_NOT_FOUND,
            )

        return Response({"status": "success", "data": receipt})


class ElectionResultsView(APIView):
    """
    GET /api/v1/voting/<election_id>/results/

    Aggregated per-candidate counts. Staff may watch results live; voters
    see them once the election has ended.
    """

    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, election_id):
        election = get_object_or_404(_open_elections(request.user), id=election_id)
        if not request.user.is_staff and election.effective_status() != Election.Status.ENDED:
            return Response(
                {"status": "error", "message": "Results are available once the election has ended"},
                status=status.HTTP_403_FORBIDDEN,
            )

        results = get_voting_service().get_election_results(election_id=election.id, use_cache=True)
        return Response(
            {
                "status": "success",
                "message": "Results retrieved successfully",
                "data": results,
            }
        )
