import logging
import uuid
from typing import Any, Dict, Optional

from audit.logger import EventType, record_event
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Count
from elections.models import Candidate, Election

from .models import Vote
from .tokens import generate_ballot_token

logger = logging.getLogger(__name__)


class VotingServiceError(Exception):
    """Base Exception for voting service"""

    message = "Failed to cast vote"
    reason = "error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)


class VerificationRequiredError(VotingServiceError):
    """Raised when an unverified voter tries to vote"""

    message = "Verify your identity with a one-time passcode before voting"
    reason = "not_verified"


class InActiveElectionError(VotingServiceError):
    """Raised when user try to vote in an election that is not open"""

    message = "This election is not accepting votes"
    reason = "not_open"


class ElectionNotStartedError(InActiveElectionError):
    message = "Election has not started yet"
    reason = "not_started"


class ElectionEndedError(InActiveElectionError):
    message = "Election has ended"
    reason = "ended"


class DuplicateVoteError(VotingServiceError):
    """Raised when user tries to vote twice"""

    message = "You have already voted in this election"
    reason = "already_voted"


class InvalidCandidateError(VotingServiceError):
    message = "Candidate does not belong to this election"
    reason = "invalid_candidate"


class StorageUnavailableError(VotingServiceError):
    message = "An error occurred while processing your vote"
    reason = "storage_unavailable"


class VotingService:
    """
    Centralized service for all voting operations.
    Handles eligibility checks, ballot tokens, receipts and results.
    """

    def cast_vote(
        self, user, election: Election, candidate_id, ip_address: Optional[str] = None
    ) -> Vote:
        """
        Cast a vote and return the persisted Vote carrying its ballot token.

        Args:
            user: The authenticated user casting the vote
            election: The election to vote in
            candidate_id: Primary key of the chosen candidate

        Raises:
            VerificationRequiredError: If the voter has not completed OTP verification
            ElectionNotStartedError / ElectionEndedError: If the election is not open
            DuplicateVoteError: If user already voted
            InvalidCandidateError: If the candidate is not on this election's ballot
            StorageUnavailableError: On datastore failure
        """
        # Using request IDs for tracing logs
        request_id = str(uuid.uuid4())[:8]

        try:
            candidate = self._validate_vote(user, election, candidate_id)
            vote = self._insert_vote(user, election, candidate, request_id)
        except VotingServiceError as e:
            logger.info(f"[{request_id}] Vote rejected: {e.reason}")
            record_event(
                EventType.VOTE_REJECTED,
                voter=user,
                ip_address=ip_address,
                details={"election_id": str(election.id), "reason": e.reason},
            )
            raise
        except DatabaseError:
            logger.exception(f"[{request_id}] Storage failure while casting vote")
            raise StorageUnavailableError()

        self._invalidate_cache(election.id)

        record_event(
            EventType.VOTE_CAST,
            voter=user,
            ip_address=ip_address,
            details={"election_id": str(election.id)},
        )
        logger.info(
            f"[{request_id}] Vote successfully cast.",
            extra={"vote_id": vote.id, "election_id": election.id},
        )
        return vote

    def _validate_vote(self, user, election: Election, candidate_id) -> Candidate:
        """Validate all voting requirements, in order. Returns the candidate."""
        # Read the flag from storage; the request's user object may predate verification.
        if not get_user_model().objects.filter(pk=user.pk, is_verified=True).exists():
            raise VerificationRequiredError()

        effective_status = election.effective_status()
        if effective_status in (Election.Status.DRAFT, Election.Status.UPCOMING):
            raise ElectionNotStartedError()
        if effective_status == Election.Status.ENDED:
            raise ElectionEndedError()

        # Fast feedback only; the unique constraint is the real guard.
        if Vote.objects.filter(voter=user, election=election).exists():
            raise DuplicateVoteError()

        candidate = Candidate.objects.filter(pk=candidate_id, election=election).first()
        if candidate is None:
            raise InvalidCandidateError()
        return candidate

    def _insert_vote(self, user, election: Election, candidate: Candidate, request_id: str) -> Vote:
        max_attempts = settings.VOTING_CONFIG["BALLOT_TOKEN_MAX_ATTEMPTS"]
        for attempt in range(1, max_attempts + 1):
            ballot_token = generate_ballot_token()
            try:
                with transaction.atomic():
                    return Vote.objects.create(
                        voter=user,
                        election=election,
                        candidate=candidate,
                        ballot_token=ballot_token,
                    )
            except IntegrityError:
                # A concurrent request for the same voter won the race.
                if Vote.objects.filter(voter=user, election=election).exists():
                    logger.warning(f"[{request_id}] Concurrent duplicate vote rejected by constraint")
                    raise DuplicateVoteError()
                logger.warning(
                    f"[{request_id}] Ballot token collision, retrying ({attempt}/{max_attempts})"
                )

        logger.error(f"[{request_id}] Could not allocate a unique ballot token")
        raise StorageUnavailableError()

    def _invalidate_cache(self, election_id) -> None:
        """Clear cached election results"""
        cache_key = f"election_results:{election_id}"
        cache.delete(cache_key)
        logger.debug(f"Cache invalidated for election {election_id}")

    def get_receipt(self, user, election_id, ballot_token: str) -> Optional[Dict[str, Any]]:
        """
        Look up a receipt. Voter, election and token must all match the stored vote.

        Returns:
            Receipt details, or None if not found
        """
        vote = (
            Vote.objects.select_related("candidate", "election")
            .filter(voter=user, election_id=election_id, ballot_token=ballot_token)
            .first()
        )
        if vote is None:
            return None

        return {
            "ballot_token": vote.ballot_token,
            "candidate_name": vote.candidate.name,
            "election_title": vote.election.title,
            "cast_at": vote.cast_at.isoformat(),
        }

    def get_election_results(
        self, election_id, use_cache: bool = True
    ) -> Dict[str, Any]:
        """
        Get election results with caching

        Args:
            election_id: UUID of the election
            use_cache: whether to use cached results (default: True)

        Returns:
            Dictionary containing election results
        """
        cache_key = f"election_results:{election_id}"
        if use_cache:
            cached_results = cache.get(cache_key)
            if cached_results:
                logger.debug(f"Returning cached results for {election_id}")
                return cached_results

        election = Election.objects.get(pk=election_id)

        counts = dict(
            Vote.objects.filter(election=election)
            .values_list("candidate_id")
            .annotate(vote_count=Count("id"))
        )
        total_votes = sum(counts.values())

        candidates = []
        for candidate in election.candidates.all():
            vote_count = counts.get(candidate.id, 0)
            candidates.append(
                {
                    "candidate": {"id": str(candidate.id), "name": candidate.name},
                    "vote_count": vote_count,
                    "percentage": round(
                        (vote_count / total_votes * 100) if total_votes > 0 else 0,
                        2,
                    ),
                }
            )
        candidates.sort(key=lambda row: row["vote_count"], reverse=True)

        formatted_results = {
            "election": {
                "id": str(election.id),
                "title": election.title,
                "status": election.effective_status(),
            },
            "total_votes": total_votes,
            "candidates": candidates,
        }

        cache.set(
            cache_key,
            formatted_results,
            timeout=settings.VOTING_CONFIG["RESULTS_CACHE_TIMEOUT"],
        )
        return formatted_results


# Singleton instance
_voting_service: Optional[VotingService] = None


def get_voting_service() -> VotingService:
    """Get or create the voting service singleton"""
    global _voting_service
    if _voting_service is None:
        _voting_service = VotingService()
    return _voting_service
