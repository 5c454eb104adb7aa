import threading
from datetime import timedelta
from unittest.mock import patch

from accounts.models import User
from audit.models import AuditLogEntry
from django.core.cache import cache
from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from django.urls import reverse
from django.utils import timezone
from elections.models import Candidate, Election
from otp.services import OtpService
from rest_framework import status
from rest_framework.test import APIClient

from .models import Vote
from .services import (
    DuplicateVoteError,
    ElectionEndedError,
    ElectionNotStartedError,
    InActiveElectionError,
    InvalidCandidateError,
    StorageUnavailableError,
    VerificationRequiredError,
    VotingService,
)
from .tokens import BALLOT_TOKEN_RE, generate_ballot_token


def make_voter(username, verified=True, **kwargs):
    return User.objects.create_user(
        username=username,
        password="pw-123456!",
        email=f"{username}@example.com",
        is_verified=verified,
        **kwargs,
    )


def make_election(title="Student Council", starts_in=None, ends_in=None, status=Election.Status.ACTIVE):
    now = timezone.now()
    return Election.objects.create(
        title=title,
        start_time=now + (starts_in if starts_in is not None else timedelta(hours=-1)),
        end_time=now + (ends_in if ends_in is not None else timedelta(hours=1)),
        status=status,
    )


class BallotTokenTests(TestCase):
    def test_token_format(self):
        token = generate_ballot_token()
        self.assertTrue(BALLOT_TOKEN_RE.fullmatch(token), token)
        self.assertEqual(len(token), 15)

    def test_tokens_are_distinct(self):
        tokens = {generate_ballot_token() for _ in range(10000)}
        self.assertEqual(len(tokens), 10000)


class CastVoteTests(TestCase):
    def setUp(self):
        self.service = VotingService()
        self.voter = make_voter("alice")
        self.election = make_election()
        self.c1 = Candidate.objects.create(election=self.election, name="Candidate One", position=1)
        self.c2 = Candidate.objects.create(election=self.election, name="Candidate Two", position=2)

    def test_cast_vote_returns_receipt_token(self):
        vote = self.service.cast_vote(self.voter, self.election, self.c1.id, ip_address="10.0.0.9")

        self.assertTrue(BALLOT_TOKEN_RE.fullmatch(vote.ballot_token))
        self.assertEqual(vote.candidate, self.c1)
        self.assertEqual(Vote.objects.filter(voter=self.voter, election=self.election).count(), 1)

        entry = AuditLogEntry.objects.get(event_type=AuditLogEntry.EventType.VOTE_CAST)
        self.assertEqual(entry.details, {"election_id": str(self.election.id)})
        self.assertEqual(entry.ip_address, "10.0.0.9")
        # The audit trail never links the voter to a candidate.
        self.assertNotIn(str(self.c1.id), str(entry.details))

    def test_unverified_voter_rejected(self):
        voter = make_voter("bob", verified=False)

        with self.assertRaises(VerificationRequiredError):
            self.service.cast_vote(voter, self.election, self.c1.id)

        self.assertFalse(Vote.objects.filter(voter=voter).exists())
        entry = AuditLogEntry.objects.get(event_type=AuditLogEntry.EventType.VOTE_REJECTED)
        self.assertEqual(entry.details["reason"], "not_verified")

    def test_verification_read_from_storage(self):
        stale = User.objects.get(pk=self.voter.pk)
        User.objects.filter(pk=self.voter.pk).update(is_verified=False)

        with self.assertRaises(VerificationRequiredError):
            self.service.cast_vote(stale, self.election, self.c1.id)

    def test_ended_election_rejected(self):
        election = make_election(starts_in=timedelta(hours=-2), ends_in=timedelta(minutes=-1))
        candidate = Candidate.objects.create(election=election, name="Late Entry")

        with self.assertRaises(ElectionEndedError):
            self.service.cast_vote(self.voter, election, candidate.id)
        self.assertFalse(Vote.objects.filter(election=election).exists())

    def test_end_time_is_exclusive(self):
        now = timezone.now()
        self.assertTrue(self.election.is_open(now))
        self.assertFalse(self.election.is_open(self.election.end_time))
        self.assertTrue(self.election.is_open(self.election.start_time))

    def test_ended_override_closes_early(self):
        Election.objects.filter(pk=self.election.pk).update(status=Election.Status.ENDED)
        self.election.refresh_from_db()

        with self.assertRaises(ElectionEndedError):
            self.service.cast_vote(self.voter, self.election, self.c1.id)

    def test_upcoming_election_rejected(self):
        election = make_election(starts_in=timedelta(hours=1), ends_in=timedelta(hours=2))
        candidate = Candidate.objects.create(election=election, name="Early Bird")

        with self.assertRaises(ElectionNotStartedError):
            self.service.cast_vote(self.voter, election, candidate.id)

    def test_draft_election_rejected(self):
        election = make_election(status=Election.Status.DRAFT)
        candidate = Candidate.objects.create(election=election, name="Drafted")

        with self.assertRaises(InActiveElectionError):
            self.service.cast_vote(self.voter, election, candidate.id)

    def test_second_vote_rejected(self):
        first = self.service.cast_vote(self.voter, self.election, self.c1.id)

        with self.assertRaises(DuplicateVoteError):
            self.service.cast_vote(self.voter, self.election, self.c2.id)

        votes = Vote.objects.filter(voter=self.voter, election=self.election)
        self.assertEqual(list(votes), [first])
        self.assertEqual(votes.get().candidate, self.c1)
        entry = AuditLogEntry.objects.get(event_type=AuditLogEntry.EventType.VOTE_REJECTED)
        self.assertEqual(entry.details["reason"], "already_voted")

    def test_concurrent_duplicate_caught_by_constraint(self):
        self.service.cast_vote(self.voter, self.election, self.c1.id)

        # A request that passed its eligibility checks before the first vote landed.
        with patch.object(VotingService, "_validate_vote", return_value=self.c2):
            with self.assertRaises(DuplicateVoteError):
                self.service.cast_vote(self.voter, self.election, self.c2.id)

        self.assertEqual(Vote.objects.filter(voter=self.voter, election=self.election).count(), 1)

    def test_repeated_casts_past_precheck_leave_one_vote(self):
        outcomes = []
        with patch.object(VotingService, "_validate_vote", return_value=self.c1):
            for _ in range(5):
                try:
                    self.service.cast_vote(self.voter, self.election, self.c1.id)
                    outcomes.append("ok")
                except DuplicateVoteError:
                    outcomes.append("duplicate")

        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count("duplicate"), 4)
        self.assertEqual(Vote.objects.filter(voter=self.voter, election=self.election).count(), 1)

    def test_same_voter_can_vote_in_other_elections(self):
        other = make_election(title="Sports Captain")
        candidate = Candidate.objects.create(election=other, name="Runner")

        self.service.cast_vote(self.voter, self.election, self.c1.id)
        self.service.cast_vote(self.voter, other, candidate.id)

        self.assertEqual(Vote.objects.filter(voter=self.voter).count(), 2)

    def test_candidate_from_other_election_rejected(self):
        other = make_election(title="Sports Captain")
        outsider = Candidate.objects.create(election=other, name="Outsider")

        with self.assertRaises(InvalidCandidateError):
            self.service.cast_vote(self.voter, self.election, outsider.id)
        self.assertFalse(Vote.objects.exists())

    def test_token_collision_retries_with_fresh_token(self):
        existing = self.service.cast_vote(make_voter("carol"), self.election, self.c1.id)

        with patch(
            "voting.services.generate_ballot_token",
            side_effect=[existing.ballot_token, "VT-NEWTOKEN0001"],
        ):
            vote = self.service.cast_vote(self.voter, self.election, self.c2.id)

        self.assertEqual(vote.ballot_token, "VT-NEWTOKEN0001")

    @override_settings(VOTING_CONFIG={
        "BALLOT_TOKEN_PREFIX": "VT-",
        "BALLOT_TOKEN_LENGTH": 12,
        "BALLOT_TOKEN_MAX_ATTEMPTS": 2,
        "RESULTS_CACHE_TIMEOUT": 300,
    })
    def test_token_collisions_exhausted(self):
        existing = self.service.cast_vote(make_voter("carol"), self.election, self.c1.id)

        with patch("voting.services.generate_ballot_token", return_value=existing.ballot_token):
            with self.assertRaises(StorageUnavailableError):
                self.service.cast_vote(self.voter, self.election, self.c2.id)

        self.assertFalse(Vote.objects.filter(voter=self.voter).exists())


class ReceiptTests(TestCase):
    def setUp(self):
        self.service = VotingService()
        self.voter = make_voter("alice")
        self.election = make_election()
        self.candidate = Candidate.objects.create(election=self.election, name="Candidate One")
        self.vote = self.service.cast_vote(self.voter, self.election, self.candidate.id)

    def test_receipt_for_own_vote(self):
        receipt = self.service.get_receipt(self.voter, self.election.id, self.vote.ballot_token)

        self.assertEqual(receipt["ballot_token"], self.vote.ballot_token)
        self.assertEqual(receipt["candidate_name"], "Candidate One")
        self.assertEqual(receipt["election_title"], "Student Council")
        self.assertEqual(receipt["cast_at"], self.vote.cast_at.isoformat())

    def test_token_alone_is_not_enough(self):
        mallory = make_voter("mallory")
        other = make_election(title="Sports Captain")

        self.assertIsNone(self.service.get_receipt(mallory, self.election.id, self.vote.ballot_token))
        self.assertIsNone(self.service.get_receipt(self.voter, other.id, self.vote.ballot_token))
        self.assertIsNone(self.service.get_receipt(self.voter, self.election.id, "VT-000000000000"))


class ResultsTests(TestCase):
    def setUp(self):
        cache.clear()
        self.service = VotingService()
        self.election = make_election()
        self.c1 = Candidate.objects.create(election=self.election, name="Candidate One", position=1)
        self.c2 = Candidate.objects.create(election=self.election, name="Candidate Two", position=2)
        self.c3 = Candidate.objects.create(election=self.election, name="Candidate Three", position=3)

    def test_counts_include_candidates_without_votes(self):
        for name in ("v1", "v2", "v3"):
            self.service.cast_vote(make_voter(name), self.election, self.c2.id)
        self.service.cast_vote(make_voter("v4"), self.election, self.c1.id)

        results = self.service.get_election_results(self.election.id, use_cache=False)

        self.assertEqual(results["total_votes"], 4)
        rows = [(row["candidate"]["name"], row["vote_count"], row["percentage"]) for row in results["candidates"]]
        self.assertEqual(
            rows,
            [("Candidate Two", 3, 75.0), ("Candidate One", 1, 25.0), ("Candidate Three", 0, 0)],
        )

    def test_new_vote_invalidates_cached_results(self):
        self.service.cast_vote(make_voter("v1"), self.election, self.c1.id)
        self.assertEqual(self.service.get_election_results(self.election.id)["total_votes"], 1)

        self.service.cast_vote(make_voter("v2"), self.election, self.c1.id)

        self.assertEqual(self.service.get_election_results(self.election.id)["total_votes"], 2)

    @override_settings(CACHES={
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "shared-results",
        }
    })
    def test_invalidation_reaches_other_service_instances(self):
        reader, writer = VotingService(), VotingService()
        self.assertEqual(reader.get_election_results(self.election.id)["total_votes"], 0)

        writer.cast_vote(make_voter("v1"), self.election, self.c1.id)

        self.assertEqual(reader.get_election_results(self.election.id)["total_votes"], 1)


class VotingApiTests(TestCase):
    def setUp(self):
        cache.clear()
        self.voter = make_voter("alice")
        self.client = APIClient()
        self.client.force_authenticate(self.voter)
        self.election = make_election()
        self.c1 = Candidate.objects.create(election=self.election, name="Candidate One", position=1)
        self.c2 = Candidate.objects.create(election=self.election, name="Candidate Two", position=2)

    def _vote_url(self, election=None):
        return reverse("voting:cast_vote", kwargs={"election_id": (election or self.election).id})

    def test_cast_vote(self):
        response = self.client.post(self._vote_url(), {"candidate_id": str(self.c1.id)}, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(BALLOT_TOKEN_RE.fullmatch(response.data["data"]["ballot_token"]))

    def test_second_vote_conflicts(self):
        self.client.post(self._vote_url(), {"candidate_id": str(self.c1.id)}, format="json")
        response = self.client.post(self._vote_url(), {"candidate_id": str(self.c2.id)}, format="json")

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["reason"], "already_voted")

    def test_unverified_voter_forbidden(self):
        client = APIClient()
        client.force_authenticate(make_voter("bob", verified=False))

        response = client.post(self._vote_url(), {"candidate_id": str(self.c1.id)}, format="json")

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data["reason"], "not_verified")

    def test_ended_election_forbidden(self):
        election = make_election(starts_in=timedelta(hours=-2), ends_in=timedelta(minutes=-5))
        candidate = Candidate.objects.create(election=election, name="Late Entry")

        response = self.client.post(self._vote_url(election), {"candidate_id": str(candidate.id)}, format="json")

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data["reason"], "ended")

    def test_draft_election_is_hidden(self):
        election = make_election(status=Election.Status.DRAFT)
        candidate = Candidate.objects.create(election=election, name="Drafted")

        response = self.client.post(self._vote_url(election), {"candidate_id": str(candidate.id)}, format="json")

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_unknown_candidate(self):
        other = make_election(title="Sports Captain")
        outsider = Candidate.objects.create(election=other, name="Outsider")

        response = self.client.post(self._vote_url(), {"candidate_id": str(outsider.id)}, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["reason"], "invalid_candidate")

    def test_receipt_lookup(self):
        response = self.client.post(self._vote_url(), {"candidate_id": str(self.c1.id)}, format="json")
        token = response.data["data"]["ballot_token"]
        url = reverse("voting:receipt", kwargs={"election_id": self.election.id})

        response = self.client.get(url, {"token": token})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["data"]["candidate_name"], "Candidate One")

        other_client = APIClient()
        other_client.force_authenticate(make_voter("mallory"))
        response = other_client.get(url, {"token": token})
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_results_hidden_from_voters_until_ended(self):
        url = reverse("voting:election_results", kwargs={"election_id": self.election.id})

        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        staff = APIClient()
        staff.force_authenticate(make_voter("admin", is_staff=True))
        response = staff.get(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["data"]["total_votes"], 0)


class _InboxChannel:
    def __init__(self):
        self.inbox = []

    def send(self, to, code):
        self.inbox.append(code)
        return True, None


class VoterJourneyTests(TestCase):
    """Registration through to a receipt, the way a voter walks it."""

    def test_verify_vote_and_get_receipt(self):
        alice = make_voter("alice", verified=False)
        election = make_election(title="E1")
        c1 = Candidate.objects.create(election=election, name="C1", position=1)
        c2 = Candidate.objects.create(election=election, name="C2", position=2)

        voting = VotingService()
        with self.assertRaises(VerificationRequiredError):
            voting.cast_vote(alice, election, c1.id)

        email = _InboxChannel()
        otp = OtpService(channels={"email": email, "sms": _InboxChannel()})
        self.assertEqual(otp.issue_otp(alice, "email"), {"email": True, "sms": False})
        otp.verify_otp(alice, email.inbox[-1])

        alice.refresh_from_db()
        self.assertTrue(alice.is_verified)

        vote = voting.cast_vote(alice, election, c1.id)
        self.assertTrue(BALLOT_TOKEN_RE.fullmatch(vote.ballot_token))

        with self.assertRaises(DuplicateVoteError):
            voting.cast_vote(alice, election, c2.id)

        receipt = voting.get_receipt(alice, election.id, vote.ballot_token)
        self.assertEqual(receipt["candidate_name"], "C1")

        events = list(
            AuditLogEntry.objects.filter(voter=alice).order_by("id").values_list("event_type", flat=True)
        )
        self.assertEqual(
            events,
            ["vote_rejected", "otp_sent", "otp_verified", "vote_cast", "vote_rejected"],
        )


@skipUnlessDBFeature("has_select_for_update")
class ParallelCastTests(TransactionTestCase):
    """Simultaneous casts by one voter leave exactly one ballot."""

    def test_parallel_casts_leave_one_vote(self):
        voter = make_voter("alice")
        election = make_election()
        workers = 6
        candidates = [
            Candidate.objects.create(election=election, name=f"Candidate {index}", position=index)
            for index in range(workers)
        ]

        barrier = threading.Barrier(workers)
        outcomes = []
        lock = threading.Lock()

        def cast(candidate):
            try:
                barrier.wait()
                try:
                    VotingService().cast_vote(voter, election, candidate.id)
                    outcome = "cast"
                except DuplicateVoteError:
                    outcome = "duplicate"
                with lock:
                    outcomes.append(outcome)
            finally:
                connection.close()

        threads = [threading.Thread(target=cast, args=(candidate,)) for candidate in candidates]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count("cast"), 1)
        self.assertEqual(outcomes.count("duplicate"), workers - 1)
        self.assertEqual(Vote.objects.filter(voter=voter, election=election).count(), 1)
        rejected = AuditLogEntry.objects.filter(event_type=AuditLogEntry.EventType.VOTE_REJECTED)
        self.assertEqual(
            sorted(entry.details["reason"] for entry in rejected),
            ["already_voted"] * (workers - 1),
        )
