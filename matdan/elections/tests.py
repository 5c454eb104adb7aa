from datetime import timedelta

from accounts.models import User
from audit.models import AuditLogEntry
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from .models import Candidate, Election
from .serializers import CandidateSerializer, ElectionSerializer


class ElectionSerializerTest(TestCase):
    # method that test the serializer with valid election data
    def test_valid_election_data(self):
        data = {
            "title": "Student Council Election",
            "start_time": timezone.now(),
            "end_time": timezone.now() + timedelta(days=1),
            "status": "upcoming",
        }

        serializer = ElectionSerializer(data=data)

        self.assertTrue(serializer.is_valid(), serializer.errors)

    # method to test .save() work or not and confirm the DB interaction
    def test_serializer_creates_election(self):
        data = {
            "title": "Class Representative Election",
            "start_time": timezone.now(),
            "end_time": timezone.now() + timedelta(days=2),
        }

        serializer = ElectionSerializer(data=data)
        serializer.is_valid(raise_exception=True)

        election = serializer.save()

        self.assertEqual(Election.objects.count(), 1)
        self.assertEqual(election.title, data["title"])
        self.assertEqual(election.status, Election.Status.DRAFT)

    # method  to test if title is not provided or too less
    def test_invalid_title_too_short(self):
        data = {
            "title": "Hi",
            "start_time": timezone.now(),
            "end_time": timezone.now() + timedelta(days=1),
        }

        serializer = ElectionSerializer(data=data)

        self.assertFalse(serializer.is_valid())
        self.assertIn("title", serializer.errors)

    # method to test the datetime fields
    def test_end_time_before_start_time(self):
        data = {
            "title": "Invalid Election",
            "start_time": timezone.now(),
            "end_time": timezone.now() - timedelta(hours=1),
        }

        serializer = ElectionSerializer(data=data)

        self.assertFalse(serializer.is_valid())
        self.assertIn("non_field_errors", serializer.errors)

    # several elections may run at the same time
    def test_overlapping_active_elections_allowed(self):
        Election.objects.create(
            title="Existing Active Election",
            start_time=timezone.now(),
            end_time=timezone.now() + timedelta(days=1),
            status=Election.Status.ACTIVE,
        )

        data = {
            "title": "Another Active Election",
            "start_time": timezone.now(),
            "end_time": timezone.now() + timedelta(days=2),
            "status": "active",
        }

        serializer = ElectionSerializer(data=data)

        self.assertTrue(serializer.is_valid(), serializer.errors)


class EffectiveStatusTest(TestCase):
    def setUp(self):
        self.now = timezone.now()
        self.election = Election(
            title="Window Test",
            start_time=self.now,
            end_time=self.now + timedelta(hours=2),
            status=Election.Status.UPCOMING,
        )

    def test_status_follows_time_window(self):
        self.assertEqual(self.election.effective_status(self.now - timedelta(seconds=1)), "upcoming")
        self.assertEqual(self.election.effective_status(self.now), "active")
        self.assertEqual(self.election.effective_status(self.now + timedelta(hours=2)), "ended")

    def test_draft_never_opens(self):
        self.election.status = Election.Status.DRAFT
        self.assertFalse(self.election.is_open(self.now + timedelta(hours=1)))

    def test_ended_override(self):
        self.election.status = Election.Status.ENDED
        self.assertEqual(self.election.effective_status(self.now + timedelta(hours=1)), "ended")


class CandidateSerializerTest(TestCase):
    def setUp(self):
        self.election = Election.objects.create(
            title="Student Council",
            start_time=timezone.now(),
            end_time=timezone.now() + timedelta(days=1),
        )

    def test_single_letter_name_rejected(self):
        serializer = CandidateSerializer(data={"name": "A"}, context={"election_id": self.election.id})
        self.assertFalse(serializer.is_valid())

    def test_duplicate_name_in_same_election_rejected(self):
        Candidate.objects.create(election=self.election, name="Asha")

        serializer = CandidateSerializer(data={"name": "Asha"}, context={"election_id": self.election.id})

        self.assertFalse(serializer.is_valid())
        self.assertIn("non_field_errors", serializer.errors)

    def test_same_name_in_other_election_allowed(self):
        other = Election.objects.create(
            title="Sports Captain",
            start_time=timezone.now(),
            end_time=timezone.now() + timedelta(days=1),
        )
        Candidate.objects.create(election=other, name="Asha")

        serializer = CandidateSerializer(data={"name": "Asha"}, context={"election_id": self.election.id})

        self.assertTrue(serializer.is_valid(), serializer.errors)


class ElectionApiTest(TestCase):
    def setUp(self):
        self.admin = User.objects.create_user(username="admin", password="pw-123456!", is_staff=True)
        self.voter = User.objects.create_user(username="voter", password="pw-123456!")
        self.client = APIClient()
        now = timezone.now()
        self.published = Election.objects.create(
            title="Published", start_time=now, end_time=now + timedelta(days=1), status="active"
        )
        self.draft = Election.objects.create(
            title="Drafted", start_time=now, end_time=now + timedelta(days=1)
        )

    def test_voter_cannot_create_election(self):
        self.client.force_authenticate(self.voter)
        response = self.client.post(
            reverse("elections:election-list"),
            {
                "title": "Sneaky",
                "start_time": timezone.now().isoformat(),
                "end_time": (timezone.now() + timedelta(days=1)).isoformat(),
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_admin_creates_election(self):
        self.client.force_authenticate(self.admin)
        response = self.client.post(
            reverse("elections:election-list"),
            {
                "title": "Class Rep",
                "start_time": timezone.now().isoformat(),
                "end_time": (timezone.now() + timedelta(days=1)).isoformat(),
            },
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        election = Election.objects.get(title="Class Rep")
        self.assertEqual(election.created_by, self.admin)
        entry = AuditLogEntry.objects.get(event_type=AuditLogEntry.EventType.ELECTION_CREATED)
        self.assertEqual(entry.details["election_id"], str(election.id))

    def test_voters_never_see_drafts(self):
        self.client.force_authenticate(self.voter)

        response = self.client.get(reverse("elections:election-list"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        titles = [row["title"] for row in response.data]
        self.assertEqual(titles, ["Published"])

        response = self.client.get(reverse("elections:election-detail", kwargs={"pk": self.draft.id}))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_candidates_listed_in_ballot_order(self):
        Candidate.objects.create(election=self.published, name="Second", position=2)
        Candidate.objects.create(election=self.published, name="First", position=1)
        self.client.force_authenticate(self.voter)

        response = self.client.get(
            reverse("elections:election-candidates", kwargs={"election_id": self.published.id})
        )

        self.assertEqual([row["name"] for row in response.data], ["First", "Second"])

    def test_admin_adds_candidate(self):
        self.client.force_authenticate(self.admin)

        response = self.client.post(
            reverse("elections:election-candidates", kwargs={"election_id": self.draft.id}),
            {"name": "Newcomer", "position": 1},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(self.draft.candidates.filter(name="Newcomer").exists())
        self.assertTrue(
            AuditLogEntry.objects.filter(event_type=AuditLogEntry.EventType.CANDIDATE_ADDED).exists()
        )
