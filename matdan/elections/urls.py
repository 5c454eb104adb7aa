from django.urls import path
from rest_framework.routers import SimpleRouter

from .views import CandidateListByElectionView, ElectionViewSet

app_name = "elections"

router = SimpleRouter()
router.register(r"", ElectionViewSet, basename="election")

urlpatterns = [
    path(
        "<uuid:election_id>/candidates/",
        CandidateListByElectionView.as_view(),
        name="election-candidates",
    ),
]

urlpatterns += router.urls
