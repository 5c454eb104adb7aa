from django.urls import path

from .views import ElectionResultsView, ReceiptView, VoteCreateView

app_name = "voting"

urlpatterns = [
    path("<uuid:election_id>/vote/", VoteCreateView.as_view(), name="cast_vote"),
    path("<uuid:election_id>/receipt/", ReceiptView.as_view(), name="receipt"),
    path(
        "<uuid:election_id>/results/",
        ElectionResultsView.as_view(),
        name="election_results",
    ),
]
