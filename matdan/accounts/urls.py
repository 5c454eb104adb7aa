from django.urls import path

from . import views

urlpatterns = [
    path("register/", views.UserRegistrationView.as_view(), name="register"),
    path("login/", views.CustomAuthToken.as_view(), name="api_token_auth"),
    path("me/", views.VoterProfileView.as_view(), name="voter_profile"),
]
