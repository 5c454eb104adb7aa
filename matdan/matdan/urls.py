"""
URL configuration for matdan project.

Every API endpoint lives under the versioned `api/v1/` prefix.
"""
from django.contrib import admin
from django.urls import include, path

# API endpoints under a versioned path
api_urlpatterns = [
    path("accounts/", include("accounts.urls")),
    path("elections/", include("elections.urls")),
    path("otp/", include("otp.urls")),
    path("voting/", include("voting.urls")),
]

urlpatterns = [
    path("api/v1/", include(api_urlpatterns)),
    # Non-API paths like admin and auth
    path("admin/", admin.site.urls),
    path("api-auth/", include("rest_framework.urls")),
]
