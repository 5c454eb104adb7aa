from django.urls import path

from .views import SendOtpView, VerifyOtpView

app_name = "otp"

urlpatterns = [
    path("send/", SendOtpView.as_view(), name="send_otp"),
    path("verify/", VerifyOtpView.as_view(), name="verify_otp"),
]
