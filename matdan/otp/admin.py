from django.contrib import admin

from .models import OtpRequest


@admin.register(OtpRequest)
class OtpRequestAdmin(admin.ModelAdmin):
    list_display = ("voter", "delivery_channel", "attempts", "max_attempts", "verified", "created_at", "expires_at")
    list_filter = ("delivery_channel", "verified")
    search_fields = ("voter__username", "voter__email")
    exclude = ("code_hash", "salt")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
