import logging

from audit.logger import EventType, record_event
from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from .models import User

logger = logging.getLogger("accounts")


class UserAdmin(BaseUserAdmin):
    list_display = ("username", "email", "phone", "roll_no", "is_verified", "is_staff")
    list_filter = ("is_verified", "is_staff", "is_superuser")
    search_fields = ("username", "email", "roll_no")
    fieldsets = BaseUserAdmin.fieldsets + (
        ("Voter", {"fields": ("phone", "roll_no", "is_verified")}),
    )

    def has_change_permission(self, request, obj=None):
        return request.user.is_superuser

    def has_delete_permission(self, request, obj=None):
        return request.user.is_superuser

    def has_view_permission(self, request, obj=None):
        return request.user.is_superuser or request.user.is_staff

    def save_model(self, request, obj, form, change):
        if change:
            logger.info(f"Voter updated by admin: {request.user.username} - {obj.username}")
        else:
            logger.info(f"Voter created by admin: {request.user.username} - {obj.username}")
        super().save_model(request, obj, form, change)
        record_event(
            EventType.ADMIN_ACTION,
            voter=request.user,
            details={
                "action": "voter_updated" if change else "voter_created",
                "voter_id": obj.pk,
            },
        )


admin.site.register(User, UserAdmin)
