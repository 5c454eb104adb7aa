from django.contrib import admin

from .models import AuditLogEntry


@admin.register(AuditLogEntry)
class AuditLogEntryAdmin(admin.ModelAdmin):
    list_display = ("created_at", "event_type", "voter", "ip_address")
    list_filter = ("event_type",)
    search_fields = ("voter__username", "voter__email")
    readonly_fields = ("event_type", "voter", "ip_address", "details", "created_at")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def has_view_permission(self, request, obj=None):
        return request.user.is_staff or request.user.is_superuser
