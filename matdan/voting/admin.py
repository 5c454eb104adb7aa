from django.contrib import admin

from .models import Vote


@admin.register(Vote)
class VoteAdmin(admin.ModelAdmin):
    list_display = ("ballot_token", "election", "cast_at")
    list_filter = ("election",)
    search_fields = ("ballot_token",)
    readonly_fields = ("ballot_token", "voter", "election", "candidate", "cast_at")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def has_view_permission(self, request, obj=None):
        return request.user.is_superuser
