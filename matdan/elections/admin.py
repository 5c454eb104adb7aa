import logging

from audit.logger import EventType, record_event
from django.contrib import admin

from .models import Candidate, Election

logger = logging.getLogger("elections")


class CandidateInline(admin.TabularInline):
    model = Candidate
    extra = 0
    fields = ("name", "position", "bio", "image_url")


class ElectionAdmin(admin.ModelAdmin):
    list_display = ("title", "status", "start_time", "end_time", "created_at")
    list_filter = ("status",)
    search_fields = ("title",)
    inlines = [CandidateInline]

    def has_change_permission(self, request, obj=None):
        return request.user.is_superuser

    def has_view_permission(self, request, obj=None):
        return request.user.is_staff or request.user.is_superuser

    def save_model(self, request, obj, form, change):
        if not change and obj.created_by_id is None:
            obj.created_by = request.user
        super().save_model(request, obj, form, change)
        if change:
            logger.info(f"Election updated by admin : {request.user.username} - {obj.id}")
        else:
            logger.info(f"Election created by admin: {request.user.username} - {obj.id}")
        record_event(
            EventType.ELECTION_UPDATED if change else EventType.ELECTION_CREATED,
            voter=request.user,
            details={"election_id": str(obj.id), "status": obj.status},
        )


class CandidateAdmin(admin.ModelAdmin):
    list_display = ("name", "election", "position")
    list_filter = ("election",)
    ordering = ("election", "position")

    def has_add_permission(self, request):
        return request.user.is_superuser

    def has_view_permission(self, request, obj=None):
        return request.user.is_staff or request.user.is_superuser

    def has_change_permission(self, request, obj=None):
        return request.user.is_superuser

    def save_model(self, request, obj, form, change):
        super().save_model(request, obj, form, change)
        if change:
            logger.info(f"Candidate updated by admin: {request.user.username} - {obj.id}")
            return
        logger.info(f"Candidate added by admin : {request.user.username} - {obj.id}")
        record_event(
            EventType.CANDIDATE_ADDED,
            voter=request.user,
            details={"election_id": str(obj.election_id), "candidate_id": str(obj.id)},
        )


admin.site.register(Election, ElectionAdmin)
admin.site.register(Candidate, CandidateAdmin)
