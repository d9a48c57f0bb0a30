from django.contrib import admin

from lab_core.audit.models import EventLog


@admin.register(EventLog)
class EventLogAdmin(admin.ModelAdmin):
    list_display = ("occurred_at", "action_type", "event_code", "entity_type", "entity_id", "actor_user_id")
    list_filter = ("action_type", "event_code", "entity_type")
    search_fields = ("entity_id", "event_code", "description")
    ordering = ("-occurred_at",)

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
