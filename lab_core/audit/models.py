# lab_core/audit/models.py
from django.db import models

from lab_core.common.models import DocumentModel


class ActionType(models.TextChoices):
    CREATE = "CREATE", "Create"
    UPDATE = "UPDATE", "Update"
    DELETE = "DELETE", "Delete"


class EventLog(DocumentModel):
    """
    Immutable audit record: who did what to which entity, and what changed.
    """
    action_type = models.CharField(max_length=16, choices=ActionType.choices, db_index=True)
    event_code = models.CharField(max_length=128, db_index=True)  # e.g. "test_order.completed"
    entity_type = models.CharField(max_length=128, db_index=True)  # e.g. "TestOrder"
    entity_id = models.CharField(max_length=24, db_index=True)

    actor_user_id = models.BigIntegerField(null=True, blank=True, db_index=True)
    description = models.TextField(blank=True, default="")

    occurred_at = models.DateTimeField(auto_now_add=True, db_index=True)
    metadata = models.JSONField(default=dict)

    class Meta:
        db_table = "audit_event_log"
        indexes = [
            models.Index(fields=["entity_type", "entity_id"]),
            models.Index(fields=["event_code", "occurred_at"]),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("EventLog entries are immutable")
        super().save(*args, **kwargs)
