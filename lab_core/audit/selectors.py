# lab_core/audit/selectors.py
from __future__ import annotations

from django.db.models import QuerySet

from lab_core.audit.models import EventLog


def list_event_logs(
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    event_code: str | None = None,
    action_type: str | None = None,
    actor_user_id: int | None = None,
) -> QuerySet[EventLog]:
    qs = EventLog.objects.all()

    if entity_type:
        qs = qs.filter(entity_type=entity_type)
    if entity_id:
        qs = qs.filter(entity_id=entity_id)
    if event_code:
        qs = qs.filter(event_code=event_code)
    if action_type:
        qs = qs.filter(action_type=action_type)
    if actor_user_id is not None:
        qs = qs.filter(actor_user_id=actor_user_id)

    return qs.order_by("-occurred_at", "-id")
