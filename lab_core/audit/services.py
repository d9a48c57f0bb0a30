# lab_core/audit/services.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from django.core.serializers.json import DjangoJSONEncoder

from lab_core.audit.models import ActionType, EventLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    id: str
    action_type: str
    event_code: str
    entity_type: str
    entity_id: str
    actor_user_id: int | None
    description: str
    metadata: Dict[str, Any]


class AuditService:
    """
    Event-log sink. Every mutating pipeline operation reports here.
    Writes join the caller's transaction, so a rolled-back operation leaves no event.
    """

    def log(
        self,
        *,
        action_type: str,
        event_code: str,
        entity_type: str,
        entity_id: str,
        actor_user_id: int | None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditRecord:
        if action_type not in ActionType.values:
            raise ValueError(f"Unknown audit action_type: {action_type}")

        # round-trip through the Django encoder so dates/decimals land as JSON
        metadata = json.loads(json.dumps(metadata or {}, cls=DjangoJSONEncoder))

        ev = EventLog.objects.create(
            action_type=action_type,
            event_code=event_code,
            entity_type=entity_type,
            entity_id=str(entity_id),
            actor_user_id=actor_user_id,
            description=description,
            metadata=metadata,
        )
        logger.info("%s %s %s by user=%s", event_code, entity_type, entity_id, actor_user_id)

        return AuditRecord(
            id=ev.id,
            action_type=action_type,
            event_code=event_code,
            entity_type=entity_type,
            entity_id=str(entity_id),
            actor_user_id=actor_user_id,
            description=description,
            metadata=metadata,
        )
