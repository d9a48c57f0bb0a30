# lab_core/audit/api/views.py
from __future__ import annotations

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import viewsets
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated

from lab_core.audit.api.serializers import EventLogSerializer
from lab_core.audit.models import EventLog
from lab_core.audit.selectors import list_event_logs
from lab_core.common.api.pagination import paginate


class EventLogViewSet(viewsets.GenericViewSet):
    """
    Read-only audit trail.
    """
    permission_classes = [IsAuthenticated]

    serializer_class = EventLogSerializer
    queryset = EventLog.objects.none()

    @extend_schema(
        tags=["Event Logs"],
        responses={200: EventLogSerializer(many=True)},
        parameters=[
            OpenApiParameter(name="entity_type", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False,
                             description="Filter by entity type (e.g. TestOrder, InstrumentReagent)."),
            OpenApiParameter(name="entity_id", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="event_code", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False,
                             description="Filter by event code (e.g. test_order.completed)."),
            OpenApiParameter(name="action_type", type=OpenApiTypes.STR, location=OpenApiParameter.QUERY, required=False,
                             enum=["CREATE", "UPDATE", "DELETE"]),
            OpenApiParameter(name="actor_user_id", type=OpenApiTypes.INT, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="page", type=OpenApiTypes.INT, location=OpenApiParameter.QUERY, required=False),
            OpenApiParameter(name="limit", type=OpenApiTypes.INT, location=OpenApiParameter.QUERY, required=False),
        ],
    )
    def list(self, request):
        actor_user_raw = request.query_params.get("actor_user_id")

        actor_user_id = None
        if actor_user_raw not in (None, ""):
            try:
                actor_user_id = int(actor_user_raw)
            except (TypeError, ValueError):
                raise ValidationError({"actor_user_id": "Invalid actor_user_id (int expected)"})

        qs = list_event_logs(
            entity_type=request.query_params.get("entity_type") or None,
            entity_id=request.query_params.get("entity_id") or None,
            event_code=request.query_params.get("event_code") or None,
            action_type=request.query_params.get("action_type") or None,
            actor_user_id=actor_user_id,
        )
        return paginate(request, qs, EventLogSerializer, message="Event logs retrieved successfully")
