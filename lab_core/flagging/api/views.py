# lab_core/flagging/api/views.py
from __future__ import annotations

from drf_spectacular.utils import extend_schema
from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound

from lab_core.common.api.filtering import apply_filterset
from lab_core.common.api.pagination import paginate
from lab_core.common.api.responses import created, ok
from lab_core.common.wiring import get_container
from lab_core.flagging.api.serializers import (
    FlaggingConfigurationCreateSerializer,
    FlaggingConfigurationSerializer,
    FlaggingConfigurationUpdateSerializer,
    FlaggingSyncReportSerializer,
    FlaggingSyncSerializer,
)
from lab_core.flagging.filters import FlaggingConfigurationFilter
from lab_core.flagging.models import FlaggingConfiguration
from lab_core.flagging.selectors import FlaggingConfigurationSelector


class FlaggingConfigurationViewSet(viewsets.ViewSet):
    """
    Thin API layer:
    - serializer validation
    - writes go to FlaggingConfigurationService, reads to the selector
    """

    serializer_class = FlaggingConfigurationSerializer
    queryset = FlaggingConfiguration.objects.none()

    def _get(self, pk) -> FlaggingConfiguration:
        try:
            return FlaggingConfigurationSelector.get(configuration_id=pk)
        except FlaggingConfigurationSelector.NotFound:
            raise NotFound("Flagging configuration not found")

    @extend_schema(
        request=FlaggingConfigurationCreateSerializer,
        responses={201: FlaggingConfigurationSerializer},
        tags=["Flagging Configurations"],
    )
    def create(self, request):
        ser = FlaggingConfigurationCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        cfg = get_container().flagging.create(actor_user_id=request.user.id, data=ser.validated_data)
        return created(
            FlaggingConfigurationSerializer(self._get(cfg.id)).data,
            message="Flagging configuration created successfully",
        )

    @extend_schema(responses={200: FlaggingConfigurationSerializer(many=True)}, tags=["Flagging Configurations"])
    def list(self, request):
        qs = apply_filterset(FlaggingConfigurationFilter, request, FlaggingConfigurationSelector.list())
        return paginate(request, qs, FlaggingConfigurationSerializer, message="Flagging configurations retrieved successfully")

    @extend_schema(responses={200: FlaggingConfigurationSerializer}, tags=["Flagging Configurations"])
    def retrieve(self, request, pk=None):
        return ok(FlaggingConfigurationSerializer(self._get(pk)).data)

    @extend_schema(
        request=FlaggingConfigurationUpdateSerializer,
        responses={200: FlaggingConfigurationSerializer},
        tags=["Flagging Configurations"],
    )
    def update(self, request, pk=None):
        ser = FlaggingConfigurationUpdateSerializer(data=request.data, partial=True)
        ser.is_valid(raise_exception=True)

        get_container().flagging.update(
            actor_user_id=request.user.id,
            configuration_id=pk,
            data=ser.validated_data,
        )
        return ok(
            FlaggingConfigurationSerializer(self._get(pk)).data,
            message="Flagging configuration updated successfully",
        )

    def partial_update(self, request, pk=None):
        return self.update(request, pk=pk)

    @extend_schema(responses={200: None}, tags=["Flagging Configurations"])
    def destroy(self, request, pk=None):
        get_container().flagging.delete(actor_user_id=request.user.id, configuration_id=pk)
        return ok(message="Flagging configuration deleted successfully")

    @extend_schema(
        request=FlaggingSyncSerializer,
        responses={200: FlaggingSyncReportSerializer},
        tags=["Flagging Configurations"],
    )
    @action(detail=False, methods=["post"], url_path="sync")
    def sync(self, request):
        ser = FlaggingSyncSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        report = get_container().flagging.sync(
            actor_user_id=request.user.id,
            configurations=ser.validated_data["configurations"],
        )
        return ok(
            report.as_dict(),
            message=f"Sync completed: {report.created} created, {report.updated} updated, {report.failed} failed",
        )
