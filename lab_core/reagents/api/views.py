# lab_core/reagents/api/views.py
from __future__ import annotations

from drf_spectacular.utils import extend_schema
from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound

from lab_core.common.api.filtering import apply_filterset
from lab_core.common.api.pagination import paginate
from lab_core.common.api.responses import created, ok
from lab_core.common.wiring import get_container
from lab_core.reagents.api.serializers import (
    InstallReagentSerializer,
    InstrumentReagentSerializer,
    InstrumentReagentStatusSerializer,
    ReagentInventoryCreateSerializer,
    ReagentInventorySerializer,
    ReagentReturnSerializer,
    ReagentUsageCorrectionSerializer,
    ReagentUsageCreateSerializer,
    ReagentUsageHistorySerializer,
)
from lab_core.reagents.filters import InstrumentReagentFilter, ReagentInventoryFilter, ReagentUsageFilter
from lab_core.reagents.models import InstrumentReagent, ReagentInventory, ReagentUsageHistory
from lab_core.reagents.selectors import ReagentSelector


class ReagentInventoryViewSet(viewsets.ViewSet):
    serializer_class = ReagentInventorySerializer
    queryset = ReagentInventory.objects.none()

    def _get(self, pk) -> ReagentInventory:
        try:
            return ReagentSelector.get_inventory(inventory_id=pk)
        except ReagentSelector.NotFound:
            raise NotFound("Reagent inventory lot not found")

    @extend_schema(responses={200: ReagentInventorySerializer(many=True)}, tags=["Reagents"])
    def list(self, request):
        qs = apply_filterset(ReagentInventoryFilter, request, ReagentSelector.list_inventory())
        return paginate(request, qs, ReagentInventorySerializer, message="Reagent inventory retrieved successfully")

    @extend_schema(
        request=ReagentInventoryCreateSerializer,
        responses={201: ReagentInventorySerializer},
        tags=["Reagents"],
    )
    def create(self, request):
        ser = ReagentInventoryCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        lot = get_container().ledger.receive_lot(actor_user_id=request.user.id, data=ser.validated_data)
        return created(ReagentInventorySerializer(lot).data, message="Reagent lot received successfully")

    @extend_schema(responses={200: ReagentInventorySerializer}, tags=["Reagents"])
    def retrieve(self, request, pk=None):
        return ok(ReagentInventorySerializer(self._get(pk)).data)

    @extend_schema(request=ReagentReturnSerializer, responses={200: ReagentInventorySerializer}, tags=["Reagents"])
    @action(detail=True, methods=["post"], url_path="return")
    def mark_returned(self, request, pk=None):
        ser = ReagentReturnSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        lot = get_container().ledger.mark_returned(
            actor_user_id=request.user.id,
            inventory_id=pk,
            reason=ser.validated_data["reason"],
        )
        return ok(ReagentInventorySerializer(lot).data, message="Reagent lot marked as returned")


class InstrumentReagentViewSet(viewsets.ViewSet):
    """
    Installed lots. POST installs (or refills) from a warehouse lot.
    """

    serializer_class = InstrumentReagentSerializer
    queryset = InstrumentReagent.objects.none()

    def _get(self, pk) -> InstrumentReagent:
        try:
            return ReagentSelector.get_installed(instrument_reagent_id=pk)
        except ReagentSelector.NotFound:
            raise NotFound("Instrument reagent not found")

    @extend_schema(responses={200: InstrumentReagentSerializer(many=True)}, tags=["Reagents"])
    def list(self, request):
        qs = apply_filterset(InstrumentReagentFilter, request, ReagentSelector.list_installed())
        return paginate(request, qs, InstrumentReagentSerializer, message="Instrument reagents retrieved successfully")

    @extend_schema(request=InstallReagentSerializer, responses={201: InstrumentReagentSerializer}, tags=["Reagents"])
    def create(self, request):
        ser = InstallReagentSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        result = get_container().ledger.install(actor_user_id=request.user.id, **ser.validated_data)
        data = InstrumentReagentSerializer(self._get(result.reagent.id)).data
        if result.refilled:
            return ok(data, message="Reagent refilled successfully")
        return created(data, message="Reagent installed successfully")

    @extend_schema(responses={200: InstrumentReagentSerializer}, tags=["Reagents"])
    def retrieve(self, request, pk=None):
        return ok(InstrumentReagentSerializer(self._get(pk)).data)

    @extend_schema(
        request=InstrumentReagentStatusSerializer,
        responses={200: InstrumentReagentSerializer},
        tags=["Reagents"],
    )
    @action(detail=True, methods=["patch"], url_path="status")
    def set_status(self, request, pk=None):
        ser = InstrumentReagentStatusSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        get_container().ledger.update_status(
            actor_user_id=request.user.id,
            instrument_reagent_id=pk,
            status=ser.validated_data["status"],
        )
        return ok(InstrumentReagentSerializer(self._get(pk)).data, message="Reagent status updated successfully")


class ReagentUsageViewSet(viewsets.ViewSet):
    serializer_class = ReagentUsageHistorySerializer
    queryset = ReagentUsageHistory.objects.none()

    @extend_schema(responses={200: ReagentUsageHistorySerializer(many=True)}, tags=["Reagents"])
    def list(self, request):
        qs = apply_filterset(ReagentUsageFilter, request, ReagentSelector.list_usage())
        return paginate(request, qs, ReagentUsageHistorySerializer, message="Reagent usage retrieved successfully")

    @extend_schema(
        request=ReagentUsageCreateSerializer,
        responses={201: ReagentUsageHistorySerializer},
        tags=["Reagents"],
    )
    def create(self, request):
        ser = ReagentUsageCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        v = ser.validated_data

        entry = get_container().ledger.record_usage(
            actor_user_id=request.user.id,
            lot_number=v["reagent_lot_number"],
            instrument_id=v["instrument_id"],
            quantity_used=v["quantity_used"],
            test_order_id=v.get("test_order_id"),
            notes=v.get("notes") or "",
        )
        return created(ReagentUsageHistorySerializer(entry).data, message="Reagent usage recorded successfully")

    @extend_schema(
        request=ReagentUsageCorrectionSerializer,
        responses={201: ReagentUsageHistorySerializer},
        tags=["Reagents"],
    )
    @action(detail=True, methods=["post"], url_path="correct")
    def correct(self, request, pk=None):
        ser = ReagentUsageCorrectionSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        entry = get_container().ledger.record_correction(
            actor_user_id=request.user.id,
            usage_id=pk,
            quantity=ser.validated_data.get("quantity"),
            notes=ser.validated_data.get("notes") or "",
        )
        return created(ReagentUsageHistorySerializer(entry).data, message="Usage correction recorded successfully")
