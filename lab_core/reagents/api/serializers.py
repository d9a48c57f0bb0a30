from __future__ import annotations

from rest_framework import serializers

from lab_core.reagents.models import (
    InstrumentReagent,
    InventoryStatus,
    ReagentInventory,
    ReagentUsageHistory,
)


class ReagentInventoryCreateSerializer(serializers.Serializer):
    reagent_name = serializers.CharField(max_length=128)
    catalog_number = serializers.CharField(max_length=64, required=False, allow_blank=True)
    vendor_name = serializers.CharField(max_length=255, required=False, allow_blank=True)
    description = serializers.CharField(max_length=512, required=False, allow_blank=True)
    lot_number = serializers.CharField(max_length=64)
    expiration_date = serializers.DateField()
    quantity_ordered = serializers.FloatField(required=False, allow_null=True, min_value=0)
    quantity_received = serializers.FloatField()
    quantity_in_stock = serializers.FloatField(required=False, allow_null=True)
    usage_per_run_min = serializers.FloatField(required=False, allow_null=True, min_value=0)
    usage_per_run_max = serializers.FloatField(required=False, allow_null=True, min_value=0)
    usage_unit = serializers.CharField(max_length=16, required=False, allow_blank=True)
    status = serializers.ChoiceField(choices=InventoryStatus.choices, required=False)
    returned_reason = serializers.CharField(max_length=512, required=False, allow_blank=True)


class ReagentReturnSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=512, allow_blank=True)


class InstallReagentSerializer(serializers.Serializer):
    inventory_id = serializers.CharField(max_length=24)
    instrument_id = serializers.CharField(max_length=24)
    quantity = serializers.FloatField()


class InstrumentReagentStatusSerializer(serializers.Serializer):
    # free text on purpose: unknown values are rejected by the ledger
    status = serializers.CharField(max_length=16)


class ReagentUsageCreateSerializer(serializers.Serializer):
    reagent_lot_number = serializers.CharField(max_length=64)
    instrument_id = serializers.CharField(max_length=24)
    quantity_used = serializers.FloatField()
    test_order_id = serializers.CharField(max_length=24, required=False, allow_null=True)
    notes = serializers.CharField(max_length=512, required=False, allow_blank=True)


class ReagentUsageCorrectionSerializer(serializers.Serializer):
    quantity = serializers.FloatField(required=False, allow_null=True)
    notes = serializers.CharField(max_length=512, required=False, allow_blank=True)


class ReagentInventorySerializer(serializers.ModelSerializer):
    class Meta:
        model = ReagentInventory
        fields = [
            "id",
            "reagent_name",
            "catalog_number",
            "vendor_name",
            "description",
            "lot_number",
            "expiration_date",
            "quantity_ordered",
            "quantity_received",
            "quantity_in_stock",
            "usage_per_run_min",
            "usage_per_run_max",
            "usage_unit",
            "status",
            "returned_reason",
            "received_by",
            "updated_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class InstrumentReagentSerializer(serializers.ModelSerializer):
    instrument_id = serializers.CharField(read_only=True)
    instrument_name = serializers.CharField(source="instrument.name", read_only=True)

    class Meta:
        model = InstrumentReagent
        fields = [
            "id",
            "instrument_id",
            "instrument_name",
            "inventory_id",
            "reagent_name",
            "description",
            "vendor_name",
            "catalog_number",
            "lot_number",
            "expiration_date",
            "usage_per_run_min",
            "usage_per_run_max",
            "usage_unit",
            "quantity",
            "quantity_remaining",
            "status",
            "installed_at",
            "installed_by",
            "status_changed_at",
            "status_changed_by",
        ]
        read_only_fields = fields


class ReagentUsageHistorySerializer(serializers.ModelSerializer):
    instrument_id = serializers.CharField(read_only=True)
    corrects_id = serializers.CharField(read_only=True, allow_null=True)

    class Meta:
        model = ReagentUsageHistory
        fields = [
            "id",
            "reagent_lot_number",
            "instrument_id",
            "instrument_reagent_id",
            "test_order_id",
            "quantity_used",
            "used_by",
            "used_at",
            "notes",
            "corrects_id",
        ]
        read_only_fields = fields

