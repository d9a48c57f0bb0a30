# lab_core/orders/api/serializers.py
from __future__ import annotations

from rest_framework import serializers

from lab_core.orders.models import OrderComment, RawTestResult, TestOrder, TestResult
from lab_core.patients.models import Patient


class TestOrderCreateSerializer(serializers.Serializer):
    patient_id = serializers.CharField(max_length=24)
    instrument_id = serializers.CharField(max_length=24, required=False, allow_null=True, allow_blank=True)


class TestOrderUpdateSerializer(serializers.Serializer):
    # order fields
    status = serializers.CharField(max_length=16, required=False)
    instrument_id = serializers.CharField(max_length=24, required=False, allow_null=True)
    patient_id = serializers.CharField(max_length=24, required=False)

    # patient demographics
    full_name = serializers.CharField(max_length=255, required=False)
    date_of_birth = serializers.DateField(required=False, allow_null=True)
    gender = serializers.CharField(max_length=16, required=False, allow_blank=True)
    phone_number = serializers.CharField(max_length=32, required=False, allow_blank=True)
    address = serializers.CharField(max_length=512, required=False, allow_blank=True)


class ProcessSampleSerializer(serializers.Serializer):
    barcode = serializers.CharField(max_length=32)
    instrument_id = serializers.CharField(max_length=24)


class TestResultInputSerializer(serializers.Serializer):
    parameter_id = serializers.CharField(max_length=24)
    result_value = serializers.FloatField()
    unit = serializers.CharField(max_length=32, required=False, allow_blank=True)
    reagent_lot_number = serializers.CharField(max_length=64, required=False, allow_blank=True, allow_null=True)


class AddResultsSerializer(serializers.Serializer):
    results = TestResultInputSerializer(many=True, allow_empty=False)


class ReagentUsageItemSerializer(serializers.Serializer):
    reagent_lot_number = serializers.CharField(max_length=64)
    quantity_used = serializers.FloatField()
    notes = serializers.CharField(max_length=512, required=False, allow_blank=True)


class CompleteOrderSerializer(serializers.Serializer):
    reagent_usage = ReagentUsageItemSerializer(many=True, required=False)


class CommentWriteSerializer(serializers.Serializer):
    comment_text = serializers.CharField(max_length=4000)


# -------------------------------------------------------------------
# Read models
# -------------------------------------------------------------------

class PatientSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Patient
        fields = ["id", "full_name", "date_of_birth", "gender", "phone_number", "email", "address"]


class TestResultSerializer(serializers.ModelSerializer):
    parameter_id = serializers.CharField(read_only=True)

    class Meta:
        model = TestResult
        fields = [
            "id",
            "position",
            "parameter_id",
            "parameter_code",
            "result_value",
            "unit",
            "reference_range_text",
            "is_flagged",
            "flag_type",
            "flagging_configuration_id",
            "reagent_lot_number",
            "measured_at",
        ]
        read_only_fields = fields


class OrderCommentSerializer(serializers.ModelSerializer):
    index = serializers.IntegerField(source="position", read_only=True)

    class Meta:
        model = OrderComment
        fields = [
            "id",
            "index",
            "comment_text",
            "created_by",
            "created_at",
            "updated_by",
            "updated_at",
            "deleted_at",
        ]
        read_only_fields = fields


class TestOrderSerializer(serializers.ModelSerializer):
    """
    Comments exclude soft-deleted entries unless the serializer context
    carries include_deleted=True.
    """
    patient_id = serializers.CharField(read_only=True, allow_null=True)
    patient = PatientSummarySerializer(read_only=True, allow_null=True)
    instrument_id = serializers.CharField(read_only=True, allow_null=True)
    instrument_name = serializers.CharField(source="instrument.name", read_only=True, default=None)
    test_results = TestResultSerializer(source="results", many=True, read_only=True)
    comments = serializers.SerializerMethodField()

    class Meta:
        model = TestOrder
        fields = [
            "id",
            "order_number",
            "barcode",
            "status",
            "patient_id",
            "patient",
            "instrument_id",
            "instrument_name",
            "run_by",
            "run_at",
            "test_results",
            "comments",
            "created_by",
            "updated_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_comments(self, obj) -> list[dict]:
        include_deleted = bool(self.context.get("include_deleted"))
        rows = [c for c in obj.comments.all() if include_deleted or c.deleted_at is None]
        return OrderCommentSerializer(rows, many=True).data


class TestOrderListSerializer(serializers.ModelSerializer):
    patient_id = serializers.CharField(read_only=True, allow_null=True)
    patient_name = serializers.CharField(source="patient.full_name", read_only=True, default=None)
    instrument_id = serializers.CharField(read_only=True, allow_null=True)
    result_count = serializers.SerializerMethodField()
    flagged_count = serializers.SerializerMethodField()

    class Meta:
        model = TestOrder
        fields = [
            "id",
            "order_number",
            "barcode",
            "status",
            "patient_id",
            "patient_name",
            "instrument_id",
            "run_at",
            "result_count",
            "flagged_count",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_result_count(self, obj) -> int:
        return len(obj.results.all())

    def get_flagged_count(self, obj) -> int:
        return sum(1 for r in obj.results.all() if r.is_flagged)


class RawTestResultSerializer(serializers.ModelSerializer):
    test_order_id = serializers.CharField(read_only=True)
    instrument_id = serializers.CharField(read_only=True)

    class Meta:
        model = RawTestResult
        fields = [
            "id",
            "test_order_id",
            "barcode",
            "instrument_id",
            "hl7_message",
            "status",
            "can_delete",
            "synced_at",
            "created_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class ProcessSampleResultSerializer(serializers.Serializer):
    order = TestOrderSerializer()
    raw_result = RawTestResultSerializer(allow_null=True)
    isNew = serializers.BooleanField()
