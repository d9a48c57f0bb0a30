# lab_core/orders/filters.py
import django_filters as df

from lab_core.orders.models import RawTestResult, TestOrder


class TestOrderFilter(df.FilterSet):
    status = df.CharFilter(field_name="status")
    patient_id = df.CharFilter(field_name="patient_id")
    instrument_id = df.CharFilter(field_name="instrument_id")
    barcode = df.CharFilter(field_name="barcode")
    order_number = df.CharFilter(field_name="order_number")
    created_from = df.IsoDateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_to = df.IsoDateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = TestOrder
        fields = ["status", "patient_id", "instrument_id", "barcode", "order_number", "created_from", "created_to"]


class RawTestResultFilter(df.FilterSet):
    status = df.CharFilter(field_name="status")
    barcode = df.CharFilter(field_name="barcode")
    test_order_id = df.CharFilter(field_name="test_order_id")
    instrument_id = df.CharFilter(field_name="instrument_id")

    class Meta:
        model = RawTestResult
        fields = ["status", "barcode", "test_order_id", "instrument_id"]
