# lab_core/reagents/filters.py
import django_filters as df

from lab_core.reagents.models import InstrumentReagent, ReagentInventory, ReagentUsageHistory


class ReagentInventoryFilter(df.FilterSet):
    reagent_name = df.CharFilter(field_name="reagent_name", lookup_expr="icontains")
    lot_number = df.CharFilter(field_name="lot_number")
    vendor_name = df.CharFilter(field_name="vendor_name", lookup_expr="icontains")
    status = df.CharFilter(field_name="status")
    expires_before = df.DateFilter(field_name="expiration_date", lookup_expr="lte")

    class Meta:
        model = ReagentInventory
        fields = ["reagent_name", "lot_number", "vendor_name", "status", "expires_before"]


class InstrumentReagentFilter(df.FilterSet):
    instrument_id = df.CharFilter(field_name="instrument_id")
    reagent_name = df.CharFilter(field_name="reagent_name", lookup_expr="icontains")
    lot_number = df.CharFilter(field_name="lot_number")
    status = df.CharFilter(field_name="status")

    class Meta:
        model = InstrumentReagent
        fields = ["instrument_id", "reagent_name", "lot_number", "status"]


class ReagentUsageFilter(df.FilterSet):
    reagent_lot_number = df.CharFilter(field_name="reagent_lot_number")
    instrument_id = df.CharFilter(field_name="instrument_id")
    test_order_id = df.CharFilter(field_name="test_order_id")
    used_from = df.IsoDateTimeFilter(field_name="used_at", lookup_expr="gte")
    used_to = df.IsoDateTimeFilter(field_name="used_at", lookup_expr="lte")

    class Meta:
        model = ReagentUsageHistory
        fields = ["reagent_lot_number", "instrument_id", "test_order_id", "used_from", "used_to"]
