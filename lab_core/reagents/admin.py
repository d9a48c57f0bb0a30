from django.contrib import admin

from lab_core.reagents.models import InstrumentReagent, ReagentInventory, ReagentUsageHistory


@admin.register(ReagentInventory)
class ReagentInventoryAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "reagent_name",
        "lot_number",
        "expiration_date",
        "quantity_received",
        "quantity_in_stock",
        "status",
    )
    list_filter = ("status", "reagent_name")
    search_fields = ("id", "reagent_name", "lot_number", "catalog_number")
    ordering = ("reagent_name", "expiration_date")


@admin.register(InstrumentReagent)
class InstrumentReagentAdmin(admin.ModelAdmin):
    list_display = ("id", "instrument", "reagent_name", "lot_number", "quantity", "quantity_remaining", "status")
    list_filter = ("status", "reagent_name")
    search_fields = ("id", "lot_number", "instrument__name")
    ordering = ("-installed_at",)


@admin.register(ReagentUsageHistory)
class ReagentUsageHistoryAdmin(admin.ModelAdmin):
    list_display = ("id", "reagent_lot_number", "instrument", "test_order_id", "quantity_used", "used_at")
    search_fields = ("id", "reagent_lot_number", "test_order_id")
    ordering = ("-used_at",)

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
