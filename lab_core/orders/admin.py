from django.contrib import admin

from lab_core.orders.models import OrderComment, RawTestResult, TestOrder, TestResult


class TestResultInline(admin.TabularInline):
    model = TestResult
    extra = 0
    can_delete = False
    readonly_fields = (
        "position",
        "parameter_code",
        "result_value",
        "unit",
        "reference_range_text",
        "is_flagged",
        "flag_type",
        "measured_at",
    )
    fields = readonly_fields


class OrderCommentInline(admin.TabularInline):
    model = OrderComment
    extra = 0
    can_delete = False
    readonly_fields = ("position", "comment_text", "created_by", "created_at", "deleted_at")
    fields = readonly_fields


@admin.register(TestOrder)
class TestOrderAdmin(admin.ModelAdmin):
    list_display = ("id", "order_number", "barcode", "patient", "instrument", "status", "run_at", "created_at")
    list_filter = ("status",)
    search_fields = ("id", "order_number", "barcode", "patient__full_name")
    ordering = ("-created_at",)
    inlines = [TestResultInline, OrderCommentInline]


@admin.register(RawTestResult)
class RawTestResultAdmin(admin.ModelAdmin):
    list_display = ("id", "barcode", "test_order", "instrument", "status", "can_delete", "created_at")
    list_filter = ("status", "can_delete")
    search_fields = ("id", "barcode")
    ordering = ("-created_at",)
