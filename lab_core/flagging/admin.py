from django.contrib import admin

from lab_core.flagging.models import FlaggingConfiguration


@admin.register(FlaggingConfiguration)
class FlaggingConfigurationAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "parameter",
        "gender",
        "age_group",
        "reference_range_min",
        "reference_range_max",
        "flag_type",
        "is_active",
        "updated_at",
    )
    list_filter = ("flag_type", "gender", "age_group", "is_active")
    search_fields = ("id", "parameter__parameter_code")
    ordering = ("-updated_at",)
