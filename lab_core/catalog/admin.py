from django.contrib import admin

from lab_core.catalog.models import Instrument, Parameter


@admin.register(Instrument)
class InstrumentAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "model_name", "serial_number", "mode", "created_at")
    list_filter = ("mode",)
    search_fields = ("id", "name", "serial_number")


@admin.register(Parameter)
class ParameterAdmin(admin.ModelAdmin):
    list_display = ("parameter_code", "parameter_name", "unit", "is_active")
    list_filter = ("is_active",)
    search_fields = ("parameter_code", "parameter_name")
