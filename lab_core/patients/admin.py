from django.contrib import admin

from lab_core.patients.models import Patient


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    list_display = ("id", "full_name", "gender", "date_of_birth", "phone_number", "created_at")
    search_fields = ("id", "full_name", "phone_number", "email")
    ordering = ("-created_at",)
