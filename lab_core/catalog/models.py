# lab_core/catalog/models.py
from django.db import models

from lab_core.common.models import DocumentModel


class InstrumentMode(models.TextChoices):
    READY = "ready", "Ready"
    MAINTENANCE = "maintenance", "Maintenance"
    INACTIVE = "inactive", "Inactive"


class Instrument(DocumentModel):
    name = models.CharField(max_length=255)
    model_name = models.CharField(max_length=128, blank=True, default="")
    serial_number = models.CharField(max_length=128, blank=True, default="")
    mode = models.CharField(max_length=16, choices=InstrumentMode.choices, default=InstrumentMode.READY, db_index=True)
    mode_reason = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        db_table = "catalog_instrument"

    def __str__(self) -> str:
        return self.name


class Parameter(DocumentModel):
    """
    Measured analyte (WBC, HGB, ...).

    normal_range is either {"min": .., "max": .., "text": ..} or
    {"male": {...}, "female": {...}}.
    """
    parameter_code = models.CharField(max_length=32, unique=True)
    parameter_name = models.CharField(max_length=255)
    unit = models.CharField(max_length=32, blank=True, default="")
    normal_range = models.JSONField(null=True, blank=True)
    is_active = models.BooleanField(default=True, db_index=True)

    class Meta:
        db_table = "catalog_parameter"
        ordering = ["parameter_code"]

    def __str__(self) -> str:
        return self.parameter_code
