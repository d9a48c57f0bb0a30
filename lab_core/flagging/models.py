# lab_core/flagging/models.py
from django.db import models

from lab_core.catalog.models import Parameter
from lab_core.common.models import DocumentModel


class FlagType(models.TextChoices):
    CRITICAL = "critical", "Critical"
    WARNING = "warning", "Warning"
    INFO = "info", "Info"


class Gender(models.TextChoices):
    MALE = "male", "Male"
    FEMALE = "female", "Female"


class FlaggingConfiguration(DocumentModel):
    """
    Reference-range rule for one parameter. gender/age_group left null act as
    wildcards; several rules may overlap, the resolver picks the most specific.
    """
    parameter = models.ForeignKey(Parameter, on_delete=models.CASCADE, related_name="flagging_configurations")
    gender = models.CharField(max_length=8, choices=Gender.choices, null=True, blank=True)
    age_group = models.CharField(max_length=32, null=True, blank=True)

    reference_range_min = models.FloatField(null=True, blank=True)
    reference_range_max = models.FloatField(null=True, blank=True)
    flag_type = models.CharField(max_length=16, choices=FlagType.choices, default=FlagType.WARNING)
    description = models.CharField(max_length=512, blank=True, default="")
    is_active = models.BooleanField(default=True, db_index=True)

    created_by = models.BigIntegerField(null=True, blank=True)
    updated_by = models.BigIntegerField(null=True, blank=True)

    class Meta:
        db_table = "flagging_configuration"
        indexes = [
            models.Index(fields=["parameter", "is_active"]),
            models.Index(fields=["parameter", "gender", "age_group"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    models.Q(reference_range_min__isnull=True)
                    | models.Q(reference_range_max__isnull=True)
                    | models.Q(reference_range_min__lt=models.F("reference_range_max"))
                ),
                name="ck_flagging_min_lt_max",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.parameter_id} {self.gender or '*'}/{self.age_group or '*'} {self.flag_type}"
