# lab_core/orders/models.py
from django.db import models

from lab_core.catalog.models import Instrument, Parameter
from lab_core.common.models import DocumentModel
from lab_core.flagging.models import FlagType
from lab_core.patients.models import Patient


class OrderStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    RUNNING = "running", "Running"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"
    FAILED = "failed", "Failed"


OPEN_STATUSES = (OrderStatus.PENDING, OrderStatus.RUNNING)
TERMINAL_STATUSES = (OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.FAILED)

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.RUNNING, OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.FAILED},
    OrderStatus.RUNNING: {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.FAILED},
}


class TestOrder(DocumentModel):
    order_number = models.CharField(max_length=32, unique=True)
    barcode = models.CharField(max_length=32, unique=True)

    # null for barcode intake before the sample is matched to a patient
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, null=True, blank=True, related_name="test_orders")
    instrument = models.ForeignKey(
        Instrument,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="test_orders",
    )

    status = models.CharField(max_length=16, choices=OrderStatus.choices, default=OrderStatus.PENDING, db_index=True)
    run_by = models.BigIntegerField(null=True, blank=True)
    run_at = models.DateTimeField(null=True, blank=True)

    created_by = models.BigIntegerField(null=True, blank=True)
    updated_by = models.BigIntegerField(null=True, blank=True)

    class Meta:
        db_table = "orders_test_order"
        indexes = [
            models.Index(fields=["patient", "status"]),
            models.Index(fields=["instrument", "status"]),
        ]

    def __str__(self) -> str:
        return self.order_number

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TestResult(DocumentModel):
    """
    One measured parameter. The flag is decided when the row is written and
    never recomputed afterwards.
    """
    test_order = models.ForeignKey(TestOrder, on_delete=models.CASCADE, related_name="results")
    position = models.PositiveIntegerField()

    parameter = models.ForeignKey(Parameter, on_delete=models.PROTECT, related_name="+")
    parameter_code = models.CharField(max_length=32)
    result_value = models.FloatField()
    unit = models.CharField(max_length=32, blank=True, default="")
    reference_range_text = models.CharField(max_length=128, blank=True, default="")

    is_flagged = models.BooleanField(default=False)
    flag_type = models.CharField(max_length=16, choices=FlagType.choices, null=True, blank=True)
    flagging_configuration_id = models.CharField(max_length=24, null=True, blank=True)

    reagent_lot_number = models.CharField(max_length=64, null=True, blank=True)
    measured_at = models.DateTimeField()

    class Meta:
        db_table = "orders_test_result"
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(fields=["test_order", "position"], name="uq_result_order_position"),
        ]


class OrderComment(DocumentModel):
    test_order = models.ForeignKey(TestOrder, on_delete=models.CASCADE, related_name="comments")
    position = models.PositiveIntegerField()
    comment_text = models.TextField()

    created_by = models.BigIntegerField(null=True, blank=True)
    updated_by = models.BigIntegerField(null=True, blank=True)
    deleted_at = models.DateTimeField(null=True, blank=True)
    deleted_by = models.BigIntegerField(null=True, blank=True)

    class Meta:
        db_table = "orders_comment"
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(fields=["test_order", "position"], name="uq_comment_order_position"),
        ]


class RawStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PROCESSED = "processed", "Processed"
    SYNCED = "synced", "Synced"


class RawTestResult(DocumentModel):
    """
    Instrument exchange as received, awaiting decode-and-flag. Becomes
    deletable only once synced.
    """
    test_order = models.ForeignKey(TestOrder, on_delete=models.CASCADE, related_name="raw_results")
    barcode = models.CharField(max_length=32, db_index=True)
    instrument = models.ForeignKey(Instrument, on_delete=models.PROTECT, related_name="raw_results")
    hl7_message = models.TextField()

    status = models.CharField(max_length=16, choices=RawStatus.choices, default=RawStatus.PENDING, db_index=True)
    can_delete = models.BooleanField(default=False)
    synced_at = models.DateTimeField(null=True, blank=True)
    created_by = models.BigIntegerField(null=True, blank=True)

    class Meta:
        db_table = "orders_raw_test_result"
        indexes = [models.Index(fields=["status", "updated_at"])]
