# lab_core/reagents/models.py
from django.db import models

from lab_core.catalog.models import Instrument
from lab_core.common.models import DocumentModel


class InventoryStatus(models.TextChoices):
    RECEIVED = "Received", "Received"
    PARTIAL_SHIPMENT = "Partial Shipment", "Partial Shipment"
    RETURNED = "Returned", "Returned"


class InstalledStatus(models.TextChoices):
    IN_USE = "in_use", "In use"
    NOT_IN_USE = "not_in_use", "Not in use"
    EXPIRED = "expired", "Expired"


class ReagentInventory(DocumentModel):
    """
    Warehouse lot. quantity_in_stock is debited by installs and never exceeds
    quantity_received; a Returned lot holds no stock.
    """
    reagent_name = models.CharField(max_length=128, db_index=True)
    catalog_number = models.CharField(max_length=64, blank=True, default="")
    vendor_name = models.CharField(max_length=255, blank=True, default="")
    description = models.CharField(max_length=512, blank=True, default="")

    lot_number = models.CharField(max_length=64, db_index=True)
    expiration_date = models.DateField()

    quantity_ordered = models.FloatField(null=True, blank=True)
    quantity_received = models.FloatField()
    quantity_in_stock = models.FloatField()

    usage_per_run_min = models.FloatField(null=True, blank=True)
    usage_per_run_max = models.FloatField(null=True, blank=True)
    usage_unit = models.CharField(max_length=16, blank=True, default="mL")

    status = models.CharField(max_length=32, choices=InventoryStatus.choices, default=InventoryStatus.RECEIVED)
    returned_reason = models.CharField(max_length=512, blank=True, default="")

    received_by = models.BigIntegerField(null=True, blank=True)
    updated_by = models.BigIntegerField(null=True, blank=True)

    class Meta:
        db_table = "reagents_inventory"
        constraints = [
            models.UniqueConstraint(fields=["reagent_name", "lot_number"], name="uq_reagent_lot"),
            models.CheckConstraint(
                condition=models.Q(quantity_in_stock__gte=0)
                & models.Q(quantity_in_stock__lte=models.F("quantity_received")),
                name="ck_inventory_stock_bounds",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.reagent_name} lot {self.lot_number}"


class InstrumentReagent(DocumentModel):
    """
    Point-in-time copy of an inventory lot installed on an instrument.
    inventory_id is a plain reference, not a FK: later master-data edits must
    not change what was installed.
    """
    instrument = models.ForeignKey(Instrument, on_delete=models.PROTECT, related_name="reagents")
    inventory_id = models.CharField(max_length=24, db_index=True)

    reagent_name = models.CharField(max_length=128, db_index=True)
    description = models.CharField(max_length=512, blank=True, default="")
    vendor_name = models.CharField(max_length=255, blank=True, default="")
    catalog_number = models.CharField(max_length=64, blank=True, default="")
    lot_number = models.CharField(max_length=64, db_index=True)
    expiration_date = models.DateField()
    usage_per_run_min = models.FloatField(null=True, blank=True)
    usage_per_run_max = models.FloatField(null=True, blank=True)
    usage_unit = models.CharField(max_length=16, blank=True, default="mL")

    quantity = models.FloatField()
    quantity_remaining = models.FloatField()

    status = models.CharField(max_length=16, choices=InstalledStatus.choices, default=InstalledStatus.IN_USE, db_index=True)
    installed_at = models.DateTimeField()
    installed_by = models.BigIntegerField(null=True, blank=True)
    status_changed_at = models.DateTimeField(null=True, blank=True)
    status_changed_by = models.BigIntegerField(null=True, blank=True)

    class Meta:
        db_table = "reagents_instrument_reagent"
        indexes = [
            models.Index(fields=["instrument", "lot_number", "status"]),
            models.Index(fields=["instrument", "reagent_name", "status"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(quantity_remaining__gte=0)
                & models.Q(quantity_remaining__lte=models.F("quantity")),
                name="ck_installed_remaining_bounds",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.reagent_name} lot {self.lot_number} on {self.instrument_id}"


class ReagentUsageHistory(DocumentModel):
    """
    Append-only consumption ledger. Corrections are new rows pointing at the
    entry they reverse (negative quantity_used), never edits.
    """
    reagent_lot_number = models.CharField(max_length=64, db_index=True)
    instrument = models.ForeignKey(Instrument, on_delete=models.PROTECT, related_name="reagent_usage")
    instrument_reagent_id = models.CharField(max_length=24, db_index=True)
    test_order_id = models.CharField(max_length=24, null=True, blank=True, db_index=True)

    quantity_used = models.FloatField()
    used_by = models.BigIntegerField(null=True, blank=True)
    used_at = models.DateTimeField(db_index=True)
    notes = models.CharField(max_length=512, blank=True, default="")
    corrects = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="corrections",
    )

    class Meta:
        db_table = "reagents_usage_history"
        indexes = [models.Index(fields=["instrument", "reagent_lot_number", "used_at"])]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Usage history entries are append-only")
        super().save(*args, **kwargs)
