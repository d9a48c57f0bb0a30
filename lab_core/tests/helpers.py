# lab_core/tests/helpers.py
from datetime import timedelta

from django.utils import timezone

from lab_core.reagents.models import InstalledStatus, InstrumentReagent, ReagentInventory


def make_lot(reagent_name="Diluent", lot_number="LOT-D1", *, received=100.0, stock=None, expires_in_days=180, **extra):
    return ReagentInventory.objects.create(
        reagent_name=reagent_name,
        lot_number=lot_number,
        expiration_date=timezone.localdate() + timedelta(days=expires_in_days),
        quantity_received=received,
        quantity_in_stock=received if stock is None else stock,
        **extra,
    )


def install_lot(instrument, lot, *, quantity=50.0, remaining=None, status=InstalledStatus.IN_USE):
    return InstrumentReagent.objects.create(
        instrument=instrument,
        inventory_id=lot.id,
        reagent_name=lot.reagent_name,
        lot_number=lot.lot_number,
        expiration_date=lot.expiration_date,
        quantity=quantity,
        quantity_remaining=quantity if remaining is None else remaining,
        status=status,
        installed_at=timezone.now(),
    )


def body(response):
    """Envelope payload of a DRF test response."""
    return response.json()
