from datetime import timedelta

import pytest
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from lab_core.common.api.exceptions import ConflictError, PreconditionFailedError
from lab_core.reagents.models import (
    InstalledStatus,
    InstrumentReagent,
    InventoryStatus,
    ReagentInventory,
    ReagentUsageHistory,
)
from lab_core.tests.helpers import install_lot, make_lot

pytestmark = pytest.mark.django_db


# ----------------------------
# recordUsage
# ----------------------------

def test_usage_beyond_remaining_is_rejected_and_state_unchanged(container, instrument, user):
    lot = make_lot("Diluent", "LOT-D1")
    installed = install_lot(instrument, lot, quantity=20, remaining=12.5)

    with pytest.raises(PreconditionFailedError) as exc:
        container.ledger.record_usage(
            actor_user_id=user.id,
            lot_number="LOT-D1",
            instrument_id=instrument.id,
            quantity_used=13.5,
        )

    assert "Available: 12.5, Required: 13.5" in str(exc.value.detail)
    installed.refresh_from_db()
    assert installed.quantity_remaining == 12.5
    assert ReagentUsageHistory.objects.count() == 0


def test_usage_debits_remaining_and_appends_history(container, instrument, user):
    lot = make_lot("Diluent", "LOT-D1")
    installed = install_lot(instrument, lot, quantity=20)

    entry = container.ledger.record_usage(
        actor_user_id=user.id,
        lot_number="LOT-D1",
        instrument_id=instrument.id,
        quantity_used=7.5,
        test_order_id="a" * 24,
    )

    installed.refresh_from_db()
    assert installed.quantity_remaining == 12.5
    assert entry.quantity_used == 7.5
    assert entry.instrument_reagent_id == installed.id
    assert entry.test_order_id == "a" * 24


def test_usage_may_drain_exactly_to_zero(container, instrument, user):
    installed = install_lot(instrument, make_lot(), quantity=5)

    container.ledger.record_usage(actor_user_id=user.id, lot_number="LOT-D1", instrument_id=instrument.id, quantity_used=5)

    installed.refresh_from_db()
    assert installed.quantity_remaining == 0


@pytest.mark.parametrize("qty", [0, -1])
def test_non_positive_usage_is_a_validation_error(container, instrument, user, qty):
    install_lot(instrument, make_lot())
    with pytest.raises(ValidationError):
        container.ledger.record_usage(
            actor_user_id=user.id, lot_number="LOT-D1", instrument_id=instrument.id, quantity_used=qty
        )


def test_usage_needs_an_in_use_lot(container, instrument, user):
    install_lot(instrument, make_lot(), status=InstalledStatus.NOT_IN_USE)
    with pytest.raises(PreconditionFailedError):
        container.ledger.record_usage(
            actor_user_id=user.id, lot_number="LOT-D1", instrument_id=instrument.id, quantity_used=1
        )


def test_usage_history_is_append_only(container, instrument, user):
    install_lot(instrument, make_lot())
    entry = container.ledger.record_usage(
        actor_user_id=user.id, lot_number="LOT-D1", instrument_id=instrument.id, quantity_used=1
    )
    entry.notes = "edited"
    with pytest.raises(ValueError):
        entry.save()


# ----------------------------
# corrections
# ----------------------------

def test_correction_returns_quantity_capped_at_installed(container, instrument, user):
    installed = install_lot(instrument, make_lot(), quantity=10)
    entry = container.ledger.record_usage(
        actor_user_id=user.id, lot_number="LOT-D1", instrument_id=instrument.id, quantity_used=4
    )
    # lot topped back up out of band
    InstrumentReagent.objects.filter(id=installed.id).update(quantity_remaining=8)

    correction = container.ledger.record_correction(actor_user_id=user.id, usage_id=entry.id)

    installed.refresh_from_db()
    assert installed.quantity_remaining == 10
    assert correction.quantity_used == -4
    assert correction.corrects_id == entry.id

    with pytest.raises(ConflictError):
        container.ledger.record_correction(actor_user_id=user.id, usage_id=entry.id)


def test_partial_correction(container, instrument, user):
    installed = install_lot(instrument, make_lot(), quantity=10)
    entry = container.ledger.record_usage(
        actor_user_id=user.id, lot_number="LOT-D1", instrument_id=instrument.id, quantity_used=4
    )

    container.ledger.record_correction(actor_user_id=user.id, usage_id=entry.id, quantity=1.5)
    installed.refresh_from_db()
    assert installed.quantity_remaining == 7.5

    other = container.ledger.record_usage(
        actor_user_id=user.id, lot_number="LOT-D1", instrument_id=instrument.id, quantity_used=1
    )
    with pytest.raises(ValidationError):
        container.ledger.record_correction(actor_user_id=user.id, usage_id=other.id, quantity=2)


# ----------------------------
# install
# ----------------------------

def test_install_debits_stock_and_snapshots_the_lot(container, instrument, user):
    lot = make_lot("Lysing", "LOT-L1", received=100, vendor_name="Sysmex", usage_unit="mL")

    result = container.ledger.install(actor_user_id=user.id, inventory_id=lot.id, instrument_id=instrument.id, quantity=30)

    lot.refresh_from_db()
    assert lot.quantity_in_stock == 70
    assert result.refilled is False
    snap = result.reagent
    assert (snap.reagent_name, snap.lot_number, snap.vendor_name) == ("Lysing", "LOT-L1", "Sysmex")
    assert (snap.quantity, snap.quantity_remaining, snap.status) == (30, 30, InstalledStatus.IN_USE)
    assert snap.installed_by == user.id

    # master-data edits do not reach the installed snapshot
    ReagentInventory.objects.filter(id=lot.id).update(vendor_name="Other")
    snap.refresh_from_db()
    assert snap.vendor_name == "Sysmex"


def test_install_same_lot_again_refills(container, instrument, user):
    lot = make_lot("Lysing", "LOT-L1", received=100)
    first = container.ledger.install(actor_user_id=user.id, inventory_id=lot.id, instrument_id=instrument.id, quantity=30)
    container.ledger.record_usage(
        actor_user_id=user.id, lot_number="LOT-L1", instrument_id=instrument.id, quantity_used=10
    )

    second = container.ledger.install(actor_user_id=user.id, inventory_id=lot.id, instrument_id=instrument.id, quantity=20)

    assert second.refilled is True
    assert second.reagent.id == first.reagent.id
    assert (second.reagent.quantity, second.reagent.quantity_remaining) == (50, 40)
    lot.refresh_from_db()
    assert lot.quantity_in_stock == 50


def test_install_other_lot_of_same_reagent_conflicts(container, instrument, user):
    install_lot(instrument, make_lot("Lysing", "LOT-L1"))
    other = make_lot("Lysing", "LOT-L2")

    with pytest.raises(ConflictError):
        container.ledger.install(actor_user_id=user.id, inventory_id=other.id, instrument_id=instrument.id, quantity=5)

    other.refresh_from_db()
    assert other.quantity_in_stock == 100


@pytest.mark.parametrize(
    "lot_kwargs, qty",
    [
        ({"status": InventoryStatus.RETURNED, "stock": 0, "returned_reason": "damaged"}, 1),
        ({"expires_in_days": -1}, 1),
        ({}, 150),
        ({}, 0),
    ],
    ids=["returned", "expired", "more-than-stock", "zero"],
)
def test_install_preconditions(container, instrument, user, lot_kwargs, qty):
    lot = make_lot("Staining", "LOT-S1", **lot_kwargs)
    before = lot.quantity_in_stock

    with pytest.raises(PreconditionFailedError):
        container.ledger.install(actor_user_id=user.id, inventory_id=lot.id, instrument_id=instrument.id, quantity=qty)

    lot.refresh_from_db()
    assert lot.quantity_in_stock == before
    assert not InstrumentReagent.objects.exists()


def test_install_unknown_instrument(container, user):
    lot = make_lot()
    with pytest.raises(NotFound):
        container.ledger.install(actor_user_id=user.id, inventory_id=lot.id, instrument_id="f" * 24, quantity=1)


# ----------------------------
# status / returns / receiving
# ----------------------------

def test_update_status_rejects_same_and_unknown_status(container, instrument, user):
    installed = install_lot(instrument, make_lot())

    with pytest.raises(ConflictError) as exc:
        container.ledger.update_status(
            actor_user_id=user.id, instrument_reagent_id=installed.id, status=InstalledStatus.IN_USE
        )
    assert str(exc.value.detail) == 'Reagent is already marked as "in_use"'

    with pytest.raises(ValidationError):
        container.ledger.update_status(actor_user_id=user.id, instrument_reagent_id=installed.id, status="broken")

    updated = container.ledger.update_status(
        actor_user_id=user.id, instrument_reagent_id=installed.id, status=InstalledStatus.NOT_IN_USE
    )
    assert updated.status == InstalledStatus.NOT_IN_USE
    assert updated.status_changed_by == user.id


def test_mark_returned_zeroes_stock_once(container, user):
    lot = make_lot(received=40, stock=25)

    with pytest.raises(ValidationError):
        container.ledger.mark_returned(actor_user_id=user.id, inventory_id=lot.id, reason="  ")

    returned = container.ledger.mark_returned(actor_user_id=user.id, inventory_id=lot.id, reason="Cold chain broken")
    assert (returned.status, returned.quantity_in_stock) == (InventoryStatus.RETURNED, 0)

    with pytest.raises(ConflictError):
        container.ledger.mark_returned(actor_user_id=user.id, inventory_id=lot.id, reason="again")


def test_receive_lot_defaults(container, user):
    expires = timezone.localdate() + timedelta(days=90)

    partial = container.ledger.receive_lot(
        actor_user_id=user.id,
        data={
            "reagent_name": "Cleaner",
            "lot_number": "LOT-C1",
            "expiration_date": expires,
            "quantity_ordered": 10,
            "quantity_received": 6,
        },
    )
    assert (partial.status, partial.quantity_in_stock) == (InventoryStatus.PARTIAL_SHIPMENT, 6)

    full = container.ledger.receive_lot(
        actor_user_id=user.id,
        data={"reagent_name": "Cleaner", "lot_number": "LOT-C2", "expiration_date": expires, "quantity_received": 6},
    )
    assert full.status == InventoryStatus.RECEIVED

    with pytest.raises(ConflictError):
        container.ledger.receive_lot(
            actor_user_id=user.id,
            data={"reagent_name": "Cleaner", "lot_number": "LOT-C1", "expiration_date": expires, "quantity_received": 1},
        )


@pytest.mark.parametrize(
    "overrides",
    [
        {"quantity_received": 0},
        {"expiration_date": "past"},
        {"quantity_in_stock": 11},
        {"status": InventoryStatus.RETURNED},
    ],
    ids=["zero-received", "expired", "stock-over-received", "returned-without-reason"],
)
def test_receive_lot_validation(container, user, overrides):
    data = {
        "reagent_name": "Clotting",
        "lot_number": "LOT-K1",
        "expiration_date": timezone.localdate() + timedelta(days=30),
        "quantity_received": 10,
    }
    if overrides.get("expiration_date") == "past":
        overrides = {"expiration_date": timezone.localdate() - timedelta(days=1)}
    data.update(overrides)

    with pytest.raises(ValidationError):
        container.ledger.receive_lot(actor_user_id=user.id, data=data)
    assert not ReagentInventory.objects.exists()


# ----------------------------
# run readiness
# ----------------------------

def test_readiness_lists_missing_and_empty_reagents(container, instrument, installed_reagents):
    assert container.ledger.check_ready_for_run(instrument_id=instrument.id).ready

    InstrumentReagent.objects.filter(id=installed_reagents["Cleaner"].id).update(status=InstalledStatus.NOT_IN_USE)
    InstrumentReagent.objects.filter(id=installed_reagents["Staining"].id).update(quantity_remaining=0)

    readiness = container.ledger.check_ready_for_run(instrument_id=instrument.id)
    assert readiness.missing == ["Cleaner"]
    assert readiness.insufficient == ["Staining"]

    with pytest.raises(PreconditionFailedError) as exc:
        container.ledger.ensure_ready_for_run(instrument_id=instrument.id)
    assert str(exc.value.detail) == (
        "Missing required reagents: Cleaner Insufficient quantity for reagents: Staining "
        "Please install or refill all required reagents before processing samples."
    )


def test_stock_bounds_hold_after_a_mixed_sequence(container, instrument, user):
    lot = make_lot("Diluent", "LOT-D9", received=60)
    ledger = container.ledger

    ledger.install(actor_user_id=user.id, inventory_id=lot.id, instrument_id=instrument.id, quantity=25)
    ledger.record_usage(actor_user_id=user.id, lot_number="LOT-D9", instrument_id=instrument.id, quantity_used=10)
    ledger.install(actor_user_id=user.id, inventory_id=lot.id, instrument_id=instrument.id, quantity=35)
    for qty in (20, 40, 30):
        try:
            ledger.record_usage(actor_user_id=user.id, lot_number="LOT-D9", instrument_id=instrument.id, quantity_used=qty)
        except PreconditionFailedError:
            pass

    lot.refresh_from_db()
    assert 0 <= lot.quantity_in_stock <= lot.quantity_received
    for installed in InstrumentReagent.objects.all():
        assert 0 <= installed.quantity_remaining <= installed.quantity
    installed = InstrumentReagent.objects.get()
    assert installed.quantity_remaining == 60 - 10 - 20 - 30


# ----------------------------
# Concurrent writers
# ----------------------------

def _rival_before_call(monkeypatch, model, call_no, rival):
    """Run ``rival`` just before the ``call_no``-th ``model.objects.filter`` call."""
    original = model.objects.filter
    calls = {"n": 0}

    def filter_(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == call_no:
            rival(original)
        return original(*args, **kwargs)

    monkeypatch.setattr(model.objects, "filter", filter_)


def test_usage_loses_to_a_rival_that_drained_the_lot(container, instrument, user, monkeypatch):
    installed = install_lot(instrument, make_lot("Diluent", "LOT-R"), quantity=10)
    # second filter() is the conditional debit; the rival lands after the read
    _rival_before_call(
        monkeypatch,
        InstrumentReagent,
        2,
        lambda qs: qs(id=installed.id).update(quantity_remaining=3),
    )

    with pytest.raises(ConflictError) as exc:
        container.ledger.record_usage(
            actor_user_id=user.id, lot_number="LOT-R", instrument_id=instrument.id, quantity_used=8
        )

    assert str(exc.value.detail) == "Reagent LOT-R was consumed concurrently; usage already processed"
    assert ReagentUsageHistory.objects.count() == 0
    installed.refresh_from_db()
    # rolled back together with the rival's write, never debited by 8
    assert installed.quantity_remaining == 10


def test_install_loses_to_a_rival_that_took_the_stock(container, instrument, user, monkeypatch):
    lot = make_lot("Diluent", "LOT-R", received=40)
    _rival_before_call(
        monkeypatch,
        ReagentInventory,
        1,
        lambda qs: qs(id=lot.id).update(quantity_in_stock=5),
    )

    with pytest.raises(ConflictError):
        container.ledger.install(
            actor_user_id=user.id, inventory_id=lot.id, instrument_id=instrument.id, quantity=30
        )

    assert not InstrumentReagent.objects.filter(lot_number="LOT-R").exists()
    lot.refresh_from_db()
    assert lot.quantity_in_stock == 40
