import re
from datetime import timedelta
from types import SimpleNamespace

import pytest
from django.core.management import call_command
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from lab_core.audit.models import EventLog
from lab_core.catalog.models import InstrumentMode
from lab_core.common.api.exceptions import ConflictError, PreconditionFailedError
from lab_core.flagging.models import FlaggingConfiguration
from lab_core.orders.models import OrderComment, OrderStatus, RawStatus, RawTestResult, TestOrder, TestResult
from lab_core.orders.services import OPEN_ORDER_EXISTS_MSG, check_transition, generate_barcode
from lab_core.reagents.models import InstrumentReagent

pytestmark = pytest.mark.django_db

BARCODE_RE = re.compile(r"^BC-[A-Z0-9]{9}$")


def _intake(container, user, instrument, barcode="SAMPLE-001"):
    return container.orders.process_sample(actor_user_id=user.id, barcode=barcode, instrument_id=instrument.id)


# ----------------------------
# createOrder
# ----------------------------

def test_create_order_allocates_number_and_barcode(container, patient, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)

    assert order.status == OrderStatus.PENDING
    assert BARCODE_RE.match(order.barcode)
    assert order.order_number.startswith("ORD-")
    assert order.created_by == user.id
    assert EventLog.objects.filter(entity_id=order.id, event_code="test_order.created").exists()


def test_second_open_order_for_patient_conflicts(container, patient, user):
    container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)

    with pytest.raises(ConflictError) as exc:
        container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)

    assert str(exc.value.detail) == OPEN_ORDER_EXISTS_MSG
    assert TestOrder.objects.filter(patient=patient).count() == 1


def test_new_order_allowed_once_previous_is_terminal(container, patient, user):
    first = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)
    container.orders.complete(actor_user_id=user.id, order_id=first.id)

    second = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)
    assert second.order_number != first.order_number


def test_order_numbers_stay_unique_within_the_same_millisecond(container, patient, male_adult, user, monkeypatch):
    monkeypatch.setattr("lab_core.orders.services.time", SimpleNamespace(time=lambda: 1_700_000_000.0))

    a = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)
    b = container.orders.create_order(actor_user_id=user.id, patient_id=male_adult.id)

    assert a.order_number == "ORD-1700000000000"
    assert b.order_number == "ORD-1700000000001"


def test_create_order_unknown_patient(container, user):
    with pytest.raises(NotFound):
        container.orders.create_order(actor_user_id=user.id, patient_id="0" * 24)


def test_generated_barcodes_match_format():
    assert all(BARCODE_RE.match(generate_barcode()) for _ in range(50))


# ----------------------------
# processSample
# ----------------------------

def test_process_sample_creates_unmatched_order_and_raw_result(
    container, instrument, installed_reagents, parameters, user
):
    intake = _intake(container, user, instrument)

    assert intake.is_new is True
    order = intake.order
    assert (order.barcode, order.patient_id, order.status) == ("SAMPLE-001", None, OrderStatus.PENDING)
    assert order.instrument_id == instrument.id

    raw = intake.raw_result
    assert raw.status == RawStatus.PENDING
    assert raw.can_delete is False
    assert raw.hl7_message.startswith("MSH|")
    # no patient means no sex, so the sex-specific HGB range is skipped
    assert "|WBC^" in raw.hl7_message and "|PLT^" in raw.hl7_message
    assert "|HGB^" not in raw.hl7_message


def test_process_sample_is_idempotent_on_barcode(container, instrument, installed_reagents, parameters, user):
    first = _intake(container, user, instrument)
    again = _intake(container, user, instrument)

    assert again.is_new is False
    assert again.order.id == first.order.id
    assert again.raw_result.id == first.raw_result.id
    assert RawTestResult.objects.count() == 1


def test_known_barcode_still_requires_ready_instrument(container, instrument, installed_reagents, parameters, user):
    first = _intake(container, user, instrument)
    instrument.mode = InstrumentMode.MAINTENANCE
    instrument.save()

    with pytest.raises(PreconditionFailedError) as exc:
        _intake(container, user, instrument)

    assert str(exc.value.detail) == "Instrument is not ready (current mode: maintenance)"
    order = TestOrder.objects.get(id=first.order.id)
    assert (order.status, order.barcode) == (OrderStatus.PENDING, "SAMPLE-001")
    assert RawTestResult.objects.count() == 1


def test_known_barcode_still_requires_reagents(container, instrument, installed_reagents, parameters, user):
    first = _intake(container, user, instrument)
    InstrumentReagent.objects.filter(reagent_name="Diluent").update(quantity_remaining=0)

    with pytest.raises(PreconditionFailedError) as exc:
        _intake(container, user, instrument)

    assert "Insufficient quantity for reagents: Diluent" in str(exc.value.detail)
    assert TestOrder.objects.filter(id=first.order.id).exists()


def test_process_sample_requires_ready_instrument(container, instrument, installed_reagents, user):
    instrument.mode = InstrumentMode.MAINTENANCE
    instrument.save()

    with pytest.raises(PreconditionFailedError) as exc:
        _intake(container, user, instrument)

    assert str(exc.value.detail) == "Instrument is not ready (current mode: maintenance)"
    assert not TestOrder.objects.exists()


def test_process_sample_requires_reagents(container, instrument, user):
    with pytest.raises(PreconditionFailedError) as exc:
        _intake(container, user, instrument)

    assert str(exc.value.detail).startswith("Missing required reagents: Diluent, Lysing")
    assert not TestOrder.objects.exists()


def test_blank_barcode_is_rejected(container, instrument, user):
    with pytest.raises(ValidationError):
        _intake(container, user, instrument, barcode="   ")


# ----------------------------
# syncRawResult
# ----------------------------

def test_sync_is_one_shot(container, instrument, installed_reagents, parameters, user):
    intake = _intake(container, user, instrument)

    order = container.orders.sync_raw_result(actor_user_id=user.id, raw_result_id=intake.raw_result.id)

    assert order.status == OrderStatus.COMPLETED
    assert order.run_by == user.id
    codes = list(order.results.values_list("parameter_code", flat=True))
    assert codes == ["PLT", "WBC"]
    raw = RawTestResult.objects.get(id=intake.raw_result.id)
    assert (raw.status, raw.can_delete) == (RawStatus.SYNCED, True)
    assert raw.synced_at is not None

    with pytest.raises(ConflictError):
        container.orders.sync_raw_result(actor_user_id=user.id, raw_result_id=intake.raw_result.id)
    assert TestResult.objects.filter(test_order=order).count() == 2


def test_sync_already_claimed_by_another_caller(container, instrument, installed_reagents, parameters, user):
    intake = _intake(container, user, instrument)
    RawTestResult.objects.filter(id=intake.raw_result.id).update(status=RawStatus.SYNCED)

    with pytest.raises(ConflictError) as exc:
        container.orders.sync_raw_result(actor_user_id=user.id, raw_result_id=intake.raw_result.id)

    assert str(exc.value.detail) == "Raw test result already synced"
    assert not TestResult.objects.exists()
    assert TestOrder.objects.get(id=intake.order.id).status == OrderStatus.PENDING


def test_sync_unknown_raw_result(container, user):
    with pytest.raises(NotFound):
        container.orders.sync_raw_result(actor_user_id=user.id, raw_result_id="0" * 24)


def test_sync_applies_flagging_rules(container, instrument, installed_reagents, parameters, user):
    # every simulated WBC value sits outside this band
    FlaggingConfiguration.objects.create(
        parameter=parameters["WBC"], reference_range_min=100, reference_range_max=200, flag_type="critical"
    )
    intake = _intake(container, user, instrument)

    order = container.orders.sync_raw_result(actor_user_id=user.id, raw_result_id=intake.raw_result.id)

    wbc = order.results.get(parameter_code="WBC")
    assert (wbc.is_flagged, wbc.flag_type) == (True, "critical")
    assert wbc.reference_range_text == "100-200"
    plt = order.results.get(parameter_code="PLT")
    assert (plt.is_flagged, plt.flagging_configuration_id) == (False, None)
    assert plt.reference_range_text == "150-400 10^3/uL"


def test_sync_into_cancelled_order_rolls_back_claim(container, instrument, installed_reagents, parameters, user):
    intake = _intake(container, user, instrument)
    TestOrder.objects.filter(id=intake.order.id).update(status=OrderStatus.CANCELLED)

    with pytest.raises(ConflictError):
        container.orders.sync_raw_result(actor_user_id=user.id, raw_result_id=intake.raw_result.id)

    raw = RawTestResult.objects.get(id=intake.raw_result.id)
    assert raw.status == RawStatus.PENDING
    assert not TestResult.objects.exists()


def test_sync_unknown_raw_result(container, user):
    with pytest.raises(NotFound):
        container.orders.sync_raw_result(actor_user_id=user.id, raw_result_id="e" * 24)


# ----------------------------
# complete
# ----------------------------

def test_complete_is_all_or_nothing(container, patient, instrument, installed_reagents, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id, instrument_id=instrument.id)

    with pytest.raises(PreconditionFailedError):
        container.orders.complete(
            actor_user_id=user.id,
            order_id=order.id,
            reagent_usage=[
                {"reagent_lot_number": "LOT-DILUENT", "quantity_used": 5},
                {"reagent_lot_number": "LOT-LYSING", "quantity_used": 51},
            ],
        )

    order.refresh_from_db()
    assert order.status == OrderStatus.PENDING
    assert order.run_at is None
    installed_reagents["Diluent"].refresh_from_db()
    assert installed_reagents["Diluent"].quantity_remaining == 50


def test_complete_debits_reagents_and_is_one_shot(container, patient, instrument, installed_reagents, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id, instrument_id=instrument.id)

    done = container.orders.complete(
        actor_user_id=user.id,
        order_id=order.id,
        reagent_usage=[{"reagent_lot_number": "LOT-DILUENT", "quantity_used": 2}],
    )

    assert done.status == OrderStatus.COMPLETED
    assert (done.run_by, done.run_at is not None) == (user.id, True)
    installed_reagents["Diluent"].refresh_from_db()
    assert installed_reagents["Diluent"].quantity_remaining == 48

    with pytest.raises(ConflictError) as exc:
        container.orders.complete(actor_user_id=user.id, order_id=order.id)
    assert str(exc.value.detail) == "Test order already completed"


def test_complete_cancelled_order(container, patient, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)
    container.orders.update_order(actor_user_id=user.id, order_id=order.id, data={"status": "cancelled"})

    with pytest.raises(ConflictError) as exc:
        container.orders.complete(actor_user_id=user.id, order_id=order.id)
    assert "Cannot complete test order with status: cancelled" in str(exc.value.detail)


def test_complete_with_usage_needs_an_instrument(container, patient, installed_reagents, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)

    with pytest.raises(PreconditionFailedError):
        container.orders.complete(
            actor_user_id=user.id,
            order_id=order.id,
            reagent_usage=[{"reagent_lot_number": "LOT-DILUENT", "quantity_used": 1}],
        )
    order.refresh_from_db()
    assert order.status == OrderStatus.PENDING


# ----------------------------
# addResults
# ----------------------------

def test_add_results_flags_by_patient_profile(container, patient, parameters, user):
    FlaggingConfiguration.objects.create(
        parameter=parameters["HGB"], gender="female", reference_range_min=12.0, reference_range_max=15.5
    )
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)

    container.orders.add_results(
        actor_user_id=user.id,
        order_id=order.id,
        results=[
            {"parameter_id": parameters["HGB"].id, "result_value": 16.1},
            {"parameter_id": parameters["WBC"].id, "result_value": 7.0, "unit": "K/uL"},
        ],
    )

    hgb, wbc = order.results.order_by("position")
    assert (hgb.position, hgb.is_flagged, hgb.flag_type) == (0, True, "warning")
    assert (wbc.position, wbc.is_flagged, wbc.unit) == (1, False, "K/uL")
    assert wbc.reference_range_text == "4.5-11 10^3/uL"
    order.refresh_from_db()
    assert order.status == OrderStatus.PENDING


def test_add_results_unknown_parameter_writes_nothing(container, patient, parameters, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)

    with pytest.raises(NotFound):
        container.orders.add_results(
            actor_user_id=user.id,
            order_id=order.id,
            results=[
                {"parameter_id": parameters["WBC"].id, "result_value": 5},
                {"parameter_id": "9" * 24, "result_value": 1},
            ],
        )
    assert not TestResult.objects.exists()


def test_add_results_appends_positions(container, patient, parameters, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)
    for value in (5, 6):
        container.orders.add_results(
            actor_user_id=user.id,
            order_id=order.id,
            results=[{"parameter_id": parameters["WBC"].id, "result_value": value}],
        )
    assert list(order.results.values_list("position", "result_value")) == [(0, 5.0), (1, 6.0)]


# ----------------------------
# comments
# ----------------------------

def test_comment_indexes_survive_deletion(container, patient, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)
    for text in ("first", "second", "third"):
        container.orders.add_comment(actor_user_id=user.id, order_id=order.id, comment_text=text)

    container.orders.delete_comment(actor_user_id=user.id, order_id=order.id, comment_ref="1")

    third = container.orders.update_comment(
        actor_user_id=user.id, order_id=order.id, comment_ref="2", comment_text="third (edited)"
    )
    assert third.position == 2
    assert OrderComment.objects.get(test_order=order, position=2).comment_text == "third (edited)"

    with pytest.raises(NotFound):
        container.orders.update_comment(actor_user_id=user.id, order_id=order.id, comment_ref="1", comment_text="x")
    with pytest.raises(NotFound):
        container.orders.delete_comment(actor_user_id=user.id, order_id=order.id, comment_ref="7")

    added = container.orders.add_comment(actor_user_id=user.id, order_id=order.id, comment_text="fourth")
    assert added.position == 3


def test_comment_addressed_by_id(container, patient, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)
    comment = container.orders.add_comment(actor_user_id=user.id, order_id=order.id, comment_text="hello")

    deleted = container.orders.delete_comment(actor_user_id=user.id, order_id=order.id, comment_ref=comment.id)

    assert deleted.deleted_at is not None
    assert deleted.deleted_by == user.id
    assert OrderComment.objects.filter(id=comment.id).exists()


def test_comment_text_is_required(container, patient, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)
    with pytest.raises(ValidationError):
        container.orders.add_comment(actor_user_id=user.id, order_id=order.id, comment_text="  ")


# ----------------------------
# updateOrder / deleteOrder
# ----------------------------

@pytest.mark.parametrize(
    "current, target, allowed",
    [
        ("pending", "running", True),
        ("pending", "completed", True),
        ("running", "failed", True),
        ("running", "pending", False),
        ("pending", "archived", False),
    ],
)
def test_transition_table(current, target, allowed):
    if allowed:
        check_transition(current, target)
    else:
        with pytest.raises(ValidationError):
            check_transition(current, target)


def test_update_order_demographics_and_status(container, patient, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)

    container.orders.update_order(
        actor_user_id=user.id,
        order_id=order.id,
        data={"status": "running", "phone_number": "555-0199", "full_name": "Jane Roe-Smith"},
    )

    order.refresh_from_db()
    patient.refresh_from_db()
    assert order.status == OrderStatus.RUNNING
    assert (patient.full_name, patient.phone_number) == ("Jane Roe-Smith", "555-0199")
    event = EventLog.objects.get(entity_id=order.id, event_code="test_order.updated")
    assert set(event.metadata["changed_fields"]) == {"status", "patient.full_name", "patient.phone_number"}


def test_update_order_to_completed_stamps_run(container, patient, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)
    container.orders.update_order(actor_user_id=user.id, order_id=order.id, data={"status": "completed"})

    order.refresh_from_db()
    assert order.run_by == user.id
    assert order.run_at is not None


def test_update_order_rejects_invalid_transition_and_terminal_orders(container, patient, user):
    order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)
    container.orders.update_order(actor_user_id=user.id, order_id=order.id, data={"status": "running"})

    with pytest.raises(ValidationError):
        container.orders.update_order(actor_user_id=user.id, order_id=order.id, data={"status": "pending"})

    container.orders.update_order(actor_user_id=user.id, order_id=order.id, data={"status": "failed"})
    with pytest.raises(ConflictError):
        container.orders.update_order(actor_user_id=user.id, order_id=order.id, data={"phone_number": "1"})


def test_link_unmatched_order_to_patient(container, instrument, installed_reagents, parameters, patient, user):
    intake = _intake(container, user, instrument)

    container.orders.update_order(actor_user_id=user.id, order_id=intake.order.id, data={"patient_id": patient.id})

    intake.order.refresh_from_db()
    assert intake.order.patient_id == patient.id


def test_linking_patient_with_open_order_conflicts(container, instrument, installed_reagents, parameters, patient, user):
    container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)
    intake = _intake(container, user, instrument)

    with pytest.raises(ConflictError):
        container.orders.update_order(
            actor_user_id=user.id, order_id=intake.order.id, data={"patient_id": patient.id}
        )


def test_demographics_need_a_linked_patient(container, instrument, installed_reagents, parameters, user):
    intake = _intake(container, user, instrument)

    with pytest.raises(ValidationError):
        container.orders.update_order(actor_user_id=user.id, order_id=intake.order.id, data={"full_name": "Who"})


def test_delete_order_rules(container, patient, male_adult, user):
    open_order = container.orders.create_order(actor_user_id=user.id, patient_id=patient.id)
    container.orders.add_comment(actor_user_id=user.id, order_id=open_order.id, comment_text="note")

    container.orders.delete_order(actor_user_id=user.id, order_id=open_order.id)
    assert not TestOrder.objects.filter(id=open_order.id).exists()
    assert not OrderComment.objects.exists()
    assert EventLog.objects.filter(entity_id=open_order.id, event_code="test_order.deleted").exists()

    done = container.orders.create_order(actor_user_id=user.id, patient_id=male_adult.id)
    container.orders.complete(actor_user_id=user.id, order_id=done.id)
    with pytest.raises(ConflictError):
        container.orders.delete_order(actor_user_id=user.id, order_id=done.id)


# ----------------------------
# raw result retention
# ----------------------------

def test_raw_result_manual_delete_requires_sync(container, instrument, installed_reagents, parameters, user):
    intake = _intake(container, user, instrument)
    raw_id = intake.raw_result.id

    with pytest.raises(PreconditionFailedError) as exc:
        container.raw_results.manual_delete(actor_user_id=user.id, raw_result_id=raw_id)
    assert str(exc.value.detail) == "Cannot delete: result must be synced/backed up first"

    container.orders.sync_raw_result(actor_user_id=user.id, raw_result_id=raw_id)
    container.raw_results.manual_delete(actor_user_id=user.id, raw_result_id=raw_id)
    assert not RawTestResult.objects.filter(id=raw_id).exists()


def test_auto_delete_only_purges_old_synced_results(container, instrument, installed_reagents, parameters, user):
    old = _intake(container, user, instrument, barcode="OLD-1").raw_result
    fresh = _intake(container, user, instrument, barcode="FRESH-1").raw_result
    pending = _intake(container, user, instrument, barcode="PENDING-1").raw_result
    for raw in (old, fresh):
        container.orders.sync_raw_result(actor_user_id=user.id, raw_result_id=raw.id)

    long_ago = timezone.now() - timedelta(days=45)
    RawTestResult.objects.filter(id__in=[old.id, pending.id]).update(updated_at=long_ago)

    assert container.raw_results.auto_delete(days=30) == 1
    assert set(RawTestResult.objects.values_list("id", flat=True)) == {fresh.id, pending.id}


def test_purge_command(instrument, installed_reagents, parameters, container, user, capsys):
    raw = _intake(container, user, instrument).raw_result
    container.orders.sync_raw_result(actor_user_id=user.id, raw_result_id=raw.id)
    RawTestResult.objects.filter(id=raw.id).update(updated_at=timezone.now() - timedelta(days=90))

    call_command("purge_raw_results", "--days", "60", "--dry-run")
    assert "Would delete 1 raw results" in capsys.readouterr().out
    assert RawTestResult.objects.filter(id=raw.id).exists()

    call_command("purge_raw_results", "--days", "60")
    assert not RawTestResult.objects.exists()


def test_purge_dry_run_counts_exactly_what_gets_deleted(
    instrument, installed_reagents, parameters, container, user, capsys
):
    kept = _intake(container, user, instrument, barcode="KEEP-1").raw_result
    purged = _intake(container, user, instrument, barcode="PURGE-1").raw_result
    for raw in (kept, purged):
        container.orders.sync_raw_result(actor_user_id=user.id, raw_result_id=raw.id)
    RawTestResult.objects.filter(id=kept.id).update(can_delete=False)
    RawTestResult.objects.update(updated_at=timezone.now() - timedelta(days=90))

    call_command("purge_raw_results", "--days", "60", "--dry-run")
    assert "Would delete 1 raw results" in capsys.readouterr().out

    call_command("purge_raw_results", "--days", "60")
    assert "Deleted 1 raw results" in capsys.readouterr().out
    assert list(RawTestResult.objects.values_list("id", flat=True)) == [kept.id]
