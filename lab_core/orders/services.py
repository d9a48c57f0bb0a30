# lab_core/orders/services.py
from __future__ import annotations

import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Iterable

from django.db import IntegrityError, transaction
from django.db.models import Max
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from lab_core.audit.models import ActionType
from lab_core.audit.services import AuditService
from lab_core.catalog.models import Instrument, InstrumentMode, Parameter
from lab_core.catalog.selectors import Catalog, normal_range_for
from lab_core.common.api.exceptions import ConflictError, PreconditionFailedError
from lab_core.flagging.resolver import FlagResolver
from lab_core.hl7.codec import HL7Codec, HL7ParseError
from lab_core.hl7.simulator import ResultSimulator
from lab_core.orders.models import (
    ALLOWED_TRANSITIONS,
    OPEN_STATUSES,
    OrderComment,
    OrderStatus,
    RawStatus,
    RawTestResult,
    TestOrder,
    TestResult,
)
from lab_core.orders.selectors import RawTestResultSelector
from lab_core.patients.services import DEMOGRAPHIC_FIELDS, PatientDirectory
from lab_core.reagents.services import ReagentLedger

logger = logging.getLogger(__name__)

BARCODE_PREFIX = "BC-"
BARCODE_ALPHABET = string.ascii_uppercase + string.digits
BARCODE_LENGTH = 9
BARCODE_ATTEMPTS = 10

OBJECT_ID_RE = re.compile(r"^[0-9a-f]{24}$")

OPEN_ORDER_EXISTS_MSG = (
    "Patient already has a pending test order. "
    "Please complete the existing order before creating a new one."
)


def generate_barcode() -> str:
    return BARCODE_PREFIX + "".join(secrets.choice(BARCODE_ALPHABET) for _ in range(BARCODE_LENGTH))


def next_order_number() -> str:
    millis = int(time.time() * 1000)
    while TestOrder.objects.filter(order_number=f"ORD-{millis}").exists():
        millis += 1
    return f"ORD-{millis}"


def check_transition(current: str, target: str) -> None:
    if target not in OrderStatus.values:
        raise ValidationError({"status": [f"Invalid status: {target}"]})
    if target not in ALLOWED_TRANSITIONS.get(current, ()):
        raise ValidationError({"status": [f"Invalid status transition from {current} to {target}"]})


class _BarcodeTaken(Exception):
    pass


@dataclass(frozen=True)
class IntakeResult:
    order: TestOrder
    raw_result: RawTestResult | None
    is_new: bool


class TestOrderService:
    """
    Test order state machine.

    pending -> running -> completed, with cancelled/failed as side exits from
    any open state. Status moves that race (complete, sync) are conditional
    UPDATEs; the loser gets ConflictError.
    """

    def __init__(
        self,
        *,
        patients: PatientDirectory,
        catalog: Catalog,
        resolver: FlagResolver,
        ledger: ReagentLedger,
        codec: HL7Codec,
        simulator: ResultSimulator,
        audit: AuditService,
    ):
        self.patients = patients
        self.catalog = catalog
        self.resolver = resolver
        self.ledger = ledger
        self.codec = codec
        self.simulator = simulator
        self.audit = audit

    # ----------------------------
    # helpers
    # ----------------------------
    @staticmethod
    def _lock(order_id) -> TestOrder:
        try:
            return TestOrder.objects.select_for_update().get(id=order_id)
        except TestOrder.DoesNotExist:
            raise NotFound("Test order not found")

    def _audit(
        self,
        order: TestOrder,
        *,
        action_type: str,
        event_code: str,
        actor_user_id,
        description: str,
        changed: Iterable[str] = (),
        **extra,
    ) -> None:
        self.audit.log(
            action_type=action_type,
            event_code=event_code,
            entity_type="TestOrder",
            entity_id=order.id,
            actor_user_id=actor_user_id,
            description=description,
            metadata={"order_number": order.order_number, "changed_fields": list(changed), **extra},
        )

    def _insert_order(self, *, barcode: str | None = None, **fields) -> TestOrder:
        for _ in range(BARCODE_ATTEMPTS):
            candidate = barcode or generate_barcode()
            if barcode is None and TestOrder.objects.filter(barcode=candidate).exists():
                continue
            try:
                with transaction.atomic():
                    return TestOrder.objects.create(order_number=next_order_number(), barcode=candidate, **fields)
            except IntegrityError:
                if barcode is not None and TestOrder.objects.filter(barcode=barcode).exists():
                    raise _BarcodeTaken(barcode)
                # order number or generated barcode collided with a concurrent insert
                continue
        raise ConflictError("Could not allocate a unique order number or barcode. Please retry.")

    def _build_result(
        self,
        *,
        parameter: Parameter,
        value: float,
        unit: str | None,
        sex: str | None,
        age_group: str | None,
        measured_at,
        reagent_lot_number: str | None = None,
    ) -> TestResult:
        normal = normal_range_for(parameter, sex)
        verdict = self.resolver.resolve(
            parameter_id=parameter.id,
            value=value,
            gender=sex,
            age_group=age_group,
            fallback_range_text=normal.text if normal else "",
        )
        return TestResult(
            parameter=parameter,
            parameter_code=parameter.parameter_code,
            result_value=value,
            unit=unit or parameter.unit,
            reference_range_text=verdict.reference_range_text,
            is_flagged=verdict.is_flagged,
            flag_type=verdict.flag_type,
            flagging_configuration_id=verdict.configuration_id,
            reagent_lot_number=reagent_lot_number or None,
            measured_at=measured_at,
        )

    @staticmethod
    def _append_results(order: TestOrder, rows: list[TestResult]) -> list[TestResult]:
        last = order.results.aggregate(last=Max("position"))["last"]
        start = 0 if last is None else last + 1
        for offset, row in enumerate(rows):
            row.test_order = order
            row.position = start + offset
        return TestResult.objects.bulk_create(rows)

    # ----------------------------
    # Create
    # ----------------------------
    @transaction.atomic
    def create_order(self, *, actor_user_id: int | None, patient_id, instrument_id=None) -> TestOrder:
        # row lock on the patient serializes the one-open-order check
        patient = self.patients.get(patient_id, for_update=True)
        instrument = self.catalog.get_instrument(instrument_id) if instrument_id else None

        if TestOrder.objects.filter(patient=patient, status__in=OPEN_STATUSES).exists():
            raise ConflictError(OPEN_ORDER_EXISTS_MSG)

        order = self._insert_order(
            patient=patient,
            instrument=instrument,
            status=OrderStatus.PENDING,
            created_by=actor_user_id,
            updated_by=actor_user_id,
        )
        logger.info("Created test order %s barcode=%s patient=%s", order.order_number, order.barcode, patient.id)
        self._audit(
            order,
            action_type=ActionType.CREATE,
            event_code="test_order.created",
            actor_user_id=actor_user_id,
            description=f"Created test order {order.order_number} for {patient.full_name}",
            changed=["patient_id", "instrument_id"] if instrument else ["patient_id"],
        )
        return order

    # ----------------------------
    # Barcode intake
    # ----------------------------
    def process_sample(self, *, actor_user_id: int | None, barcode: str, instrument_id) -> IntakeResult:
        """
        The instrument must be ready and stocked before any barcode is
        accepted. A known barcode then returns the existing order untouched;
        a new one creates an unmatched order plus a pending raw result in one
        transaction.
        """
        barcode = (barcode or "").strip()
        if not barcode:
            raise ValidationError({"barcode": ["Barcode is required"]})

        instrument = self.catalog.get_instrument(instrument_id)
        if instrument.mode != InstrumentMode.READY:
            raise PreconditionFailedError(f"Instrument is not ready (current mode: {instrument.mode or 'not set'})")
        self.ledger.ensure_ready_for_run(instrument_id=instrument.id)

        existing = self._existing_intake(barcode)
        if existing is not None:
            return existing

        try:
            with transaction.atomic():
                order = self._insert_order(
                    barcode=barcode,
                    instrument=instrument,
                    status=OrderStatus.PENDING,
                    created_by=actor_user_id,
                    updated_by=actor_user_id,
                )
                raw = self._generate_raw_result(order=order, instrument=instrument, actor_user_id=actor_user_id)
                self._audit(
                    order,
                    action_type=ActionType.CREATE,
                    event_code="test_order.sample_received",
                    actor_user_id=actor_user_id,
                    description=f"Sample {barcode} received on {instrument.name}",
                    changed=["barcode", "instrument_id"],
                    raw_result_id=raw.id if raw else None,
                )
        except _BarcodeTaken:
            # a concurrent intake of the same barcode won
            return self._existing_intake(barcode)

        logger.info("Sample intake barcode=%s order=%s instrument=%s", barcode, order.order_number, instrument.id)
        return IntakeResult(order=order, raw_result=raw, is_new=True)

    @staticmethod
    def _existing_intake(barcode: str) -> IntakeResult | None:
        order = TestOrder.objects.filter(barcode=barcode).first()
        if order is None:
            return None
        raw = order.raw_results.order_by("-created_at").first()
        return IntakeResult(order=order, raw_result=raw, is_new=False)

    def _generate_raw_result(self, *, order: TestOrder, instrument: Instrument, actor_user_id) -> RawTestResult | None:
        sex, _ = self.patients.flagging_profile(order.patient)
        observations = self.simulator.simulate(self.catalog.active_parameters(), sex=sex)
        if not observations:
            logger.info("No active parameter with a normal range; no raw result for %s", order.barcode)
            return None

        message = self.codec.generate(
            order=order,
            observations=observations,
            instrument=instrument,
            patient=order.patient,
        )
        return RawTestResult.objects.create(
            test_order=order,
            barcode=order.barcode,
            instrument=instrument,
            hl7_message=message,
            status=RawStatus.PENDING,
            can_delete=False,
            created_by=actor_user_id,
        )

    # ----------------------------
    # Results
    # ----------------------------
    @transaction.atomic
    def add_results(self, *, actor_user_id: int | None, order_id, results: list[dict]) -> TestOrder:
        order = self._lock(order_id)
        if order.is_terminal:
            raise ConflictError(f"Cannot add results to a {order.status} test order")

        sex, age_group = self.patients.flagging_profile(order.patient)
        now = timezone.now()
        rows = [
            self._build_result(
                parameter=self.catalog.get_parameter(item["parameter_id"]),
                value=float(item["result_value"]),
                unit=item.get("unit"),
                sex=sex,
                age_group=age_group,
                measured_at=now,
                reagent_lot_number=item.get("reagent_lot_number"),
            )
            for item in results
        ]
        self._append_results(order, rows)

        order.updated_by = actor_user_id
        order.save(update_fields=["updated_by", "updated_at"])

        flagged = sum(1 for r in rows if r.is_flagged)
        self._audit(
            order,
            action_type=ActionType.UPDATE,
            event_code="test_order.results_added",
            actor_user_id=actor_user_id,
            description=f"Added {len(rows)} results ({flagged} flagged)",
            changed=["test_results"],
        )
        return order

    @transaction.atomic
    def sync_raw_result(self, *, actor_user_id: int | None, raw_result_id) -> TestOrder:
        """
        One-shot: claim the raw result, decode it, flag every observation and
        complete the order. Any failure rolls the claim back with the rest.
        """
        now = timezone.now()
        claimed = (
            RawTestResult.objects.filter(id=raw_result_id)
            .exclude(status=RawStatus.SYNCED)
            .update(status=RawStatus.SYNCED, can_delete=True, synced_at=now, updated_at=now)
        )
        if claimed != 1:
            if not RawTestResult.objects.filter(id=raw_result_id).exists():
                raise NotFound("Raw test result not found")
            raise ConflictError("Raw test result already synced")

        raw = RawTestResult.objects.get(id=raw_result_id)
        try:
            parsed = self.codec.parse(raw.hl7_message)
        except HL7ParseError as exc:
            raise ValidationError({"hl7_message": [str(exc)]})

        barcode = parsed.order.barcode or raw.barcode
        order = TestOrder.objects.select_for_update().filter(barcode=barcode).first()
        if order is None:
            raise NotFound("Test order not found for this barcode")
        if order.is_terminal:
            raise ConflictError(f"Cannot sync results into a {order.status} test order")

        sex, age_group = self.patients.flagging_profile(order.patient)
        rows = [
            self._build_result(
                parameter=self.catalog.get_parameter_by_code(obs.parameter_code),
                value=obs.value,
                unit=obs.unit,
                sex=sex,
                age_group=age_group,
                measured_at=now,
            )
            for obs in parsed.observations
        ]
        self._append_results(order, rows)

        previous = order.status
        moved = TestOrder.objects.filter(id=order.id, status__in=OPEN_STATUSES).update(
            status=OrderStatus.COMPLETED,
            instrument_id=order.instrument_id or raw.instrument_id,
            run_by=actor_user_id,
            run_at=now,
            updated_by=actor_user_id,
            updated_at=now,
        )
        if moved != 1:
            raise ConflictError("Test order already completed")
        order.refresh_from_db()

        logger.info("Synced raw result %s into %s: %s -> completed", raw.id, order.order_number, previous)
        self._audit(
            order,
            action_type=ActionType.UPDATE,
            event_code="test_order.raw_result_synced",
            actor_user_id=actor_user_id,
            description=f"Synced {len(rows)} instrument results; {previous} -> completed",
            changed=["test_results", "status", "run_by", "run_at"],
            raw_result_id=raw.id,
        )
        return order

    # ----------------------------
    # Completion
    # ----------------------------
    @transaction.atomic
    def complete(self, *, actor_user_id: int | None, order_id, reagent_usage: list[dict] | None = None) -> TestOrder:
        """
        pending/running -> completed, then debit every reagent usage entry
        against the order's instrument. All or nothing.
        """
        order = TestOrder.objects.filter(id=order_id).first()
        if order is None:
            raise NotFound("Test order not found")

        now = timezone.now()
        moved = TestOrder.objects.filter(id=order.id, status__in=OPEN_STATUSES).update(
            status=OrderStatus.COMPLETED,
            run_by=actor_user_id,
            run_at=now,
            updated_by=actor_user_id,
            updated_at=now,
        )
        if moved != 1:
            current = TestOrder.objects.filter(id=order.id).values_list("status", flat=True).first()
            if current == OrderStatus.COMPLETED:
                raise ConflictError("Test order already completed")
            raise ConflictError(
                f"Cannot complete test order with status: {current}. "
                "Only 'pending' or 'running' orders can be completed."
            )

        usage = list(reagent_usage or [])
        if usage:
            if order.instrument_id is None:
                raise PreconditionFailedError("Test order has no instrument; reagent usage cannot be recorded")
            self.ledger.record_usages(
                actor_user_id=actor_user_id,
                instrument_id=order.instrument_id,
                usages=usage,
                test_order_id=order.id,
            )

        previous = order.status
        order.refresh_from_db()
        logger.info("Test order %s: %s -> completed (%s reagent debits)", order.order_number, previous, len(usage))
        self._audit(
            order,
            action_type=ActionType.UPDATE,
            event_code="test_order.completed",
            actor_user_id=actor_user_id,
            description=f"Completed test order {order.order_number}",
            changed=["status", "run_by", "run_at"],
            reagent_usage=usage,
        )
        return order

    # ----------------------------
    # Comments
    # ----------------------------
    @staticmethod
    def _resolve_comment(order: TestOrder, ref) -> OrderComment:
        ref = str(ref).strip()
        qs = OrderComment.objects.select_for_update().filter(test_order=order)
        if OBJECT_ID_RE.match(ref):
            comment = qs.filter(id=ref).first()
        elif ref.isdigit():
            comment = qs.filter(position=int(ref)).first()
        else:
            raise ValidationError({"comment": ["Comment must be addressed by index or id"]})

        if comment is None or comment.deleted_at is not None:
            raise NotFound("Comment not found")
        return comment

    @staticmethod
    def _clean_text(text: str) -> str:
        text = (text or "").strip()
        if not text:
            raise ValidationError({"comment_text": ["Comment text is required"]})
        return text

    @transaction.atomic
    def add_comment(self, *, actor_user_id: int | None, order_id, comment_text: str) -> OrderComment:
        order = self._lock(order_id)
        text = self._clean_text(comment_text)

        last = order.comments.aggregate(last=Max("position"))["last"]
        comment = OrderComment.objects.create(
            test_order=order,
            position=0 if last is None else last + 1,
            comment_text=text,
            created_by=actor_user_id,
            updated_by=actor_user_id,
        )
        order.updated_by = actor_user_id
        order.save(update_fields=["updated_by", "updated_at"])

        self._audit(
            order,
            action_type=ActionType.UPDATE,
            event_code="test_order.comment_added",
            actor_user_id=actor_user_id,
            description=f"Added comment #{comment.position}",
            changed=["comments"],
            comment_id=comment.id,
        )
        return comment

    @transaction.atomic
    def update_comment(self, *, actor_user_id: int | None, order_id, comment_ref, comment_text: str) -> OrderComment:
        order = self._lock(order_id)
        comment = self._resolve_comment(order, comment_ref)

        comment.comment_text = self._clean_text(comment_text)
        comment.updated_by = actor_user_id
        comment.save(update_fields=["comment_text", "updated_by", "updated_at"])

        self._audit(
            order,
            action_type=ActionType.UPDATE,
            event_code="test_order.comment_updated",
            actor_user_id=actor_user_id,
            description=f"Edited comment #{comment.position}",
            changed=["comments"],
            comment_id=comment.id,
        )
        return comment

    @transaction.atomic
    def delete_comment(self, *, actor_user_id: int | None, order_id, comment_ref) -> OrderComment:
        order = self._lock(order_id)
        comment = self._resolve_comment(order, comment_ref)

        comment.deleted_at = timezone.now()
        comment.deleted_by = actor_user_id
        comment.save(update_fields=["deleted_at", "deleted_by", "updated_at"])

        self._audit(
            order,
            action_type=ActionType.DELETE,
            event_code="test_order.comment_deleted",
            actor_user_id=actor_user_id,
            description=f"Deleted comment #{comment.position}",
            changed=["comments"],
            comment_id=comment.id,
        )
        return comment

    # ----------------------------
    # Update / delete
    # ----------------------------
    @transaction.atomic
    def update_order(self, *, actor_user_id: int | None, order_id, data: dict) -> TestOrder:
        """
        Order fields (status, instrument_id, patient_id) land on the order;
        demographic fields land on the linked patient. Both or neither.
        """
        order = self._lock(order_id)
        if order.is_terminal:
            raise ConflictError(f"Cannot update a {order.status} test order")

        changed: list[str] = []

        if "patient_id" in data and data["patient_id"] != order.patient_id:
            patient = self.patients.get(data["patient_id"], for_update=True)
            if TestOrder.objects.filter(patient=patient, status__in=OPEN_STATUSES).exclude(id=order.id).exists():
                raise ConflictError(OPEN_ORDER_EXISTS_MSG)
            order.patient = patient
            changed.append("patient_id")

        if "instrument_id" in data and data["instrument_id"] != order.instrument_id:
            order.instrument = self.catalog.get_instrument(data["instrument_id"]) if data["instrument_id"] else None
            changed.append("instrument_id")

        previous_status = order.status
        target = data.get("status")
        if target and target != order.status:
            check_transition(order.status, target)
            order.status = target
            changed.append("status")
            if target == OrderStatus.COMPLETED:
                order.run_by = actor_user_id
                order.run_at = timezone.now()
                changed += ["run_by", "run_at"]

        demographics = {k: data[k] for k in DEMOGRAPHIC_FIELDS if k in data}
        if demographics:
            if order.patient is None:
                raise ValidationError({"patient_id": ["Test order has no patient to update"]})
            changed += [f"patient.{f}" for f in self.patients.update_demographics(order.patient, demographics)]

        if not changed:
            return order

        order.updated_by = actor_user_id
        order.save()

        if "status" in changed:
            logger.info("Test order %s: %s -> %s", order.order_number, previous_status, order.status)
        self._audit(
            order,
            action_type=ActionType.UPDATE,
            event_code="test_order.updated",
            actor_user_id=actor_user_id,
            description=f"Updated test order fields: {', '.join(changed)}",
            changed=changed,
        )
        return order

    @transaction.atomic
    def delete_order(self, *, actor_user_id: int | None, order_id) -> None:
        order = self._lock(order_id)
        if order.is_terminal:
            raise ConflictError(f"Cannot delete a {order.status} test order")

        self._audit(
            order,
            action_type=ActionType.DELETE,
            event_code="test_order.deleted",
            actor_user_id=actor_user_id,
            description=f"Deleted test order {order.order_number}",
            barcode=order.barcode,
        )
        order.delete()


class RawResultService:
    def __init__(self, *, audit: AuditService):
        self.audit = audit

    @transaction.atomic
    def manual_delete(self, *, actor_user_id: int | None, raw_result_id) -> None:
        try:
            raw = RawTestResult.objects.select_for_update().get(id=raw_result_id)
        except RawTestResult.DoesNotExist:
            raise NotFound("Raw test result not found")

        if not raw.can_delete:
            raise PreconditionFailedError("Cannot delete: result must be synced/backed up first")

        self.audit.log(
            action_type=ActionType.DELETE,
            event_code="raw_test_result.deleted",
            entity_type="RawTestResult",
            entity_id=raw.id,
            actor_user_id=actor_user_id,
            description=f"Deleted raw result for barcode {raw.barcode}",
            metadata={"test_order_id": raw.test_order_id},
        )
        raw.delete()

    @transaction.atomic
    def auto_delete(self, *, days: int = 30, now=None) -> int:
        """Remove synced raw results whose last update is older than ``days``."""
        if days < 0:
            raise ValueError("days must be >= 0")
        deleted, _ = RawTestResultSelector.purgeable(days=days, now=now).delete()
        logger.info("Purged %s synced raw results older than %s days", deleted, days)
        return deleted
