# lab_core/reagents/services.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from lab_core.audit.models import ActionType
from lab_core.audit.services import AuditService
from lab_core.catalog.selectors import Catalog
from lab_core.common.api.exceptions import ConflictError, PreconditionFailedError
from lab_core.reagents.models import (
    InstalledStatus,
    InstrumentReagent,
    InventoryStatus,
    ReagentInventory,
    ReagentUsageHistory,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUIRED_REAGENTS = ("Diluent", "Lysing", "Staining", "Clotting", "Cleaner")


@dataclass(frozen=True)
class RunReadiness:
    missing: list[str] = field(default_factory=list)
    insufficient: list[str] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return not self.missing and not self.insufficient

    @property
    def message(self) -> str:
        parts: list[str] = []
        if self.missing:
            parts.append(f"Missing required reagents: {', '.join(self.missing)}")
        if self.insufficient:
            parts.append(f"Insufficient quantity for reagents: {', '.join(self.insufficient)}")
        if parts:
            parts.append("Please install or refill all required reagents before processing samples.")
        return " ".join(parts)


@dataclass(frozen=True)
class InstallResult:
    reagent: InstrumentReagent
    refilled: bool


class ReagentLedger:
    """
    Two balances, both only ever moved by conditional UPDATEs:

    - warehouse stock      ReagentInventory.quantity_in_stock
    - installed remaining  InstrumentReagent.quantity_remaining

    Business-rule refusals raise PreconditionFailedError. A conditional update
    that matches no row after the checks passed means another request got
    there first; that surfaces as ConflictError and is not retried.
    """

    def __init__(
        self,
        *,
        catalog: Catalog,
        audit: AuditService,
        required_reagents: Sequence[str] = DEFAULT_REQUIRED_REAGENTS,
    ):
        self.catalog = catalog
        self.audit = audit
        self.required_reagents = tuple(required_reagents)

    # ----------------------------
    # Warehouse lots
    # ----------------------------
    @transaction.atomic
    def receive_lot(self, *, actor_user_id: int | None, data: dict) -> ReagentInventory:
        received = float(data["quantity_received"])
        if received <= 0:
            raise ValidationError({"quantity_received": ["Quantity received must be greater than zero"]})

        expiration = data["expiration_date"]
        if expiration <= timezone.localdate():
            raise ValidationError({"expiration_date": ["Expiration date must be in the future"]})

        ordered = data.get("quantity_ordered")
        status = data.get("status")
        if not status:
            status = (
                InventoryStatus.PARTIAL_SHIPMENT
                if ordered is not None and received < float(ordered)
                else InventoryStatus.RECEIVED
            )

        reason = (data.get("returned_reason") or "").strip()
        if status == InventoryStatus.RETURNED:
            if not reason:
                raise ValidationError({"returned_reason": ["Returned reason is required when status is Returned"]})
            stock = 0.0
        else:
            stock = data.get("quantity_in_stock")
            stock = received if stock is None else float(stock)
            if stock < 0 or stock > received:
                raise ValidationError({"quantity_in_stock": ["Quantity in stock cannot exceed quantity received"]})

        try:
            with transaction.atomic():
                lot = ReagentInventory.objects.create(
                    reagent_name=data["reagent_name"],
                    catalog_number=data.get("catalog_number") or "",
                    vendor_name=data.get("vendor_name") or "",
                    description=data.get("description") or "",
                    lot_number=data["lot_number"],
                    expiration_date=expiration,
                    quantity_ordered=ordered,
                    quantity_received=received,
                    quantity_in_stock=stock,
                    usage_per_run_min=data.get("usage_per_run_min"),
                    usage_per_run_max=data.get("usage_per_run_max"),
                    usage_unit=data.get("usage_unit") or "mL",
                    status=status,
                    returned_reason=reason,
                    received_by=actor_user_id,
                    updated_by=actor_user_id,
                )
        except IntegrityError:
            raise ConflictError(
                f"Reagent {data['reagent_name']} with lot number {data['lot_number']} already exists"
            )

        self.audit.log(
            action_type=ActionType.CREATE,
            event_code="reagent_inventory.received",
            entity_type="ReagentInventory",
            entity_id=lot.id,
            actor_user_id=actor_user_id,
            description=f"Received {received:g} of {lot.reagent_name} lot {lot.lot_number}",
            metadata={"status": lot.status, "quantity_in_stock": lot.quantity_in_stock},
        )
        return lot

    @transaction.atomic
    def mark_returned(self, *, actor_user_id: int | None, inventory_id: str, reason: str) -> ReagentInventory:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError({"reason": ["Returned reason is required"]})

        try:
            lot = ReagentInventory.objects.select_for_update().get(id=inventory_id)
        except ReagentInventory.DoesNotExist:
            raise NotFound("Reagent inventory lot not found")

        if lot.status == InventoryStatus.RETURNED:
            raise ConflictError("Reagent lot is already marked as Returned")

        previous_stock = lot.quantity_in_stock
        lot.status = InventoryStatus.RETURNED
        lot.returned_reason = reason
        lot.quantity_in_stock = 0
        lot.updated_by = actor_user_id
        lot.save(update_fields=["status", "returned_reason", "quantity_in_stock", "updated_by", "updated_at"])

        self.audit.log(
            action_type=ActionType.UPDATE,
            event_code="reagent_inventory.returned",
            entity_type="ReagentInventory",
            entity_id=lot.id,
            actor_user_id=actor_user_id,
            description=f"Returned {lot.reagent_name} lot {lot.lot_number}: {reason}",
            metadata={"previous_stock": previous_stock, "changed_fields": ["status", "quantity_in_stock"]},
        )
        return lot

    # ----------------------------
    # Install
    # ----------------------------
    @transaction.atomic
    def install(
        self,
        *,
        actor_user_id: int | None,
        inventory_id: str,
        instrument_id: str,
        quantity: float,
    ) -> InstallResult:
        quantity = float(quantity)
        if quantity <= 0:
            raise PreconditionFailedError("Quantity must be greater than zero")

        instrument = self.catalog.get_instrument(instrument_id)
        try:
            lot = ReagentInventory.objects.get(id=inventory_id)
        except ReagentInventory.DoesNotExist:
            raise NotFound("Reagent inventory lot not found")

        if lot.status == InventoryStatus.RETURNED:
            raise PreconditionFailedError(f"Reagent lot {lot.lot_number} has been returned and cannot be installed")
        if lot.expiration_date < timezone.localdate():
            raise PreconditionFailedError(f"Reagent lot {lot.lot_number} expired on {lot.expiration_date.isoformat()}")
        if quantity > lot.quantity_in_stock:
            raise PreconditionFailedError(
                f"Insufficient stock for lot {lot.lot_number}. "
                f"Available: {lot.quantity_in_stock:g}, Requested: {quantity:g}"
            )

        other_lot_in_use = (
            InstrumentReagent.objects.filter(
                instrument=instrument,
                reagent_name=lot.reagent_name,
                status=InstalledStatus.IN_USE,
            )
            .exclude(inventory_id=lot.id)
            .exists()
        )
        if other_lot_in_use:
            raise ConflictError(
                f"Another lot of {lot.reagent_name} is already in use on this instrument. "
                "Mark it as not in use before installing a new lot."
            )

        debited = (
            ReagentInventory.objects.filter(id=lot.id, quantity_in_stock__gte=quantity)
            .exclude(status=InventoryStatus.RETURNED)
            .update(quantity_in_stock=F("quantity_in_stock") - quantity, updated_at=timezone.now())
        )
        if debited != 1:
            raise ConflictError("Reagent stock changed while installing. Reload and try again.")

        now = timezone.now()
        existing = (
            InstrumentReagent.objects.select_for_update()
            .filter(instrument=instrument, inventory_id=lot.id, status=InstalledStatus.IN_USE)
            .first()
        )
        if existing is not None:
            InstrumentReagent.objects.filter(id=existing.id).update(
                quantity=F("quantity") + quantity,
                quantity_remaining=F("quantity_remaining") + quantity,
                expiration_date=max(existing.expiration_date, lot.expiration_date),
                updated_at=now,
            )
            existing.refresh_from_db()
            reagent, refilled = existing, True
        else:
            reagent = InstrumentReagent.objects.create(
                instrument=instrument,
                inventory_id=lot.id,
                reagent_name=lot.reagent_name,
                description=lot.description,
                vendor_name=lot.vendor_name,
                catalog_number=lot.catalog_number,
                lot_number=lot.lot_number,
                expiration_date=lot.expiration_date,
                usage_per_run_min=lot.usage_per_run_min,
                usage_per_run_max=lot.usage_per_run_max,
                usage_unit=lot.usage_unit,
                quantity=quantity,
                quantity_remaining=quantity,
                status=InstalledStatus.IN_USE,
                installed_at=now,
                installed_by=actor_user_id,
            )
            refilled = False

        logger.info(
            "Installed %s of %s lot %s on instrument=%s (refill=%s)",
            quantity, lot.reagent_name, lot.lot_number, instrument.id, refilled,
        )
        self.audit.log(
            action_type=ActionType.UPDATE if refilled else ActionType.CREATE,
            event_code="instrument_reagent.refilled" if refilled else "instrument_reagent.installed",
            entity_type="InstrumentReagent",
            entity_id=reagent.id,
            actor_user_id=actor_user_id,
            description=(
                f"{'Refilled' if refilled else 'Installed'} {quantity:g} {lot.usage_unit} of "
                f"{lot.reagent_name} lot {lot.lot_number} on {instrument.name}"
            ),
            metadata={
                "inventory_id": lot.id,
                "instrument_id": instrument.id,
                "quantity": quantity,
                "quantity_remaining": reagent.quantity_remaining,
            },
        )
        return InstallResult(reagent=reagent, refilled=refilled)

    # ----------------------------
    # Consumption
    # ----------------------------
    @transaction.atomic
    def record_usage(
        self,
        *,
        actor_user_id: int | None,
        lot_number: str,
        instrument_id: str,
        quantity_used: float,
        test_order_id: str | None = None,
        notes: str = "",
    ) -> ReagentUsageHistory:
        quantity_used = float(quantity_used)
        if quantity_used <= 0:
            raise ValidationError({"quantity_used": ["Quantity used must be greater than zero"]})

        reagent = (
            InstrumentReagent.objects.filter(
                instrument_id=instrument_id,
                lot_number=lot_number,
                status=InstalledStatus.IN_USE,
            )
            .order_by("-installed_at")
            .first()
        )
        if reagent is None:
            raise PreconditionFailedError(
                f"Reagent with lot number {lot_number} not found or not in use for instrument"
            )
        if quantity_used > reagent.quantity_remaining:
            raise PreconditionFailedError(
                f"Insufficient quantity for reagent {lot_number}. "
                f"Available: {reagent.quantity_remaining:g}, Required: {quantity_used:g}"
            )

        debited = (
            InstrumentReagent.objects.filter(
                id=reagent.id,
                status=InstalledStatus.IN_USE,
                quantity_remaining__gte=quantity_used,
            )
            .update(quantity_remaining=F("quantity_remaining") - quantity_used, updated_at=timezone.now())
        )
        if debited != 1:
            raise ConflictError(f"Reagent {lot_number} was consumed concurrently; usage already processed")

        entry = ReagentUsageHistory.objects.create(
            reagent_lot_number=lot_number,
            instrument_id=instrument_id,
            instrument_reagent_id=reagent.id,
            test_order_id=test_order_id,
            quantity_used=quantity_used,
            used_by=actor_user_id,
            used_at=timezone.now(),
            notes=notes or "",
        )
        logger.info(
            "Reagent usage lot=%s instrument=%s qty=%s order=%s",
            lot_number, instrument_id, quantity_used, test_order_id,
        )
        return entry

    def record_usages(
        self,
        *,
        actor_user_id: int | None,
        instrument_id: str,
        usages: Iterable[dict],
        test_order_id: str | None = None,
    ) -> list[ReagentUsageHistory]:
        """All-or-nothing when called inside the caller's transaction."""
        return [
            self.record_usage(
                actor_user_id=actor_user_id,
                lot_number=u["reagent_lot_number"],
                instrument_id=instrument_id,
                quantity_used=u["quantity_used"],
                test_order_id=test_order_id,
                notes=u.get("notes") or "",
            )
            for u in usages
        ]

    @transaction.atomic
    def record_correction(
        self,
        *,
        actor_user_id: int | None,
        usage_id: str,
        quantity: float | None = None,
        notes: str = "",
    ) -> ReagentUsageHistory:
        """
        Reverse all or part of a usage entry by appending a negative entry and
        crediting the installed lot (capped at its installed quantity).
        """
        try:
            original = ReagentUsageHistory.objects.select_for_update().get(id=usage_id)
        except ReagentUsageHistory.DoesNotExist:
            raise NotFound("Usage history entry not found")

        if original.corrects_id is not None:
            raise ValidationError("A correction entry cannot itself be corrected")
        if original.corrections.exists():
            raise ConflictError("Usage entry has already been corrected")

        returned = original.quantity_used if quantity is None else float(quantity)
        if returned <= 0 or returned > original.quantity_used:
            raise ValidationError(
                {"quantity": [f"Correction quantity must be between 0 and {original.quantity_used:g}"]}
            )

        reagent = InstrumentReagent.objects.select_for_update().filter(id=original.instrument_reagent_id).first()
        if reagent is not None:
            credited = min(reagent.quantity, reagent.quantity_remaining + returned)
            InstrumentReagent.objects.filter(id=reagent.id).update(
                quantity_remaining=credited,
                updated_at=timezone.now(),
            )

        entry = ReagentUsageHistory.objects.create(
            reagent_lot_number=original.reagent_lot_number,
            instrument_id=original.instrument_id,
            instrument_reagent_id=original.instrument_reagent_id,
            test_order_id=original.test_order_id,
            quantity_used=-returned,
            used_by=actor_user_id,
            used_at=timezone.now(),
            notes=notes or f"Correction of {original.id}",
            corrects=original,
        )
        self.audit.log(
            action_type=ActionType.CREATE,
            event_code="reagent_usage.corrected",
            entity_type="ReagentUsageHistory",
            entity_id=entry.id,
            actor_user_id=actor_user_id,
            description=f"Reversed {returned:g} of lot {original.reagent_lot_number}",
            metadata={"corrects": original.id},
        )
        return entry

    # ----------------------------
    # Installed lot status
    # ----------------------------
    @transaction.atomic
    def update_status(
        self,
        *,
        actor_user_id: int | None,
        instrument_reagent_id: str,
        status: str,
    ) -> InstrumentReagent:
        if status not in InstalledStatus.values:
            raise ValidationError({"status": [f"Invalid status: {status}"]})

        try:
            reagent = InstrumentReagent.objects.select_for_update().get(id=instrument_reagent_id)
        except InstrumentReagent.DoesNotExist:
            raise NotFound("Instrument reagent not found")

        if reagent.status == status:
            raise ConflictError(f'Reagent is already marked as "{status}"')

        previous = reagent.status
        reagent.status = status
        reagent.status_changed_at = timezone.now()
        reagent.status_changed_by = actor_user_id
        reagent.save(update_fields=["status", "status_changed_at", "status_changed_by", "updated_at"])

        self.audit.log(
            action_type=ActionType.UPDATE,
            event_code="instrument_reagent.status_changed",
            entity_type="InstrumentReagent",
            entity_id=reagent.id,
            actor_user_id=actor_user_id,
            description=f"{reagent.reagent_name} lot {reagent.lot_number}: {previous} -> {status}",
            metadata={"changed_fields": ["status"], "from": previous, "to": status},
        )
        return reagent

    # ----------------------------
    # Run readiness
    # ----------------------------
    def check_ready_for_run(self, *, instrument_id: str) -> RunReadiness:
        in_use = InstrumentReagent.objects.filter(
            instrument_id=instrument_id,
            status=InstalledStatus.IN_USE,
            reagent_name__in=self.required_reagents,
        ).values_list("reagent_name", "quantity_remaining")

        remaining: dict[str, float] = {}
        for name, qty in in_use:
            remaining[name] = max(remaining.get(name, 0.0), qty)

        missing = [name for name in self.required_reagents if name not in remaining]
        insufficient = [name for name in self.required_reagents if name in remaining and remaining[name] <= 0]
        return RunReadiness(missing=missing, insufficient=insufficient)

    def ensure_ready_for_run(self, *, instrument_id: str) -> None:
        readiness = self.check_ready_for_run(instrument_id=instrument_id)
        if not readiness.ready:
            raise PreconditionFailedError(readiness.message)
