# lab_core/flagging/services.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from django.db import transaction
from rest_framework.exceptions import APIException, NotFound, ValidationError

from lab_core.audit.models import ActionType
from lab_core.audit.services import AuditService
from lab_core.catalog.selectors import Catalog
from lab_core.flagging.models import FlagType, FlaggingConfiguration, Gender

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "gender",
    "age_group",
    "reference_range_min",
    "reference_range_max",
    "flag_type",
    "description",
    "is_active",
)

RANGE_ORDER_MSG = "reference_range_min must be less than reference_range_max"


@dataclass
class SyncReport:
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "errors": self.errors,
        }


def _blank_to_none(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _validate_range(low, high) -> None:
    if low is not None and high is not None and float(low) >= float(high):
        raise ValidationError({"reference_range_min": [RANGE_ORDER_MSG]})


class FlaggingConfigurationService:
    """
    Write-model operations for flagging rules.
    - Create / update / delete (range order validated on every write)
    - Batch sync keyed by (parameter, gender, age_group)
    """

    def __init__(self, *, catalog: Catalog, audit: AuditService):
        self.catalog = catalog
        self.audit = audit

    def _log(self, cfg: FlaggingConfiguration, *, action: str, actor_user_id, changed: list[str], description: str):
        self.audit.log(
            action_type=action,
            event_code=f"flagging_configuration.{action.lower()}d",
            entity_type="FlaggingConfiguration",
            entity_id=cfg.id,
            actor_user_id=actor_user_id,
            description=description,
            metadata={"parameter_id": cfg.parameter_id, "changed_fields": changed},
        )

    @transaction.atomic
    def create(self, *, actor_user_id: int | None, data: dict) -> FlaggingConfiguration:
        parameter = self.catalog.get_parameter(data["parameter_id"])
        _validate_range(data.get("reference_range_min"), data.get("reference_range_max"))

        cfg = FlaggingConfiguration.objects.create(
            parameter=parameter,
            gender=_blank_to_none(data.get("gender")),
            age_group=_blank_to_none(data.get("age_group")),
            reference_range_min=data.get("reference_range_min"),
            reference_range_max=data.get("reference_range_max"),
            flag_type=data.get("flag_type") or FlagType.WARNING,
            description=data.get("description") or "",
            is_active=data.get("is_active", True),
            created_by=actor_user_id,
            updated_by=actor_user_id,
        )
        self._log(
            cfg,
            action=ActionType.CREATE,
            actor_user_id=actor_user_id,
            changed=sorted(k for k in data if k in EDITABLE_FIELDS),
            description=f"Created {cfg.flag_type} flagging rule for {parameter.parameter_code}",
        )
        return cfg

    @transaction.atomic
    def update(self, *, actor_user_id: int | None, configuration_id: str, data: dict) -> FlaggingConfiguration:
        try:
            cfg = FlaggingConfiguration.objects.select_for_update().get(id=configuration_id)
        except FlaggingConfiguration.DoesNotExist:
            raise NotFound("Flagging configuration not found")

        changed = self._apply(cfg, data)
        _validate_range(cfg.reference_range_min, cfg.reference_range_max)

        if changed:
            cfg.updated_by = actor_user_id
            cfg.save()
            self._log(
                cfg,
                action=ActionType.UPDATE,
                actor_user_id=actor_user_id,
                changed=changed,
                description=f"Updated flagging rule fields: {', '.join(changed)}",
            )
        return cfg

    @transaction.atomic
    def delete(self, *, actor_user_id: int | None, configuration_id: str) -> None:
        try:
            cfg = FlaggingConfiguration.objects.get(id=configuration_id)
        except FlaggingConfiguration.DoesNotExist:
            raise NotFound("Flagging configuration not found")

        self._log(
            cfg,
            action=ActionType.DELETE,
            actor_user_id=actor_user_id,
            changed=[],
            description="Deleted flagging rule",
        )
        cfg.delete()

    @staticmethod
    def _apply(cfg: FlaggingConfiguration, data: dict) -> list[str]:
        changed: list[str] = []
        for key in EDITABLE_FIELDS:
            if key not in data:
                continue
            value = data[key]
            if key in ("gender", "age_group"):
                value = _blank_to_none(value)
            elif key == "description":
                value = value or ""
            if getattr(cfg, key) != value:
                setattr(cfg, key, value)
                changed.append(key)
        return changed

    # ----------------------------
    # Batch sync
    # ----------------------------
    def _clean_sync_item(self, item: Any) -> dict:
        if not isinstance(item, dict):
            raise ValidationError("Each configuration must be an object")

        parameter_id = item.get("parameter_id")
        if not parameter_id:
            raise ValidationError("parameter_id is required")

        gender = _blank_to_none(item.get("gender"))
        if gender is not None and gender not in Gender.values:
            raise ValidationError(f"Invalid gender: {gender}")

        flag_type = item.get("flag_type") or FlagType.WARNING
        if flag_type not in FlagType.values:
            raise ValidationError(f"Invalid flag_type: {flag_type}")

        cleaned = {
            "parameter_id": str(parameter_id),
            "gender": gender,
            "age_group": _blank_to_none(item.get("age_group")),
            "flag_type": flag_type,
        }
        for key in ("reference_range_min", "reference_range_max"):
            if key in item:
                raw = item[key]
                try:
                    cleaned[key] = None if raw is None else float(raw)
                except (TypeError, ValueError):
                    raise ValidationError(f"{key} must be a number")
        if "description" in item:
            cleaned["description"] = item.get("description") or ""
        if "is_active" in item:
            cleaned["is_active"] = bool(item["is_active"])

        low, high = cleaned.get("reference_range_min"), cleaned.get("reference_range_max")
        if low is not None and high is not None and low >= high:
            raise ValidationError(f"Invalid range for parameter {parameter_id}: min >= max")
        return cleaned

    def _sync_one(self, *, actor_user_id: int | None, item: Any) -> bool:
        """Returns True when a row was created, False when updated."""
        data = self._clean_sync_item(item)
        parameter = self.catalog.get_parameter(data["parameter_id"])

        existing = (
            FlaggingConfiguration.objects.select_for_update()
            .filter(parameter=parameter, gender=data["gender"], age_group=data["age_group"])
            .order_by("-updated_at", "-id")
            .first()
        )
        if existing is None:
            self.create(actor_user_id=actor_user_id, data=data)
            return True

        self.update(actor_user_id=actor_user_id, configuration_id=existing.id, data=data)
        return False

    def sync(self, *, actor_user_id: int | None, configurations: list) -> SyncReport:
        """
        Upsert each configuration by its exact (parameter, gender, age_group)
        triple; null matches only null. Each item runs in its own savepoint so
        a bad item is reported without aborting the rest of the batch.
        """
        report = SyncReport()
        for index, item in enumerate(configurations):
            try:
                with transaction.atomic():
                    created = self._sync_one(actor_user_id=actor_user_id, item=item)
            except APIException as exc:
                report.failed += 1
                report.errors.append(
                    {
                        "index": index,
                        "parameter_id": item.get("parameter_id") if isinstance(item, dict) else None,
                        "message": _exc_message(exc),
                    }
                )
                continue

            if created:
                report.created += 1
            else:
                report.updated += 1

        logger.info(
            "Flagging sync: created=%s updated=%s failed=%s",
            report.created, report.updated, report.failed,
        )
        return report


def _exc_message(exc: APIException) -> str:
    detail = exc.detail
    if isinstance(detail, list) and detail:
        return str(detail[0])
    if isinstance(detail, dict) and detail:
        value = next(iter(detail.values()))
        return str(value[0] if isinstance(value, list) and value else value)
    return str(detail)
