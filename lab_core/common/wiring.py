# lab_core/common/wiring.py
"""
Composition root. Every pipeline component is built once here and handed its
collaborators explicitly; nothing reaches for a module-level instance.
"""
from __future__ import annotations

from dataclasses import dataclass

from django.apps import apps
from django.conf import settings

from lab_core.audit.services import AuditService
from lab_core.catalog.selectors import Catalog
from lab_core.flagging.resolver import FlaggingConfigurationStore, FlagResolver
from lab_core.flagging.services import FlaggingConfigurationService
from lab_core.hl7.codec import HL7Codec
from lab_core.hl7.simulator import ResultSimulator
from lab_core.orders.services import RawResultService, TestOrderService
from lab_core.patients.services import PatientDirectory
from lab_core.reagents.services import DEFAULT_REQUIRED_REAGENTS, ReagentLedger


@dataclass(frozen=True)
class Container:
    audit: AuditService
    patients: PatientDirectory
    catalog: Catalog
    codec: HL7Codec
    simulator: ResultSimulator
    resolver: FlagResolver
    flagging: FlaggingConfigurationService
    ledger: ReagentLedger
    orders: TestOrderService
    raw_results: RawResultService


def build_container(**overrides) -> Container:
    """
    Wire the default graph. Keyword overrides replace leaf components
    (e.g. ``simulator=ResultSimulator(rng=random.Random(7))`` in tests) and
    are threaded into everything that depends on them.
    """
    audit = overrides.get("audit") or AuditService()
    patients = overrides.get("patients") or PatientDirectory()
    catalog = overrides.get("catalog") or Catalog()
    codec = overrides.get("codec") or HL7Codec(strict=getattr(settings, "LAB_HL7_STRICT_NUMERIC", False))
    simulator = overrides.get("simulator") or ResultSimulator()
    resolver = overrides.get("resolver") or FlagResolver(store=FlaggingConfigurationStore())

    ledger = overrides.get("ledger") or ReagentLedger(
        catalog=catalog,
        audit=audit,
        required_reagents=getattr(settings, "LAB_REQUIRED_REAGENTS", None) or DEFAULT_REQUIRED_REAGENTS,
    )
    return Container(
        audit=audit,
        patients=patients,
        catalog=catalog,
        codec=codec,
        simulator=simulator,
        resolver=resolver,
        flagging=FlaggingConfigurationService(catalog=catalog, audit=audit),
        ledger=ledger,
        orders=TestOrderService(
            patients=patients,
            catalog=catalog,
            resolver=resolver,
            ledger=ledger,
            codec=codec,
            simulator=simulator,
            audit=audit,
        ),
        raw_results=RawResultService(audit=audit),
    )


def get_container() -> Container:
    return apps.get_app_config("common").container
