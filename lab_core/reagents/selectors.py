# lab_core/reagents/selectors.py
from __future__ import annotations

from django.db.models import QuerySet

from lab_core.reagents.models import InstrumentReagent, ReagentInventory, ReagentUsageHistory


class ReagentSelector:
    class NotFound(Exception):
        pass

    @staticmethod
    def get_inventory(*, inventory_id) -> ReagentInventory:
        try:
            return ReagentInventory.objects.get(id=inventory_id)
        except ReagentInventory.DoesNotExist:
            raise ReagentSelector.NotFound()

    @staticmethod
    def get_installed(*, instrument_reagent_id) -> InstrumentReagent:
        try:
            return InstrumentReagent.objects.select_related("instrument").get(id=instrument_reagent_id)
        except InstrumentReagent.DoesNotExist:
            raise ReagentSelector.NotFound()

    @staticmethod
    def list_inventory() -> QuerySet[ReagentInventory]:
        return ReagentInventory.objects.order_by("reagent_name", "expiration_date", "-created_at")

    @staticmethod
    def list_installed() -> QuerySet[InstrumentReagent]:
        return InstrumentReagent.objects.select_related("instrument").order_by("-installed_at", "-id")

    @staticmethod
    def list_usage() -> QuerySet[ReagentUsageHistory]:
        return ReagentUsageHistory.objects.order_by("-used_at", "-id")
