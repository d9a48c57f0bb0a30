# lab_core/flagging/selectors.py
from __future__ import annotations

from django.db.models import QuerySet

from lab_core.flagging.models import FlaggingConfiguration


class FlaggingConfigurationSelector:
    class NotFound(Exception):
        pass

    @staticmethod
    def get(*, configuration_id) -> FlaggingConfiguration:
        try:
            return FlaggingConfiguration.objects.select_related("parameter").get(id=configuration_id)
        except FlaggingConfiguration.DoesNotExist:
            raise FlaggingConfigurationSelector.NotFound()

    @staticmethod
    def list() -> QuerySet[FlaggingConfiguration]:
        return FlaggingConfiguration.objects.select_related("parameter").order_by("-created_at", "-id")
