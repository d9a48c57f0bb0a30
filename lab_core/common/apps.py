# lab_core/common/apps.py
from __future__ import annotations

from django.apps import AppConfig


class CommonConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "lab_core.common"
    label = "common"

    def ready(self) -> None:
        from lab_core.common.wiring import build_container

        self.container = build_container()
