# lab_core/orders/selectors.py
from __future__ import annotations

from datetime import timedelta

from django.db.models import QuerySet
from django.utils import timezone

from lab_core.orders.models import RawStatus, RawTestResult, TestOrder


class TestOrderSelector:
    class NotFound(Exception):
        pass

    @staticmethod
    def _base() -> QuerySet[TestOrder]:
        return TestOrder.objects.select_related("patient", "instrument").prefetch_related("results", "comments")

    @staticmethod
    def get_order(*, order_id) -> TestOrder:
        try:
            return TestOrderSelector._base().get(id=order_id)
        except TestOrder.DoesNotExist:
            raise TestOrderSelector.NotFound()

    @staticmethod
    def list_orders() -> QuerySet[TestOrder]:
        return TestOrderSelector._base().order_by("-created_at", "-id")


class RawTestResultSelector:
    class NotFound(Exception):
        pass

    @staticmethod
    def get_raw_result(*, raw_result_id) -> RawTestResult:
        try:
            return RawTestResult.objects.select_related("test_order", "instrument").get(id=raw_result_id)
        except RawTestResult.DoesNotExist:
            raise RawTestResultSelector.NotFound()

    @staticmethod
    def list_raw_results() -> QuerySet[RawTestResult]:
        return RawTestResult.objects.select_related("test_order", "instrument").order_by("-created_at", "-id")

    @staticmethod
    def purgeable(*, days: int, now=None) -> QuerySet[RawTestResult]:
        """Synced raw results whose last update is older than ``days``."""
        cutoff = (now or timezone.now()) - timedelta(days=days)
        return RawTestResult.objects.filter(status=RawStatus.SYNCED, can_delete=True, updated_at__lt=cutoff)
