# lab_core/api/urls.py
from __future__ import annotations

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from lab_core.audit.api.views import EventLogViewSet
from lab_core.flagging.api.views import FlaggingConfigurationViewSet
from lab_core.orders.api.views import RawTestResultViewSet, TestOrderViewSet
from lab_core.reagents.api.views import InstrumentReagentViewSet, ReagentInventoryViewSet, ReagentUsageViewSet

router = DefaultRouter()

# Test order pipeline
router.register(r"test-orders", TestOrderViewSet, basename="test-orders")
router.register(r"raw-test-results", RawTestResultViewSet, basename="raw-test-results")

# Flagging
router.register(r"flagging-configurations", FlaggingConfigurationViewSet, basename="flagging-configurations")

# Reagents
router.register(r"reagent-inventory", ReagentInventoryViewSet, basename="reagent-inventory")
router.register(r"instrument-reagents", InstrumentReagentViewSet, basename="instrument-reagents")
router.register(r"reagent-usage", ReagentUsageViewSet, basename="reagent-usage")

# Audit
router.register(r"event-logs", EventLogViewSet, basename="event-logs")

urlpatterns = [
    path("", include(router.urls)),
]
