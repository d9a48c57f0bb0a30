# lab_core/catalog/selectors.py
from __future__ import annotations

from dataclasses import dataclass

from django.db.models import QuerySet
from rest_framework.exceptions import NotFound

from lab_core.catalog.models import Instrument, Parameter


@dataclass(frozen=True)
class NormalRange:
    low: float
    high: float
    text: str


def normal_range_for(parameter: Parameter, sex: str | None = None) -> NormalRange | None:
    """
    Resolve the parameter's own normal range, honouring sex-specific ranges
    when both male and female variants exist.
    """
    raw = parameter.normal_range
    if not isinstance(raw, dict):
        return None

    if isinstance(raw.get("male"), dict) and isinstance(raw.get("female"), dict):
        if sex not in ("male", "female"):
            return None
        raw = raw[sex]

    low, high = raw.get("min"), raw.get("max")
    if low is None or high is None:
        return None
    try:
        low, high = float(low), float(high)
    except (TypeError, ValueError):
        return None

    unit = f" {parameter.unit}" if parameter.unit else ""
    text = raw.get("text") or f"{low:g}-{high:g}{unit}"
    return NormalRange(low=low, high=high, text=text)


class Catalog:
    """
    Read-only parameter/instrument master data used by the pipeline.
    """

    def get_instrument(self, instrument_id) -> Instrument:
        try:
            return Instrument.objects.get(id=instrument_id)
        except Instrument.DoesNotExist:
            raise NotFound("Instrument not found")

    def get_parameter(self, parameter_id) -> Parameter:
        try:
            return Parameter.objects.get(id=parameter_id)
        except Parameter.DoesNotExist:
            raise NotFound(f"Parameter {parameter_id} not found")

    def get_parameter_by_code(self, code: str) -> Parameter:
        try:
            return Parameter.objects.get(parameter_code=code)
        except Parameter.DoesNotExist:
            raise NotFound(f"Parameter with code {code} not found")

    def active_parameters(self) -> QuerySet[Parameter]:
        return Parameter.objects.filter(is_active=True).order_by("parameter_code")
