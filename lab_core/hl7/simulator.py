# lab_core/hl7/simulator.py
from __future__ import annotations

import random
from typing import Iterable

from lab_core.catalog.models import Parameter
from lab_core.catalog.selectors import normal_range_for
from lab_core.hl7.codec import Observation


class ResultSimulator:
    """
    Stands in for the analyser: produces one measurement per active parameter
    that has a usable normal range. Roughly 30% of values land outside the
    range (up to 20% of the span beyond min or max).
    """

    OUT_OF_RANGE_RATE = 0.3
    DEVIATION = 0.2

    def __init__(self, *, rng: random.Random | None = None):
        self.rng = rng or random.Random()

    def simulate(self, parameters: Iterable[Parameter], *, sex: str | None = None) -> list[Observation]:
        out: list[Observation] = []
        for parameter in parameters:
            if not parameter.is_active:
                continue
            normal = normal_range_for(parameter, sex)
            if normal is None:
                continue

            span = normal.high - normal.low
            if self.rng.random() < self.OUT_OF_RANGE_RATE:
                offset = self.rng.random() * span * self.DEVIATION
                if self.rng.random() < 0.5:
                    value, flag = normal.low - offset, "L"
                else:
                    value, flag = normal.high + offset, "H"
            else:
                value, flag = normal.low + self.rng.random() * span, "N"

            value = round(value, 2)
            # rounding can pull a barely-out value back onto the boundary
            if normal.low <= value <= normal.high:
                flag = "N"

            out.append(
                Observation(
                    parameter_code=parameter.parameter_code,
                    value=value,
                    unit=parameter.unit,
                    reference_range=normal.text,
                    abnormal_flag=flag,
                )
            )
        return out
