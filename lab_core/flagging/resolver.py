# lab_core/flagging/resolver.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol

from lab_core.flagging.models import FlaggingConfiguration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlagRule:
    id: str
    parameter_id: str
    gender: Optional[str]
    age_group: Optional[str]
    low: Optional[float]
    high: Optional[float]
    flag_type: str
    updated_at: Optional[datetime] = None

    @property
    def specificity(self) -> int:
        return int(self.gender is not None) + int(self.age_group is not None)

    def applies_to(self, *, gender: Optional[str], age_group: Optional[str]) -> bool:
        if self.gender is not None and self.gender != gender:
            return False
        if self.age_group is not None and self.age_group != age_group:
            return False
        return True

    @property
    def range_text(self) -> str:
        return format_range(self.low, self.high)


@dataclass(frozen=True)
class FlagVerdict:
    is_flagged: bool
    flag_type: Optional[str]
    configuration_id: Optional[str]
    reference_range_text: str


def _num(value: float) -> str:
    return f"{value:g}"


def format_range(low: Optional[float], high: Optional[float]) -> str:
    if low is not None and high is not None:
        return f"{_num(low)}-{_num(high)}"
    if low is not None:
        return f">={_num(low)}"
    if high is not None:
        return f"<={_num(high)}"
    return ""


class RuleStore(Protocol):
    def active_rules(self, parameter_id: str) -> Iterable[FlagRule]:
        ...


class FlaggingConfigurationStore:
    """
    RuleStore backed by the FlaggingConfiguration table. Plain read, no locks.
    """

    def active_rules(self, parameter_id: str) -> list[FlagRule]:
        qs = FlaggingConfiguration.objects.filter(parameter_id=parameter_id, is_active=True)
        return [
            FlagRule(
                id=c.id,
                parameter_id=c.parameter_id,
                gender=c.gender or None,
                age_group=c.age_group or None,
                low=c.reference_range_min,
                high=c.reference_range_max,
                flag_type=c.flag_type,
                updated_at=c.updated_at,
            )
            for c in qs
        ]


def _tie_break_key(rule: FlagRule):
    # Most specific first; equal specificity -> most recently updated, then highest id.
    stamp = rule.updated_at.timestamp() if rule.updated_at else float("-inf")
    return (rule.specificity, stamp, rule.id)


class FlagResolver:
    """
    Picks the most specific active rule for (parameter, sex, age group) and
    compares the value against it.

    Specificity counts the constrained dimensions: sex+age (2) beats either
    one alone (1), which beats a wildcard rule (0). When no rule applies the
    value is reported as not flagged.
    """

    def __init__(self, *, store: RuleStore):
        self.store = store

    def select_rule(
        self,
        *,
        parameter_id: str,
        gender: Optional[str] = None,
        age_group: Optional[str] = None,
    ) -> Optional[FlagRule]:
        candidates = [
            r for r in self.store.active_rules(parameter_id)
            if r.applies_to(gender=gender, age_group=age_group)
        ]
        if not candidates:
            return None

        candidates.sort(key=_tie_break_key, reverse=True)
        winner = candidates[0]
        if len(candidates) > 1 and candidates[1].specificity == winner.specificity:
            logger.info(
                "Ambiguous flagging rules for parameter=%s gender=%s age_group=%s; using %s",
                parameter_id, gender, age_group, winner.id,
            )
        return winner

    def resolve(
        self,
        *,
        parameter_id: str,
        value: float,
        gender: Optional[str] = None,
        age_group: Optional[str] = None,
        fallback_range_text: str = "",
    ) -> FlagVerdict:
        rule = self.select_rule(parameter_id=parameter_id, gender=gender, age_group=age_group)

        if rule is None:
            logger.debug("No flagging rule for parameter=%s; value left unflagged", parameter_id)
            return FlagVerdict(
                is_flagged=False,
                flag_type=None,
                configuration_id=None,
                reference_range_text=fallback_range_text,
            )

        below = rule.low is not None and value < rule.low
        above = rule.high is not None and value > rule.high
        flagged = below or above

        return FlagVerdict(
            is_flagged=flagged,
            flag_type=rule.flag_type if flagged else None,
            configuration_id=rule.id,
            reference_range_text=rule.range_text or fallback_range_text,
        )
