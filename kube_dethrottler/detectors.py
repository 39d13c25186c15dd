from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet

from .load import LoadAverages


class Period(Enum):
    LOAD_1M = "load1m"
    LOAD_5M = "load5m"
    LOAD_15M = "load15m"


@dataclass(frozen=True)
class Thresholds:
    """Normalized load limits; 0 disables the check for that period"""
    load_1m: float = 0.0
    load_5m: float = 0.0
    load_15m: float = 0.0

    def for_period(self, period: Period) -> float:
        return {
            Period.LOAD_1M: self.load_1m,
            Period.LOAD_5M: self.load_5m,
            Period.LOAD_15M: self.load_15m,
        }[period]

    def any_enabled(self) -> bool:
        return any(self.for_period(p) != 0 for p in Period)


@dataclass(frozen=True)
class Verdict:
    overloaded: bool
    exceeded: FrozenSet[Period] = field(default_factory=frozenset)


def value_for(load: LoadAverages, period: Period) -> float:
    if period is Period.LOAD_1M:
        return load.load_1m
    if period is Period.LOAD_5M:
        return load.load_5m
    return load.load_15m


def evaluate(load: LoadAverages, thresholds: Thresholds) -> Verdict:
    """Check normalized load against every enabled threshold.

    A period counts as exceeded only when its value is strictly greater
    than a non-zero threshold.
    """
    exceeded = set()
    for period in Period:
        limit = thresholds.for_period(period)
        if limit == 0:
            continue
        if value_for(load, period) > limit:
            exceeded.add(period)

    return Verdict(overloaded=bool(exceeded), exceeded=frozenset(exceeded))
