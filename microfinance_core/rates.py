"""
Rate Schedule Module

Tiered interest-rate lookup keyed by repayment frequency and commitment
length. Longer commitments get a lower (never higher) periodic rate.
Tier boundaries and rates are business configuration loaded from
data/rate_tiers.json, not code.
"""

from bisect import bisect_right
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union
import json
import logging

from .exceptions import InvalidFrequency, InvalidPeriodCount, RateScheduleError


DEFAULT_RATE_TIERS_PATH = Path(__file__).parent / "data" / "rate_tiers.json"

logger = logging.getLogger("microfinance.rates")


class Frequency(Enum):
    """Repayment frequency with its period conversion factors"""
    DAILY = ("daily", 30, 365, 1)
    WEEKLY = ("weekly", 4, 52, 7)
    BIWEEKLY = ("biweekly", 2, 26, 14)
    MONTHLY = ("monthly", 1, 12, None)  # calendar month

    def __new__(cls, value: str, periods_per_month: int, periods_per_year: int,
                days_per_period: Optional[int]):
        obj = object.__new__(cls)
        obj._value_ = value
        obj.periods_per_month = periods_per_month
        obj.periods_per_year = periods_per_year
        obj.days_per_period = days_per_period
        return obj

    @classmethod
    def parse(cls, value: Union[str, 'Frequency']) -> 'Frequency':
        """Parse user input ("Bi-Weekly", "bi_weekly", "monthly"...) into a Frequency"""
        if isinstance(value, Frequency):
            return value
        if not isinstance(value, str):
            raise InvalidFrequency(value)
        normalized = value.strip().lower().replace("-", "").replace("_", "").replace(" ", "")
        for member in cls:
            if member.value == normalized:
                return member
        raise InvalidFrequency(value)


@dataclass(frozen=True)
class RateTier:
    """A contiguous range of period counts sharing one periodic rate"""
    frequency: Frequency
    min_periods: int
    max_periods: Optional[int]  # None = unbounded
    periodic_rate: Decimal

    def contains(self, period_count: int) -> bool:
        if period_count < self.min_periods:
            return False
        return self.max_periods is None or period_count <= self.max_periods

    @property
    def monthly_rate(self) -> Decimal:
        """Rate normalized to one month, as published"""
        return self.periodic_rate * self.frequency.periods_per_month

    @property
    def label(self) -> str:
        """Human-readable range, e.g. "4-6" or "13+" """
        if self.max_periods is None:
            return f"{self.min_periods}+"
        return f"{self.min_periods}-{self.max_periods}"


class RateSchedule:
    """
    Pure lookup table (frequency, period_count) -> periodic rate

    Tiers are validated on construction: for every frequency they must start
    at 1, be contiguous and non-overlapping, and end in exactly one unbounded
    tier, so exactly one tier matches any period count >= 1.
    """

    def __init__(self, tiers: List[RateTier]):
        self._tiers: Dict[Frequency, List[RateTier]] = {}
        for tier in tiers:
            self._tiers.setdefault(tier.frequency, []).append(tier)

        for frequency in Frequency:
            frequency_tiers = sorted(self._tiers.get(frequency, []), key=lambda t: t.min_periods)
            self._validate(frequency, frequency_tiers)
            self._tiers[frequency] = frequency_tiers

        # Lower bounds for bisect
        self._bounds: Dict[Frequency, List[int]] = {
            frequency: [t.min_periods for t in frequency_tiers]
            for frequency, frequency_tiers in self._tiers.items()
        }

    @staticmethod
    def _validate(frequency: Frequency, tiers: List[RateTier]) -> None:
        if not tiers:
            raise RateScheduleError(f"No rate tiers configured for {frequency.value}")

        expected_min = 1
        for i, tier in enumerate(tiers):
            if tier.min_periods != expected_min:
                raise RateScheduleError(
                    f"{frequency.value} tiers must be contiguous from 1: "
                    f"expected tier starting at {expected_min}, got {tier.min_periods}"
                )
            if not (Decimal('0') <= tier.periodic_rate < Decimal('1')):
                raise RateScheduleError(f"{frequency.value} tier {tier.label} has rate outside [0, 1)")

            is_last = i == len(tiers) - 1
            if tier.max_periods is None:
                if not is_last:
                    raise RateScheduleError(f"Only the last {frequency.value} tier may be unbounded")
                break
            if tier.max_periods < tier.min_periods:
                raise RateScheduleError(f"{frequency.value} tier {tier.label} is empty")
            if is_last:
                raise RateScheduleError(f"Last {frequency.value} tier must be unbounded")
            expected_min = tier.max_periods + 1

    @classmethod
    def from_dict(cls, data: dict) -> 'RateSchedule':
        """
        Build a schedule from configuration data

        Each tier gives either "periodic_rate" (used verbatim) or
        "monthly_rate" (divided by the frequency's periods per month).
        """
        tiers = []
        try:
            for frequency_name, tier_list in data["tiers"].items():
                frequency = Frequency.parse(frequency_name)
                for raw in tier_list:
                    if "periodic_rate" in raw:
                        rate = Decimal(str(raw["periodic_rate"]))
                    else:
                        rate = Decimal(str(raw["monthly_rate"])) / frequency.periods_per_month
                    max_periods = raw.get("max_periods")
                    tiers.append(RateTier(
                        frequency=frequency,
                        min_periods=int(raw["min_periods"]),
                        max_periods=int(max_periods) if max_periods is not None else None,
                        periodic_rate=rate
                    ))
        except (KeyError, TypeError, ValueError, InvalidOperation, InvalidFrequency) as e:
            raise RateScheduleError(f"Malformed rate tier configuration: {e}")
        return cls(tiers)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'RateSchedule':
        """Load a schedule from a JSON file"""
        path = Path(path)
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise RateScheduleError(f"Cannot load rate tiers from {path}: {e}")
        schedule = cls.from_dict(data)
        logger.info(f"Loaded rate schedule from {path}")
        return schedule

    @classmethod
    def default(cls) -> 'RateSchedule':
        """The bundled schedule"""
        return cls.from_file(DEFAULT_RATE_TIERS_PATH)

    def tiers(self, frequency: Frequency) -> List[RateTier]:
        """Ordered tiers for a frequency (for display)"""
        return list(self._tiers[Frequency.parse(frequency)])

    def tier_for(self, frequency: Frequency, period_count: int) -> RateTier:
        """Return the single tier whose range contains period_count"""
        if isinstance(period_count, bool) or not isinstance(period_count, int) or period_count < 1:
            raise InvalidPeriodCount(f"Period count must be an integer >= 1, got {period_count!r}")
        frequency = Frequency.parse(frequency)
        index = bisect_right(self._bounds[frequency], period_count) - 1
        return self._tiers[frequency][index]

    def rate_for(self, frequency: Frequency, period_count: int) -> Decimal:
        """Periodic interest rate for a commitment of period_count periods"""
        return self.tier_for(frequency, period_count).periodic_rate
