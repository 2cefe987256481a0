"""Mortality Aggregator.

Reduces periodic mortality logs to a survival percentage. Each log is a
percent of the originally stocked fish, so survival is a plain subtraction:

    survival_percent = max(0, 100 - sum(clamp(rate, 0, 100)))
    estimated_alive  = round(survival_percent / 100 * initial_stocked)

The model is mortality-only: adding entries can never raise survival.
Admission control (``validate_new_entry``) rejects early re-entry inside the
cadence window and any rate that would push cumulative mortality past 100.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from datetime import datetime, timedelta

from .errors import ValidationError
from .models import MortalityEntry, SurvivalPoint, SurvivalState

logger = logging.getLogger("sentinel.survival")

DAY = timedelta(days=1)


def clamp_rate(rate: float | None) -> float:
    """Clamp a stored rate to [0, 100]. Missing or NaN rates count as 0."""
    if rate is None or not math.isfinite(rate):
        return 0.0
    return max(0.0, min(100.0, rate))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def cumulative_mortality(entries: Iterable[MortalityEntry]) -> float:
    return sum(clamp_rate(e.mortality_rate_percent) for e in entries)


def compute_survival(
    entries: Iterable[MortalityEntry],
    initial_stocked: int,
) -> SurvivalState:
    """Current survival and estimated head count.

    No entries gives 100% and the full stocked count.
    """
    survival = max(0.0, 100.0 - cumulative_mortality(entries))
    alive = max(0, round_half_up(survival / 100.0 * max(0, initial_stocked)))
    return SurvivalState(survival_percent=survival, estimated_alive=alive)


def survival_curve(entries: Iterable[MortalityEntry]) -> list[SurvivalPoint]:
    """Chronological survival after each entry, cumulative capped at 100."""
    points: list[SurvivalPoint] = []
    cumulative = 0.0
    for entry in sorted(entries, key=lambda e: e.period_date):
        cumulative = min(100.0, cumulative + clamp_rate(entry.mortality_rate_percent))
        points.append(
            SurvivalPoint(
                period_date=entry.period_date,
                survival_percent=max(0.0, 100.0 - cumulative),
            )
        )
    return points


def latest_entry(entries: Iterable[MortalityEntry]) -> MortalityEntry | None:
    return max(entries, key=lambda e: e.period_date, default=None)


def days_elapsed(since: datetime, now: datetime) -> int:
    """Whole days between two instants, floored."""
    return math.floor((now - since) / DAY)


def days_until_next_entry(
    latest: datetime | None,
    now: datetime,
    cadence_days: int,
) -> int:
    """Days left before another periodic entry is allowed (0 = allowed now)."""
    if latest is None:
        return 0
    return max(0, cadence_days - days_elapsed(latest, now))


def can_record_now(
    entries: Iterable[MortalityEntry],
    now: datetime,
    cadence_days: int,
) -> bool:
    """True when at least ``cadence_days`` passed since the latest entry."""
    last = latest_entry(entries)
    return days_until_next_entry(last.period_date if last else None, now, cadence_days) == 0


def validate_rate(rate: float) -> float:
    if rate is None or not math.isfinite(rate) or rate < 0 or rate > 100:
        raise ValidationError(
            "mortality rate must be between 0 and 100", field="mortality_rate_percent"
        )
    return float(rate)


def validate_new_entry(
    entries: list[MortalityEntry],
    rate: float,
    now: datetime,
    cadence_days: int,
) -> float:
    """Admission control for a new periodic entry.

    Raises:
        ValidationError: rate outside [0, 100], entry inside the cadence
            window, or cumulative mortality would exceed 100.
    """
    rate = validate_rate(rate)

    last = latest_entry(entries)
    if last is not None:
        wait = days_until_next_entry(last.period_date, now, cadence_days)
        if wait > 0:
            raise ValidationError(
                f"mortality can be recorded once every {cadence_days} days; "
                f"next entry allowed in {wait} day{'s' if wait != 1 else ''}",
                field="period_date",
            )

    total = cumulative_mortality(entries)
    if total + rate > 100:
        raise ValidationError(
            f"cumulative mortality would reach {total + rate:.2f}% "
            f"(already {total:.2f}%); it cannot exceed 100%",
            field="mortality_rate_percent",
        )
    return rate


def validate_correction(
    entries: list[MortalityEntry],
    entry_id: str,
    rate: float,
) -> float:
    """Check a corrected rate against the cumulative cap.

    The entry being corrected is excluded from the running total.
    """
    rate = validate_rate(rate)
    others = cumulative_mortality(e for e in entries if e.id != entry_id)
    if others + rate > 100:
        raise ValidationError(
            f"corrected rate would push cumulative mortality to {others + rate:.2f}%",
            field="mortality_rate_percent",
        )
    return rate
