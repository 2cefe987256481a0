"""Stage-based growth model.

A growth table maps body weight to an expected weekly gain. Simulation
steps in whole cadence periods (15 days for tilapia):

    next = prev + weekly_rate(prev) * cadence_days / 7

Two series come out of ``forward_forecast``:
    - points up to and including the latest actual measurement keep the
      original baseline prediction (what the model said before the
      measurement was known)
    - points after it are re-simulated from the measured value (rebase)

Every simulation loop is bounded by ``safety_cap`` steps so a flat or
shrinking table still terminates.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from .rules_config import RuleSet

logger = logging.getLogger("sentinel.growth")


class ForecastUnavailable(str, Enum):
    """Reasons ``days_to_target`` cannot return a day count."""

    NO_TARGET = "no-target"
    NO_CURRENT_WEIGHT = "no-current-weight"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class GrowthStage:
    from_grams: float
    to_grams: float | None
    weekly_rate_grams: float

    def contains(self, weight: float) -> bool:
        if self.to_grams is None:
            return weight >= self.from_grams
        return self.from_grams <= weight < self.to_grams


class GrowthModel:
    """Piecewise growth table plus forward/backward simulation.

    Usage:
        model = GrowthModel.from_rules(load_rules())
        series = model.forward_forecast([5.0, 13.2], seed=5.0)
        days = model.days_to_target(42.0, 250.0)
    """

    def __init__(
        self,
        stages: Sequence[GrowthStage],
        cadence_days: int = 15,
        safety_cap: int = 200,
    ):
        if not stages:
            raise ValueError("growth model needs at least one stage")
        self.stages = list(stages)
        self.cadence_days = cadence_days
        self.safety_cap = safety_cap
        self.min_weight = self.stages[0].from_grams

    @classmethod
    def from_rules(cls, rules: RuleSet) -> GrowthModel:
        stages = [
            GrowthStage(s.from_grams, s.to_grams, s.weekly_rate_grams)
            for s in rules.growth.stages
        ]
        return cls(
            stages,
            cadence_days=rules.cadence_days,
            safety_cap=rules.growth.safety_cap,
        )

    # -----------------------------------------------------------------
    # Rates
    # -----------------------------------------------------------------

    def stage_rate(self, weight: float) -> float:
        """Weekly gain at ``weight``. First matching stage wins.

        Weights below the first stage use the first stage's rate; weights
        past every bound use the tail rate.
        """
        if weight < self.min_weight:
            return self.stages[0].weekly_rate_grams
        for stage in self.stages:
            if stage.contains(weight):
                return stage.weekly_rate_grams
        return self.stages[-1].weekly_rate_grams

    def rate_per_cadence(self, weight: float) -> float:
        return self.stage_rate(weight) * self.cadence_days / 7

    def step(self, weight: float) -> float:
        return weight + self.rate_per_cadence(weight)

    # -----------------------------------------------------------------
    # Forward simulation
    # -----------------------------------------------------------------

    def baseline(self, seed: float, periods: int) -> list[float]:
        """``periods`` points starting at ``seed`` (floored at the table minimum)."""
        out = [max(self.min_weight, seed)]
        for _ in range(1, max(1, periods)):
            out.append(self.step(out[-1]))
        return out

    @staticmethod
    def latest_actual_index(actual: Sequence[float | None]) -> int | None:
        for i in range(len(actual) - 1, -1, -1):
            if actual[i] is not None:
                return i
        return None

    def _rebase(self, series: list[float], index: int, value: float) -> None:
        w = value
        for i in range(index + 1, len(series)):
            w = self.step(w)
            series[i] = w

    def forward_forecast(
        self,
        actual: Sequence[float | None],
        seed: float,
        target: float | None = None,
        extra_periods: int = 8,
    ) -> list[float]:
        """Baseline forecast rebased on the latest actual measurement.

        Args:
            actual: Measured ABW per period, chronological (None = no sample).
            seed: Starting weight for period 1.
            target: Optional harvest weight. With a target the series runs
                until it is reached (clamped to it) instead of a fixed horizon.
            extra_periods: Periods past the observed span when no target is set.
        """
        actual = list(actual)
        base_len = max(1, len(actual))
        latest = self.latest_actual_index(actual)

        if target is None or not math.isfinite(target):
            out = self.baseline(seed, base_len + max(0, extra_periods))
            if latest is not None:
                self._rebase(out, latest, actual[latest])
            return out

        first_hit = next(
            (i for i, v in enumerate(actual) if v is not None and v >= target),
            None,
        )
        if first_hit is not None:
            # Target already reached on record; nothing left to project
            return self.baseline(seed, first_hit + 1)

        out = self.baseline(seed, base_len)
        if latest is not None:
            self._rebase(out, latest, actual[latest])
        w = actual[latest] if latest == base_len - 1 else out[-1]

        steps = 0
        while steps < self.safety_cap and w < target:
            w = self.step(w)
            out.append(w)
            steps += 1

        if out[-1] >= target:
            out[-1] = target
        return out

    def predicted_at_latest(
        self,
        actual: Sequence[float | None],
        seed: float,
    ) -> tuple[int, float] | None:
        """Prediction at the latest actual's period index, or None without actuals."""
        latest = self.latest_actual_index(actual)
        if latest is None:
            return None
        series = self.forward_forecast(actual, seed, target=None, extra_periods=0)
        return latest, series[latest]

    # -----------------------------------------------------------------
    # Days to target
    # -----------------------------------------------------------------

    def days_to_target(
        self,
        current: float | None,
        target: float | None,
    ) -> int | ForecastUnavailable:
        """Day-granular time to reach ``target`` from ``current``.

        Simulates whole cadence periods; inside the period that crosses the
        target the gain is spread evenly per day and the remainder rounded up.
        """
        if current is None or not math.isfinite(current) or current <= 0:
            return ForecastUnavailable.NO_CURRENT_WEIGHT
        if target is None or not math.isfinite(target) or target <= 0:
            return ForecastUnavailable.NO_TARGET
        if target <= current:
            return 0

        cur = max(current, self.min_weight)
        days = 0
        for _ in range(self.safety_cap):
            if cur >= target:
                return days
            gain = self.rate_per_cadence(cur)
            if gain <= 0:
                break
            if cur + gain >= target:
                daily = gain / self.cadence_days
                inside = math.ceil(round((target - cur) / daily, 9))
                return days + inside
            cur += gain
            days += self.cadence_days

        logger.warning(
            "Target %.1f g not reached from %.1f g within %d periods",
            target,
            current,
            self.safety_cap,
        )
        return ForecastUnavailable.UNREACHABLE
