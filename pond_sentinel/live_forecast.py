"""Live Forecast Modulator.

Turns the current water reading into a growth multiplier and compounds it
over the baseline forecast's step deltas:

    live[0] = baseline[0]
    live[i] = live[i-1] + (baseline[i] - baseline[i-1]) * multiplier

A stressed pond therefore falls further behind the baseline with every
period instead of being scaled once.

The survival side uses the same band checks to produce a per-period risk
factor that is spread over ``spread_days`` and applied geometrically per
forecast day.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .models import LiveReading
from .rules_config import GrowthFactorConfig, SurvivalRiskConfig

logger = logging.getLogger("sentinel.live_forecast")


# ---------------------------------------------------------------------------
# Growth multiplier
# ---------------------------------------------------------------------------


def growth_factors(
    reading: LiveReading | None,
    cfg: GrowthFactorConfig,
) -> dict[str, float]:
    """Per-parameter factors in (0, 1]. Missing readings are neutral."""
    factors = {"ph": 1.0, "do": 1.0, "temp": 1.0}
    if reading is None:
        return factors

    if reading.ph is not None:
        if not cfg.ph_severe.contains(reading.ph):
            factors["ph"] = cfg.ph_severe_factor
        elif not cfg.ph_mild.contains(reading.ph):
            factors["ph"] = cfg.ph_mild_factor

    do = reading.dissolved_oxygen_mg_l
    if do is not None and not cfg.do.contains(do):
        factors["do"] = cfg.do_factor

    if reading.temp_c is not None and not cfg.temp.contains(reading.temp_c):
        factors["temp"] = cfg.temp_factor

    return factors


def growth_multiplier(reading: LiveReading | None, cfg: GrowthFactorConfig) -> float:
    """Product of the per-parameter growth factors."""
    m = 1.0
    for factor in growth_factors(reading, cfg).values():
        m *= factor
    return m


def apply_multiplier(baseline: Sequence[float], multiplier: float) -> list[float]:
    """Compound ``multiplier`` over the baseline's step deltas."""
    if not baseline:
        return []
    live = [baseline[0]]
    for i in range(1, len(baseline)):
        live.append(live[i - 1] + (baseline[i] - baseline[i - 1]) * multiplier)
    return live


# ---------------------------------------------------------------------------
# Survival risk
# ---------------------------------------------------------------------------


def survival_risk_multiplier(
    reading: LiveReading | None,
    cfg: SurvivalRiskConfig,
) -> float:
    """Period survival factor in (0, 1] from the current water reading."""
    risk = 1.0
    if reading is None:
        return risk
    if reading.ph is not None and not cfg.ph.contains(reading.ph):
        risk *= cfg.ph_factor
    do = reading.dissolved_oxygen_mg_l
    if do is not None and do < cfg.do_min:
        risk *= cfg.do_factor
    if reading.temp_c is not None and not cfg.temp.contains(reading.temp_c):
        risk *= cfg.temp_factor
    return risk


def soft_risk(risk: float, spread_days: int) -> float:
    """Spread a period risk factor across ``spread_days`` daily steps."""
    return 1 - (1 - risk) / spread_days


def project_survival(
    base_percent: float,
    risk: float,
    days: int,
    spread_days: int,
) -> list[float]:
    """Daily survival projection, ``days + 1`` points starting at today.

    Each day multiplies the previous value by the softened risk factor, so
    a neutral reading (risk 1.0) yields a flat line.
    """
    daily = soft_risk(risk, spread_days)
    projected = max(0.0, min(100.0, base_percent))
    out = [projected]
    for _ in range(max(0, days)):
        projected *= daily
        out.append(projected)
    return out
