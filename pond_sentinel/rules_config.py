"""Rule configuration loaded from YAML.

Holds the canonical growth-stage table and every numeric band and threshold
the evaluators and forecast use. The file is validated with pydantic at load
time so a malformed table (gaps, overlaps, a bounded last stage) fails at
startup instead of producing a silently wrong forecast.

Usage:
    from pond_sentinel.rules_config import load_rules
    rules = load_rules()                     # packaged tilapia.yaml
    rules = load_rules("/etc/pond/rules.yaml")
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("sentinel.rules_config")

DEFAULT_RULES_PATH = Path(__file__).parent / "config" / "tilapia.yaml"


class Band(BaseModel):
    """Closed optimal interval ``[min, max]``."""

    min: float
    max: float

    @model_validator(mode="after")
    def check_order(self) -> Band:
        if self.min > self.max:
            raise ValueError(f"band min {self.min} is above max {self.max}")
        return self

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


class StageConfig(BaseModel):
    """One growth stage. ``to_grams`` is exclusive; None means unbounded."""

    from_grams: float = Field(gt=0)
    to_grams: float | None = None
    weekly_rate_grams: float


class GrowthConfig(BaseModel):
    safety_cap: int = Field(default=200, gt=0)
    default_seed_grams: float = Field(default=5.0, gt=0)
    extra_periods: int = Field(default=8, ge=0)
    stages: list[StageConfig]

    @field_validator("stages")
    @classmethod
    def check_contiguous(cls, stages: list[StageConfig]) -> list[StageConfig]:
        if not stages:
            raise ValueError("growth stage table is empty")
        for prev, cur in zip(stages, stages[1:]):
            if prev.to_grams is None:
                raise ValueError("only the last growth stage may be unbounded")
            if prev.to_grams <= prev.from_grams:
                raise ValueError(
                    f"stage starting at {prev.from_grams} g ends at {prev.to_grams} g"
                )
            if cur.from_grams != prev.to_grams:
                raise ValueError(
                    f"stage table gap/overlap between {prev.to_grams} g "
                    f"and {cur.from_grams} g"
                )
        if stages[-1].to_grams is not None:
            raise ValueError("the last growth stage must be unbounded (to_grams: null)")
        return stages


class WaterConfig(BaseModel):
    temp: Band = Band(min=29.0, max=31.0)
    ph: Band = Band(min=6.5, max=9.5)
    do: Band = Band(min=3.0, max=5.0)
    tds: Band = Band(min=100.0, max=400.0)

    def band_for(self, signal: str) -> Band:
        return getattr(self, signal)


class ChangeGateConfig(BaseModel):
    """Minimum movement before a live reading is re-evaluated."""

    temp: float = 0.5
    ph: float = 0.2
    do: float = 0.2
    max_quiet_ms: int = 3000


class MortalityConfig(BaseModel):
    warn_pct_day: float = 2.0
    danger_pct_day: float = 5.0
    baseline_days: int = Field(default=15, gt=0)
    survival_warn_pct: float = 80.0

    @model_validator(mode="after")
    def check_thresholds(self) -> MortalityConfig:
        if self.warn_pct_day > self.danger_pct_day:
            raise ValueError("mortality warn threshold is above the danger threshold")
        return self


class GrowthDeltaConfig(BaseModel):
    warn_gap_grams: float = 3.0
    danger_gap_grams: float = 5.0
    abw_due_days: int = 7


class FeedingConfig(BaseModel):
    under_ratio: float = 0.9
    over_ratio: float = 1.1


class DeviceConfig(BaseModel):
    offline_minutes: float = 20.0


class GrowthFactorConfig(BaseModel):
    """Live growth multiplier bands. A value outside ``band`` gets ``factor``."""

    ph_severe: Band = Band(min=6.5, max=9.0)
    ph_severe_factor: float = 0.7
    ph_mild: Band = Band(min=7.0, max=8.5)
    ph_mild_factor: float = 0.9
    do: Band = Band(min=3.0, max=5.0)
    do_factor: float = 0.7
    temp: Band = Band(min=28.0, max=31.0)
    temp_factor: float = 0.8


class SurvivalRiskConfig(BaseModel):
    ph: Band = Band(min=6.5, max=9.0)
    ph_factor: float = 0.9
    do_min: float = 3.0
    do_factor: float = 0.8
    temp: Band = Band(min=28.0, max=31.0)
    temp_factor: float = 0.9
    spread_days: int = Field(default=7, gt=0)
    horizon_days: int = Field(default=15, gt=0)


class RuleSet(BaseModel):
    """Top-level rule file."""

    species: str = "tilapia"
    cadence_days: int = Field(default=15, gt=0)
    growth: GrowthConfig
    water: WaterConfig = WaterConfig()
    change_gate: ChangeGateConfig = ChangeGateConfig()
    mortality: MortalityConfig = MortalityConfig()
    growth_delta: GrowthDeltaConfig = GrowthDeltaConfig()
    feeding: FeedingConfig = FeedingConfig()
    device: DeviceConfig = DeviceConfig()
    growth_factors: GrowthFactorConfig = GrowthFactorConfig()
    survival_risk: SurvivalRiskConfig = SurvivalRiskConfig()


def _load_yaml(path: Path) -> dict[str, Any]:
    with open(path) as f:
        return yaml.safe_load(f) or {}


def load_rules(path: str | Path | None = None) -> RuleSet:
    """Load and validate a rule file.

    Raises:
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If the file is structurally invalid.
    """
    path = Path(path) if path else DEFAULT_RULES_PATH
    rules = RuleSet(**_load_yaml(path))
    logger.info(
        "Rules loaded from %s: species=%s cadence=%dd stages=%d",
        path,
        rules.species,
        rules.cadence_days,
        len(rules.growth.stages),
    )
    return rules


@lru_cache
def default_rules() -> RuleSet:
    """Cached packaged rule set."""
    return load_rules(DEFAULT_RULES_PATH)
