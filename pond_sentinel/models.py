"""Pydantic models for pond logs, findings and derived state.

Every stored entity is keyed by the pond's canonical shared id. Documents
are written with ``model_dump(mode="json")`` and read back with
``model_validate`` so the same models serve the in-memory and the
PostgREST-backed document stores.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import AfterValidator, BaseModel, Field


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive timestamp; aware values pass through."""
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=UTC)
    return value


# Naive ISO input is read as UTC so every stored instant compares with the clock.
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class Severity(str, Enum):
    """Finding severity. DANGER is pond risk, ERROR is a system issue."""

    INFO = "info"
    WARNING = "warning"
    DANGER = "danger"
    ERROR = "error"

    @property
    def rank(self) -> int:
        """Display rank, higher first."""
        return {
            Severity.INFO: 0,
            Severity.WARNING: 1,
            Severity.DANGER: 2,
            Severity.ERROR: 3,
        }[self]


class FindingStatus(str, Enum):
    ACTIVE = "active"
    SNOOZED = "snoozed"
    RESOLVED = "resolved"


class Category(str, Enum):
    WATER = "water"
    MORTALITY = "mortality"
    GROWTH = "growth"
    FEEDING = "feeding"
    DEVICE = "device"


class SignalState(str, Enum):
    """Position of a live value relative to its optimal band."""

    LOW = "low"
    OK = "ok"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Ponds and logs
# ---------------------------------------------------------------------------


class Pond(BaseModel):
    """Shared aggregate root. ``aliases`` are per-viewer ids for the same pond."""

    id: str
    name: str = ""
    initial_stocked: int = Field(default=0, ge=0)
    species: str = "tilapia"
    aliases: list[str] = Field(default_factory=list)


class MortalityEntry(BaseModel):
    """One periodic mortality log. The rate is a percent of initial stock."""

    id: str | None = None
    pond_id: str
    period_date: UtcDatetime
    mortality_rate_percent: float
    notes: str | None = None
    created_at: UtcDatetime | None = None


class SurvivalState(BaseModel):
    survival_percent: float
    estimated_alive: int


class SurvivalPoint(BaseModel):
    period_date: UtcDatetime
    survival_percent: float


class GrowthMeasurement(BaseModel):
    id: str | None = None
    pond_id: str
    recorded_at: UtcDatetime
    abw_grams: float
    note: str | None = None


class GrowthSetup(BaseModel):
    """Per-pond growth state, refreshed by every new measurement."""

    pond_id: str
    current_abw: float
    target_weight_grams: float | None = None
    last_measurement_at: UtcDatetime | None = None
    cadence_days: int = 15


class FeedingEvent(BaseModel):
    id: str | None = None
    pond_id: str
    fed_at: UtcDatetime
    feed_given_g: float
    suggested_g: float | None = None
    auto_logged: bool = False
    created_at: UtcDatetime | None = None


class LiveReading(BaseModel):
    """One sample from the pond's sensor feed. Missing probes are None."""

    ts: int
    temp_c: float | None = None
    ph: float | None = None
    dissolved_oxygen_mg_l: float | None = None
    tds_ppm: float | None = None
    online: bool = True

    def value_for(self, signal: str) -> float | None:
        return {
            "temp": self.temp_c,
            "ph": self.ph,
            "do": self.dissolved_oxygen_mg_l,
            "tds": self.tds_ppm,
        }.get(signal)


# ---------------------------------------------------------------------------
# Evidence (tagged union)
# ---------------------------------------------------------------------------


class WaterEvidence(BaseModel):
    kind: Literal["water"] = "water"
    metric: str
    value: float
    optimal_min: float
    optimal_max: float


class RecoveryEvidence(BaseModel):
    kind: Literal["recovery"] = "recovery"
    metric: str
    previous_state: SignalState
    value: float


class MortalityEvidence(BaseModel):
    kind: Literal["mortality"] = "mortality"
    today_pct: float
    baseline_avg_pct: float
    samples: int
    baseline_days: int


class SurvivalEvidence(BaseModel):
    kind: Literal["survival"] = "survival"
    survival_pct: float
    estimated_alive: int


class GrowthEvidence(BaseModel):
    kind: Literal["growth"] = "growth"
    latest_g: float
    predicted_g: float
    gap_g: float
    period_index: int
    seed_g: float
    model: str = "stage-step"


class AbwLoggedEvidence(BaseModel):
    kind: Literal["abw_logged"] = "abw_logged"
    current_abw_g: float
    target_weight_g: float | None = None
    days_left: int | None = None


class AbwDueEvidence(BaseModel):
    kind: Literal["abw_due"] = "abw_due"
    days_since: int | None = None


class FeedingEvidence(BaseModel):
    kind: Literal["feeding"] = "feeding"
    given_g: float
    suggested_g: float
    ratio: float


class DeviceEvidence(BaseModel):
    kind: Literal["device"] = "device"
    last_seen_minutes: int


Evidence = Annotated[
    Union[
        WaterEvidence,
        RecoveryEvidence,
        MortalityEvidence,
        SurvivalEvidence,
        GrowthEvidence,
        AbwLoggedEvidence,
        AbwDueEvidence,
        FeedingEvidence,
        DeviceEvidence,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Findings and overlays
# ---------------------------------------------------------------------------


class Finding(BaseModel):
    """A detected condition. ``key`` is its identity within a pond."""

    pond_id: str
    key: str
    title: str
    message: str
    severity: Severity
    category: Category
    status: FindingStatus = FindingStatus.ACTIVE
    evidence: Evidence | None = None
    suggested_action: str | None = None
    created_at: int  # epoch ms
    auto_resolve_at: int | None = None  # epoch ms

    def is_expired(self, now_ms: int) -> bool:
        return self.auto_resolve_at is not None and self.auto_resolve_at <= now_ms


class SnoozeEntry(BaseModel):
    user_id: str
    finding_key: str
    until: int  # epoch ms


class SignalMemory(BaseModel):
    """Last observed band state for one signal of one pond."""

    pond_id: str
    signal: str
    state: SignalState
    updated_at: int


class MetricBucket(BaseModel):
    count: int = 0
    samples: dict[str, int] = Field(default_factory=dict)
    sum: dict[str, float] = Field(default_factory=dict)
    avg: dict[str, float] = Field(default_factory=dict)


class DailyMetrics(BaseModel):
    """Running aggregate of all readings for one local calendar day."""

    date: str
    tz: str
    count: int = 0
    samples: dict[str, int] = Field(default_factory=dict)  # per-signal counts
    sum: dict[str, float] = Field(default_factory=dict)
    avg: dict[str, float] = Field(default_factory=dict)
    buckets_4h: dict[str, MetricBucket] = Field(default_factory=dict)
    last_sample_at: int | None = None


class ForecastResult(BaseModel):
    baseline: list[float]
    live_forecast: list[float]
    multiplier: float = 1.0
    latest_actual_index: int | None = None
