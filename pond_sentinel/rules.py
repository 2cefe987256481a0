"""Rule Evaluators.

Independent detectors, one per signal class. Every evaluator is a pure
function: it takes the current inputs (plus, for water signals, the
previously observed band state) and returns a ``RuleOutcome`` listing the
findings to upsert and the keys to resolve. Persistence and memory of the
last state belong to the insight store; nothing here touches I/O.

Keys (stable identity within a pond):
    {signal}_low / {signal}_high / {signal}_ok    water bands (temp, ph, do, tds)
    mortality_today                               daily mortality spike
    survival_low                                  cumulative survival below target
    growth_delta                                  actual ABW below the model
    abw_logged                                    ephemeral tip after an ABW entry
    abw_due                                       ABW missing or stale
    feeding_under / feeding_over                  ephemeral feeding deviation
    device_offline                                no heartbeat inside the grace window
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo

from .growth import ForecastUnavailable, GrowthModel
from .models import (
    AbwDueEvidence,
    AbwLoggedEvidence,
    Category,
    DeviceEvidence,
    FeedingEvidence,
    Finding,
    GrowthEvidence,
    GrowthMeasurement,
    MortalityEntry,
    MortalityEvidence,
    RecoveryEvidence,
    Severity,
    SignalState,
    SurvivalEvidence,
    SurvivalState,
    WaterEvidence,
)
from .rules_config import (
    Band,
    DeviceConfig,
    FeedingConfig,
    GrowthDeltaConfig,
    MortalityConfig,
)
from .survival import clamp_rate

logger = logging.getLogger("sentinel.rules")

WATER_SIGNALS = ("temp", "ph", "do", "tds")

MORTALITY_KEY = "mortality_today"
SURVIVAL_KEY = "survival_low"
GROWTH_DELTA_KEY = "growth_delta"
ABW_LOGGED_KEY = "abw_logged"
ABW_DUE_KEY = "abw_due"
FEEDING_UNDER_KEY = "feeding_under"
FEEDING_OVER_KEY = "feeding_over"
DEVICE_OFFLINE_KEY = "device_offline"


def water_keys(signal: str) -> tuple[str, str, str]:
    """(low, high, ok) keys for a water signal."""
    return f"{signal}_low", f"{signal}_high", f"{signal}_ok"


def all_water_keys() -> list[str]:
    return [key for signal in WATER_SIGNALS for key in water_keys(signal)]


# ---------------------------------------------------------------------------
# Outcome types
# ---------------------------------------------------------------------------


@dataclass
class FindingDraft:
    """A finding before it is stamped with a pond, status and timestamps."""

    key: str
    title: str
    message: str
    severity: Severity
    category: Category
    evidence: object | None = None
    suggested_action: str | None = None
    ttl_ms: int | None = None  # ephemeral when set

    def to_finding(self, pond_id: str, now_ms: int) -> Finding:
        return Finding(
            pond_id=pond_id,
            key=self.key,
            title=self.title,
            message=self.message,
            severity=self.severity,
            category=self.category,
            evidence=self.evidence,
            suggested_action=self.suggested_action,
            created_at=now_ms,
            auto_resolve_at=now_ms + self.ttl_ms if self.ttl_ms is not None else None,
        )


@dataclass
class RuleOutcome:
    """What one evaluation asks the insight store to do."""

    emit: list[FindingDraft] = field(default_factory=list)
    resolve: list[str] = field(default_factory=list)
    state: SignalState | None = None  # new band state, water signals only

    @property
    def is_empty(self) -> bool:
        return not self.emit and not self.resolve


# ---------------------------------------------------------------------------
# Water bands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _WaterText:
    label: str
    unit: str
    decimals: int
    low_severity: Severity
    high_severity: Severity
    low_effect: str
    high_effect: str
    low_action: str
    high_action: str
    ok_action: str


_WATER_TEXT: dict[str, _WaterText] = {
    "temp": _WaterText(
        label="Temperature",
        unit=" °C",
        decimals=1,
        low_severity=Severity.WARNING,
        high_severity=Severity.WARNING,
        low_effect="Cold water slows metabolism; fish eat less and growth stalls.",
        high_effect="Warm water lowers oxygen and raises stress; appetite drops.",
        low_action="Feed during warmest hours; consider partial water exchange or shading to stabilize.",
        high_action="Shift feed to cooler hours; add shade/aeration; small cool water top-ups if available.",
        ok_action="Keep feeding in cooler windows to maintain stability.",
    ),
    "ph": _WaterText(
        label="pH",
        unit="",
        decimals=2,
        low_severity=Severity.WARNING,
        high_severity=Severity.WARNING,
        low_effect="Low pH irritates gills and reduces feed intake; prolonged exposure weakens immunity.",
        high_effect="High pH increases ammonia toxicity risk; fish become stressed and growth slows.",
        low_action="Small water exchange; avoid harsh chemicals; verify meter calibration.",
        high_action="Partial water exchange; reduce algae drivers; recheck midday.",
        ok_action="Keep monitoring pH around midday when it peaks.",
    ),
    "do": _WaterText(
        label="DO",
        unit=" mg/L",
        decimals=1,
        low_severity=Severity.DANGER,
        high_severity=Severity.INFO,
        low_effect="Low DO causes stress and can lead to mortalities; fish feed poorly and may surface-gasp.",
        high_effect="Very high DO usually indicates heavy aeration or algae peak; watch pH swings and nighttime drops.",
        low_action="Run aeration; avoid heavy feeding; recheck near dawn.",
        high_action="No action needed; monitor for nighttime DO drops.",
        ok_action="Keep aeration schedule; check DO again at dawn.",
    ),
    "tds": _WaterText(
        label="TDS",
        unit=" ppm",
        decimals=0,
        low_severity=Severity.INFO,
        high_severity=Severity.WARNING,
        low_effect="Very low TDS can make water unstable (pH swings); beneficial minerals may be lacking.",
        high_effect="High TDS often tracks waste buildup; can stress fish and depress DO during decomposition.",
        low_action="Check alkalinity/mineral levels; small water exchange if unstable pH observed.",
        high_action="Siphon waste, partial water exchange; avoid overfeeding.",
        ok_action="Keep siphoning waste and avoid overfeeding.",
    ),
}


def classify(value: float, band: Band) -> SignalState:
    if value < band.min:
        return SignalState.LOW
    if value > band.max:
        return SignalState.HIGH
    return SignalState.OK


def _band_label(band: Band, unit: str) -> str:
    return f"{band.min:g}–{band.max:g}{unit}"


def evaluate_water(
    signal: str,
    value: float | None,
    band: Band,
    previous: SignalState | None,
    notice_ttl_ms: int,
) -> RuleOutcome:
    """Band evaluation for one water signal.

    low/high emit the directional finding and clear the opposite one. ok
    clears both, and when the previous observed state was low or high it
    also emits a short-lived recovered notice. A missing value leaves
    everything (including the remembered state) untouched.
    """
    if value is None:
        return RuleOutcome()

    text = _WATER_TEXT[signal]
    low_key, high_key, ok_key = water_keys(signal)
    state = classify(value, band)
    shown = f"{value:.{text.decimals}f}{text.unit}"
    band_label = _band_label(band, text.unit)
    evidence = WaterEvidence(
        metric=signal, value=value, optimal_min=band.min, optimal_max=band.max
    )

    if state is SignalState.LOW:
        return RuleOutcome(
            emit=[
                FindingDraft(
                    key=low_key,
                    title=f"{text.label} below optimal ({band_label})",
                    message=f"{text.label} is {shown}. {text.low_effect}",
                    severity=text.low_severity,
                    category=Category.WATER,
                    evidence=evidence,
                    suggested_action=text.low_action,
                )
            ],
            resolve=[high_key],
            state=state,
        )

    if state is SignalState.HIGH:
        return RuleOutcome(
            emit=[
                FindingDraft(
                    key=high_key,
                    title=f"{text.label} above optimal ({band_label})",
                    message=f"{text.label} is {shown}. {text.high_effect}",
                    severity=text.high_severity,
                    category=Category.WATER,
                    evidence=evidence,
                    suggested_action=text.high_action,
                )
            ],
            resolve=[low_key],
            state=state,
        )

    emit = []
    if previous is not None and previous is not SignalState.OK:
        emit.append(
            FindingDraft(
                key=ok_key,
                title=f"{text.label} back to optimal",
                message=f"{text.label} returned to the {band_label} band.",
                severity=Severity.INFO,
                category=Category.WATER,
                evidence=RecoveryEvidence(
                    metric=signal, previous_state=previous, value=value
                ),
                suggested_action=text.ok_action,
                ttl_ms=notice_ttl_ms,
            )
        )
    return RuleOutcome(emit=emit, resolve=[low_key, high_key], state=state)


# ---------------------------------------------------------------------------
# Mortality and survival
# ---------------------------------------------------------------------------


def evaluate_mortality(
    entries: Sequence[MortalityEntry],
    now: datetime,
    tz: tzinfo,
    cfg: MortalityConfig,
) -> RuleOutcome:
    """Today's mortality rate against the warn/danger thresholds.

    The rolling average over the last ``baseline_days`` is reported as
    context only; it does not change the severity.
    """
    today = now.astimezone(tz).date()
    todays = [e for e in entries if e.period_date.astimezone(tz).date() == today]
    if not todays:
        return RuleOutcome()
    rate = clamp_rate(max(todays, key=lambda e: e.period_date).mortality_rate_percent)

    cutoff = now - timedelta(days=cfg.baseline_days)
    window = [
        clamp_rate(e.mortality_rate_percent)
        for e in entries
        if cutoff <= e.period_date <= now
    ]
    avg = sum(window) / len(window) if window else 0.0

    if rate >= cfg.danger_pct_day:
        severity = Severity.DANGER
        title = "High mortality today"
        action = (
            "Reduce feed by ~10% today. Check DO at dawn, inspect gills/skin, "
            "and do a 10% water exchange. Record findings."
        )
    elif rate >= cfg.warn_pct_day:
        severity = Severity.WARNING
        title = "Elevated mortality today"
        action = (
            "Check dawn DO, observe fish for stress/disease, and note probable "
            "cause in the log. Keep feeding normal but watch leftovers."
        )
    else:
        return RuleOutcome()

    samples = len(window)
    return RuleOutcome(
        emit=[
            FindingDraft(
                key=MORTALITY_KEY,
                title=title,
                message=(
                    f"Today's mortality is {rate:g}% ({cfg.baseline_days}-day avg "
                    f"{avg:.2f}% from {samples} log{'' if samples == 1 else 's'})."
                ),
                severity=severity,
                category=Category.MORTALITY,
                evidence=MortalityEvidence(
                    today_pct=rate,
                    baseline_avg_pct=round(avg, 2),
                    samples=samples,
                    baseline_days=cfg.baseline_days,
                ),
                suggested_action=action,
            )
        ]
    )


def evaluate_survival(state: SurvivalState, cfg: MortalityConfig) -> RuleOutcome:
    if state.survival_percent >= cfg.survival_warn_pct:
        return RuleOutcome(resolve=[SURVIVAL_KEY])
    return RuleOutcome(
        emit=[
            FindingDraft(
                key=SURVIVAL_KEY,
                title=f"Survival below {cfg.survival_warn_pct:g}%",
                message=(
                    f"Estimated fish alive: {state.estimated_alive:,} "
                    f"({state.survival_percent:.1f}% survival)."
                ),
                severity=Severity.WARNING,
                category=Category.MORTALITY,
                evidence=SurvivalEvidence(
                    survival_pct=state.survival_percent,
                    estimated_alive=state.estimated_alive,
                ),
                suggested_action=(
                    "Review recent mortality causes and water logs; adjust the "
                    "feed ration to the estimated head count."
                ),
            )
        ]
    )


# ---------------------------------------------------------------------------
# Growth
# ---------------------------------------------------------------------------


def evaluate_growth_delta(
    measurements: Sequence[GrowthMeasurement],
    model: GrowthModel,
    cfg: GrowthDeltaConfig,
    default_seed: float,
) -> RuleOutcome:
    """Latest actual ABW against the model's prediction at the same period.

    The model is seeded with the first recorded ABW, so a pond is compared
    against its own starting weight. A gap at or below the warning
    threshold resolves an earlier growth finding.
    """
    if not measurements:
        return RuleOutcome()
    chrono = sorted(measurements, key=lambda m: m.recorded_at)
    seed = chrono[0].abw_grams if chrono[0].abw_grams > 0 else default_seed
    latest = model.predicted_at_latest([m.abw_grams for m in chrono], seed)
    if latest is None:
        return RuleOutcome()
    index, predicted = latest
    actual = chrono[index].abw_grams
    gap = predicted - actual

    if gap > cfg.danger_gap_grams:
        severity = Severity.DANGER
        title = "Growth at risk (below model)"
        action = (
            "Hold feed at current level (don't add more). Fix water first "
            "(DO/Temp/pH), check for disease. Recheck ABW in 7–15 days."
        )
    elif gap > cfg.warn_gap_grams:
        severity = Severity.WARNING
        title = "Growth lagging vs model"
        action = (
            "Increase daily feed by 5–10%, move more feed to cooler hours. "
            "Recheck ABW after 15 days."
        )
    else:
        return RuleOutcome(resolve=[GROWTH_DELTA_KEY])

    return RuleOutcome(
        emit=[
            FindingDraft(
                key=GROWTH_DELTA_KEY,
                title=title,
                message=(
                    f"Actual ABW {actual:.2f} g vs predicted {predicted:.2f} g "
                    f"({gap:.2f} g below)."
                ),
                severity=severity,
                category=Category.GROWTH,
                evidence=GrowthEvidence(
                    latest_g=round(actual, 2),
                    predicted_g=round(predicted, 2),
                    gap_g=gap,
                    period_index=index,
                    seed_g=seed,
                ),
                suggested_action=action,
            )
        ]
    )


def evaluate_abw_logged(
    current_abw: float,
    target: float | None,
    days_left: int | ForecastUnavailable,
    notice_ttl_ms: int,
) -> RuleOutcome:
    """Ephemeral tip after an ABW entry with the days remaining to target."""
    if isinstance(days_left, ForecastUnavailable):
        message = f"Current ABW set to {current_abw:g} g. Set a target to see days remaining."
        if days_left is ForecastUnavailable.UNREACHABLE:
            message = (
                f"Current ABW {current_abw:g} g. Target {target:g} g is out of "
                "reach of the growth model."
            )
        days = None
    else:
        days = days_left
        message = (
            f"Current ABW {current_abw:g} g. About {days} day"
            f"{'' if days == 1 else 's'} to reach target."
        )
    return RuleOutcome(
        emit=[
            FindingDraft(
                key=ABW_LOGGED_KEY,
                title="ABW recorded",
                message=message,
                severity=Severity.INFO,
                category=Category.GROWTH,
                evidence=AbwLoggedEvidence(
                    current_abw_g=current_abw, target_weight_g=target, days_left=days
                ),
                suggested_action=(
                    "Keep consistent feeding and monitor morning DO to maintain growth."
                ),
                ttl_ms=notice_ttl_ms,
            )
        ]
    )


def evaluate_abw_due(
    last_measurement_at: datetime | None,
    now: datetime,
    cfg: GrowthDeltaConfig,
) -> RuleOutcome:
    if last_measurement_at is None:
        return RuleOutcome(
            emit=[
                FindingDraft(
                    key=ABW_DUE_KEY,
                    title="ABW not set",
                    message="No ABW measurement has been recorded yet.",
                    severity=Severity.INFO,
                    category=Category.GROWTH,
                    evidence=AbwDueEvidence(days_since=None),
                    suggested_action="Sample 20-30 fish and record the average body weight.",
                )
            ]
        )
    days = (now - last_measurement_at).days
    if days < cfg.abw_due_days:
        return RuleOutcome(resolve=[ABW_DUE_KEY])
    return RuleOutcome(
        emit=[
            FindingDraft(
                key=ABW_DUE_KEY,
                title="ABW measurement due",
                message=f"It's been {days} days since the last ABW update.",
                severity=Severity.INFO,
                category=Category.GROWTH,
                evidence=AbwDueEvidence(days_since=days),
                suggested_action="Sample 20-30 fish and record the average body weight.",
            )
        ]
    )


# ---------------------------------------------------------------------------
# Feeding
# ---------------------------------------------------------------------------


def evaluate_feeding(
    given_g: float,
    suggested_g: float | None,
    cfg: FeedingConfig,
    notice_ttl_ms: int,
) -> RuleOutcome:
    """Ratio of given to suggested feed. Always ephemeral."""
    if suggested_g is None or suggested_g <= 0:
        return RuleOutcome()
    ratio = given_g / suggested_g
    if ratio < cfg.under_ratio:
        key = FEEDING_UNDER_KEY
        title = "Feeding below suggestion"
        message = (
            f"You logged {given_g:g} g vs suggested {suggested_g:g} g. Persistent "
            "underfeeding may slow growth and increase aggression."
        )
        action = "Consider increasing ration toward suggestion if water quality is stable."
    elif ratio > cfg.over_ratio:
        key = FEEDING_OVER_KEY
        title = "Feeding above suggestion"
        message = (
            f"You logged {given_g:g} g vs suggested {suggested_g:g} g. Overfeeding "
            "can degrade water quality and worsen FCR."
        )
        action = "Reduce uneaten feed; monitor ammonia/DO and adjust ration."
    else:
        return RuleOutcome()

    return RuleOutcome(
        emit=[
            FindingDraft(
                key=key,
                title=title,
                message=message,
                severity=Severity.WARNING,
                category=Category.FEEDING,
                evidence=FeedingEvidence(
                    given_g=given_g, suggested_g=suggested_g, ratio=ratio
                ),
                suggested_action=action,
                ttl_ms=notice_ttl_ms,
            )
        ]
    )


# ---------------------------------------------------------------------------
# Device heartbeat
# ---------------------------------------------------------------------------


def evaluate_device(
    last_seen_ms: int | None,
    now_ms: int,
    cfg: DeviceConfig,
) -> RuleOutcome:
    """Offline when the last heartbeat is older than the grace window.

    A pond that never reported has no baseline; the caller seeds a
    heartbeat instead of raising an alarm.
    """
    if last_seen_ms is None:
        return RuleOutcome()
    minutes = (now_ms - last_seen_ms) / 60_000
    if minutes <= cfg.offline_minutes:
        return RuleOutcome(resolve=[DEVICE_OFFLINE_KEY])
    return RuleOutcome(
        emit=[
            FindingDraft(
                key=DEVICE_OFFLINE_KEY,
                title="Sensor offline",
                message=f"No data for {minutes:.0f} min.",
                severity=Severity.ERROR,
                category=Category.DEVICE,
                evidence=DeviceEvidence(last_seen_minutes=round(minutes)),
                suggested_action=(
                    "Check power (battery/adapter), antenna & network, and cables. "
                    "Move device closer to router. Clears when data resumes."
                ),
            )
        ]
    )
