"""PondMonitor: the operations the core exposes to its collaborators.

Reads:
    get_survival, get_survival_curve, get_forecast, days_to_target,
    get_survival_forecast, visible_findings, subscribe_visible_findings

Mutators (raise ValidationError / NotFoundError to the caller):
    record_mortality, correct_mortality, record_growth_measurement,
    set_target_weight, record_feeding, snooze_finding, resolve_finding,
    start_new_cycle

Evaluation drivers (never raise; failures are logged and the next tick
retries):
    on_reading, on_connectivity, run_periodic, sweep_expired, plus the
    interval tasks started by start_monitoring

Every public method accepts a pond id or a viewer alias and resolves it to
the canonical id first.
"""

from __future__ import annotations

import inspect
import logging
import math
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from .daily_metrics import DailyMetricsAggregator
from .document_store import DocumentStore, Unsubscribe, create_store
from .errors import NotFoundError, ValidationError
from .growth import ForecastUnavailable, GrowthModel
from .insight_store import InsightStore, OfflineClearer
from .live_forecast import (
    apply_multiplier,
    growth_multiplier,
    project_survival,
    survival_risk_multiplier,
)
from .logs import (
    FeedingLog,
    GrowthLog,
    GrowthSetupStore,
    HeartbeatStore,
    MortalityLog,
    PondDirectory,
)
from .models import (
    FeedingEvent,
    Finding,
    ForecastResult,
    GrowthMeasurement,
    GrowthSetup,
    LiveReading,
    MortalityEntry,
    SnoozeEntry,
    SurvivalPoint,
    SurvivalState,
    as_utc,
)
from .rules import (
    ABW_DUE_KEY,
    DEVICE_OFFLINE_KEY,
    GROWTH_DELTA_KEY,
    MORTALITY_KEY,
    SURVIVAL_KEY,
    WATER_SIGNALS,
    evaluate_abw_due,
    evaluate_abw_logged,
    evaluate_device,
    evaluate_feeding,
    evaluate_growth_delta,
    evaluate_mortality,
    evaluate_survival,
    evaluate_water,
)
from .rules_config import RuleSet, load_rules
from .scheduler import Clock, IntervalTask, SystemClock
from .settings import PondSettings, get_settings
from .snooze import SnoozeOverlay, visible
from .survival import (
    compute_survival,
    days_until_next_entry,
    survival_curve,
    validate_correction,
    validate_new_entry,
    validate_rate,
)

logger = logging.getLogger("sentinel.monitor")

VisibleCallback = Callable[[list[Finding]], Awaitable[None] | None]


@dataclass
class _VisibleSubscription:
    pond_id: str
    user_id: str | None
    callback: VisibleCallback
    limit: int | None = None
    findings: list[Finding] = field(default_factory=list)
    snoozes: dict[str, int] = field(default_factory=dict)
    ready: bool = False
    unsubscribers: list[Unsubscribe] = field(default_factory=list)


class PondMonitor:
    """Facade over the logs, the evaluators and the insight lifecycle.

    Usage:
        monitor = PondMonitor.from_settings(get_settings())
        await monitor.ponds.register(Pond(id="p1", initial_stocked=1000))
        await monitor.record_mortality("p1", 5.0)
        state = await monitor.get_survival("p1")
    """

    def __init__(
        self,
        store: DocumentStore,
        rules: RuleSet,
        settings: PondSettings | None = None,
        clock: Clock | None = None,
    ):
        self.store = store
        self.rules = rules
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.tz = ZoneInfo(self.settings.timezone)
        self.model = GrowthModel.from_rules(rules)

        self.ponds = PondDirectory(store)
        self.mortality = MortalityLog(store)
        self.growth_log = GrowthLog(store)
        self.growth_setup = GrowthSetupStore(store)
        self.feeding = FeedingLog(store)
        self.heartbeats = HeartbeatStore(store)
        self.daily = DailyMetricsAggregator(store, self.settings.timezone)
        self.insights = InsightStore(store, self.clock)
        self.snoozes = SnoozeOverlay(store, self.clock)
        self.offline = OfflineClearer(
            self.insights, self.settings.offline_clear_delay_seconds, self.clock
        )

        self._last_evaluated: dict[str, LiveReading] = {}
        self._latest_reading: dict[str, LiveReading] = {}
        self._visible_subs: list[_VisibleSubscription] = []
        self._monitored: set[str] = set()
        self._tasks: list[IntervalTask] = []

    @classmethod
    def from_settings(
        cls, settings: PondSettings, clock: Clock | None = None
    ) -> PondMonitor:
        store = create_store(settings.supabase_url, settings.supabase_service_key)
        return cls(store, load_rules(settings.rules_path), settings, clock)

    @property
    def notice_ttl_ms(self) -> int:
        return int(self.settings.notice_ttl_minutes * 60_000)

    async def _resolve(self, pond: str) -> str:
        return await self.ponds.resolve(pond)

    async def _guard(self, label: str, pond_id: str, coro: Awaitable[Any]) -> bool:
        """Await an evaluation step; log and swallow its failure."""
        try:
            await coro
            return True
        except Exception:
            logger.exception("%s failed for pond %s", label, pond_id)
            return False

    # =================================================================
    # Reads
    # =================================================================

    async def get_survival(self, pond: str) -> SurvivalState:
        pond_id = await self._resolve(pond)
        info = await self.ponds.get(pond_id)
        return compute_survival(await self.mortality.list(pond_id), info.initial_stocked)

    async def get_survival_curve(self, pond: str) -> list[SurvivalPoint]:
        pond_id = await self._resolve(pond)
        return survival_curve(await self.mortality.list(pond_id))

    async def get_forecast(
        self,
        pond: str,
        horizon_periods: int | None = None,
        reading: LiveReading | None = None,
    ) -> ForecastResult:
        """Baseline ABW forecast and its environment-modulated twin.

        ``horizon_periods`` is how many periods past the observed span to
        project when no target is set. Without an explicit reading the last
        reading seen by ``on_reading`` drives the multiplier.
        """
        pond_id = await self._resolve(pond)
        measurements = await self.growth_log.list(pond_id)
        setup = await self.growth_setup.get(pond_id)
        actual = [m.abw_grams for m in measurements]
        seed = self._seed(measurements, setup)
        target = setup.target_weight_grams if setup else None
        extra = horizon_periods if horizon_periods is not None else self.rules.growth.extra_periods

        baseline = self.model.forward_forecast(actual, seed, target, extra)
        reading = reading or self._latest_reading.get(pond_id)
        multiplier = growth_multiplier(reading, self.rules.growth_factors)
        return ForecastResult(
            baseline=baseline,
            live_forecast=apply_multiplier(baseline, multiplier),
            multiplier=multiplier,
            latest_actual_index=self.model.latest_actual_index(actual),
        )

    def _seed(
        self, measurements: list[GrowthMeasurement], setup: GrowthSetup | None
    ) -> float:
        if measurements and measurements[0].abw_grams > 0:
            return measurements[0].abw_grams
        if setup and setup.current_abw > 0:
            return setup.current_abw
        return self.rules.growth.default_seed_grams

    async def days_to_target(self, pond: str) -> int | ForecastUnavailable:
        pond_id = await self._resolve(pond)
        setup = await self.growth_setup.get(pond_id)
        if setup is None:
            return ForecastUnavailable.NO_CURRENT_WEIGHT
        return self.model.days_to_target(setup.current_abw, setup.target_weight_grams)

    async def get_survival_forecast(
        self,
        pond: str,
        reading: LiveReading | None = None,
        days: int | None = None,
    ) -> list[float]:
        """Daily survival projection under the current water conditions."""
        state = await self.get_survival(pond)
        pond_id = await self._resolve(pond)
        cfg = self.rules.survival_risk
        risk = survival_risk_multiplier(reading or self._latest_reading.get(pond_id), cfg)
        return project_survival(
            state.survival_percent,
            risk,
            days if days is not None else cfg.horizon_days,
            cfg.spread_days,
        )

    async def visible_findings(
        self,
        pond: str,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[Finding]:
        pond_id = await self._resolve(pond)
        findings = await self.insights.list(pond_id)
        snoozes = await self.snoozes.load(user_id) if user_id else {}
        now_ms = self.clock.now_ms()
        if any(until < now_ms for until in snoozes.values()):
            await self._guard("Snooze pruning", pond_id, self.snoozes.prune_expired(user_id))
        return visible(findings, snoozes, now_ms, limit)

    async def subscribe_visible_findings(
        self,
        pond: str,
        user_id: str | None,
        callback: VisibleCallback,
        limit: int | None = None,
    ) -> Unsubscribe:
        """Stream of visible findings: on subscribe, on every finding or
        snooze write, and on every expiry sweep."""
        pond_id = await self._resolve(pond)
        sub = _VisibleSubscription(pond_id, user_id, callback, limit)

        async def on_findings(findings: list[Finding]) -> None:
            sub.findings = findings
            await self._emit_visible(sub)

        async def on_snoozes(snoozes: dict[str, int]) -> None:
            sub.snoozes = snoozes
            await self._emit_visible(sub)

        sub.unsubscribers.append(await self.insights.subscribe(pond_id, on_findings))
        if user_id:
            sub.unsubscribers.append(await self.snoozes.subscribe(user_id, on_snoozes))
        sub.ready = True
        self._visible_subs.append(sub)
        await self._emit_visible(sub)

        def unsubscribe() -> None:
            for unsub in sub.unsubscribers:
                unsub()
            if sub in self._visible_subs:
                self._visible_subs.remove(sub)

        return unsubscribe

    async def _emit_visible(self, sub: _VisibleSubscription) -> None:
        if not sub.ready:
            return
        result = sub.callback(
            visible(sub.findings, sub.snoozes, self.clock.now_ms(), sub.limit)
        )
        if inspect.isawaitable(result):
            await result

    # =================================================================
    # Mutators
    # =================================================================

    async def record_mortality(
        self,
        pond: str,
        mortality_rate_percent: float,
        period_date: datetime | None = None,
        notes: str | None = None,
    ) -> MortalityEntry:
        """Append a periodic mortality entry.

        Raises:
            ValidationError: Rate outside [0, 100], cadence not yet elapsed,
                or cumulative mortality would exceed 100.
            NotFoundError: Unknown pond.
        """
        pond_id = await self._resolve(pond)
        now = self.clock.now()
        period_date = as_utc(period_date) if period_date is not None else now
        rate = validate_rate(mortality_rate_percent)
        cadence = self.rules.cadence_days
        entry = await self.mortality.append(
            MortalityEntry(
                pond_id=pond_id,
                period_date=period_date,
                mortality_rate_percent=rate,
                notes=notes,
                created_at=now,
            ),
            admit=lambda entries: validate_new_entry(entries, rate, period_date, cadence),
        )
        logger.info("Mortality recorded for %s: %.2f%%", pond_id, entry.mortality_rate_percent)
        await self._guard("Mortality evaluation", pond_id, self._evaluate_mortality(pond_id))
        return entry

    async def correct_mortality(
        self, pond: str, entry_id: str, mortality_rate_percent: float
    ) -> MortalityEntry:
        """Replace the rate of an existing entry of this pond.

        Raises:
            ValidationError: Rate outside [0, 100] or cumulative overflow.
            NotFoundError: Unknown pond or entry not in this pond.
        """
        pond_id = await self._resolve(pond)
        entry = await self.mortality.update_rate(
            pond_id,
            entry_id,
            mortality_rate_percent,
            admit=lambda entries: validate_correction(entries, entry_id, mortality_rate_percent),
        )
        logger.info(
            "Mortality entry %s corrected for %s: %.2f%%",
            entry_id,
            pond_id,
            entry.mortality_rate_percent,
        )
        await self._guard("Mortality evaluation", pond_id, self._evaluate_mortality(pond_id))
        return entry

    async def record_growth_measurement(
        self,
        pond: str,
        abw_grams: float,
        recorded_at: datetime | None = None,
        note: str | None = None,
    ) -> GrowthMeasurement:
        """Append an ABW sample and refresh the pond's growth setup.

        Raises:
            ValidationError: Non-positive ABW or the cadence has not elapsed
                since the previous measurement.
            NotFoundError: Unknown pond.
        """
        if abw_grams is None or not math.isfinite(abw_grams) or abw_grams <= 0:
            raise ValidationError("ABW must be a positive number of grams", field="abw_grams")
        pond_id = await self._resolve(pond)
        recorded_at = as_utc(recorded_at) if recorded_at is not None else self.clock.now()
        setup = await self.growth_setup.get(pond_id)
        cadence = self.rules.cadence_days

        if setup is not None and setup.last_measurement_at is not None:
            wait = days_until_next_entry(setup.last_measurement_at, recorded_at, cadence)
            if wait > 0:
                raise ValidationError(
                    f"ABW can be updated once every {cadence} days; "
                    f"next update allowed in {wait} day{'s' if wait != 1 else ''}",
                    field="recorded_at",
                )

        measurement = await self.growth_log.append(
            GrowthMeasurement(
                pond_id=pond_id, recorded_at=recorded_at, abw_grams=abw_grams, note=note
            )
        )
        setup = await self.growth_setup.save(
            GrowthSetup(
                pond_id=pond_id,
                current_abw=abw_grams,
                target_weight_grams=setup.target_weight_grams if setup else None,
                last_measurement_at=recorded_at,
                cadence_days=cadence,
            )
        )
        logger.info("ABW recorded for %s: %.2f g", pond_id, abw_grams)

        days_left = self.model.days_to_target(setup.current_abw, setup.target_weight_grams)
        await self._guard(
            "ABW notice",
            pond_id,
            self.insights.apply(
                pond_id,
                evaluate_abw_logged(
                    abw_grams, setup.target_weight_grams, days_left, self.notice_ttl_ms
                ),
            ),
        )
        await self._guard("Growth evaluation", pond_id, self._evaluate_growth(pond_id))
        return measurement

    async def set_target_weight(
        self, pond: str, target_weight_grams: float | None
    ) -> GrowthSetup:
        if target_weight_grams is not None and (
            not math.isfinite(target_weight_grams) or target_weight_grams <= 0
        ):
            raise ValidationError(
                "target weight must be a positive number of grams",
                field="target_weight_grams",
            )
        pond_id = await self._resolve(pond)
        setup = await self.growth_setup.set_target(pond_id, target_weight_grams)
        logger.info("Target weight for %s set to %s", pond_id, target_weight_grams)
        return setup

    async def record_feeding(
        self,
        pond: str,
        feed_given_g: float,
        suggested_g: float | None = None,
        fed_at: datetime | None = None,
        auto_logged: bool = False,
    ) -> FeedingEvent:
        if feed_given_g is None or not math.isfinite(feed_given_g) or feed_given_g < 0:
            raise ValidationError("feed given must be zero or more grams", field="feed_given_g")
        pond_id = await self._resolve(pond)
        now = self.clock.now()
        event = await self.feeding.append(
            FeedingEvent(
                pond_id=pond_id,
                fed_at=as_utc(fed_at) if fed_at is not None else now,
                feed_given_g=feed_given_g,
                suggested_g=suggested_g,
                auto_logged=auto_logged,
                created_at=now,
            )
        )
        outcome = evaluate_feeding(
            feed_given_g, suggested_g, self.rules.feeding, self.notice_ttl_ms
        )
        await self._guard("Feeding evaluation", pond_id, self.insights.apply(pond_id, outcome))
        return event

    async def snooze_finding(
        self,
        user_id: str,
        finding_key: str,
        hours: float | None = None,
        pond: str | None = None,
    ) -> SnoozeEntry:
        """Hide a finding from ``user_id`` for ``hours`` (default from settings).

        With ``pond`` the snooze applies to that pond only.
        """
        pond_id = await self._resolve(pond) if pond else None
        return await self.snoozes.snooze_for(
            user_id,
            finding_key,
            hours if hours is not None else self.settings.default_snooze_hours,
            pond_id,
        )

    async def resolve_finding(self, pond: str, key: str) -> bool:
        """Resolve a finding. A key that never existed is a no-op (False)."""
        pond_id = await self._resolve(pond)
        return await self.insights.resolve(pond_id, key)

    async def start_new_cycle(
        self, pond: str, initial_stocked: int | None = None
    ) -> None:
        """Reset the pond for a new stocking: logs, growth setup and the
        findings derived from them."""
        pond_id = await self._resolve(pond)
        if initial_stocked is not None:
            await self.ponds.set_initial_stocked(pond_id, initial_stocked)
        await self.mortality.clear(pond_id)
        await self.growth_log.clear(pond_id)
        await self.growth_setup.clear(pond_id)
        await self.insights.resolve_many(
            pond_id, [MORTALITY_KEY, SURVIVAL_KEY, GROWTH_DELTA_KEY, ABW_DUE_KEY]
        )
        logger.info("New stocking cycle started for %s", pond_id)

    # =================================================================
    # Evaluation drivers
    # =================================================================

    async def _evaluate_mortality(self, pond_id: str) -> None:
        entries = await self.mortality.list(pond_id)
        await self.insights.apply(
            pond_id,
            evaluate_mortality(entries, self.clock.now(), self.tz, self.rules.mortality),
        )
        info = await self.ponds.get(pond_id)
        state = compute_survival(entries, info.initial_stocked)
        await self.insights.apply(pond_id, evaluate_survival(state, self.rules.mortality))

    async def _evaluate_growth(self, pond_id: str) -> None:
        measurements = await self.growth_log.list(pond_id)
        await self.insights.apply(
            pond_id,
            evaluate_growth_delta(
                measurements,
                self.model,
                self.rules.growth_delta,
                self.rules.growth.default_seed_grams,
            ),
        )
        setup = await self.growth_setup.get(pond_id)
        last = setup.last_measurement_at if setup else None
        await self.insights.apply(
            pond_id, evaluate_abw_due(last, self.clock.now(), self.rules.growth_delta)
        )

    async def _evaluate_device(self, pond_id: str) -> None:
        now_ms = self.clock.now_ms()
        last_seen = await self.heartbeats.last_seen(pond_id)
        if last_seen is None:
            # First check for this pond starts the heartbeat clock
            await self.heartbeats.record(pond_id, now_ms)
            return
        await self.insights.apply(
            pond_id, evaluate_device(last_seen, now_ms, self.rules.device)
        )

    def _changed(self, pond_id: str, reading: LiveReading) -> bool:
        last = self._last_evaluated.get(pond_id)
        if last is None:
            return True
        gate = self.rules.change_gate
        if reading.ts - last.ts >= gate.max_quiet_ms:
            return True
        for signal in WATER_SIGNALS:
            before, now = last.value_for(signal), reading.value_for(signal)
            if (before is None) != (now is None):
                return True
            delta = getattr(gate, signal, None)
            if before is not None and delta is not None and abs(now - before) >= delta:
                return True
        return False

    async def on_reading(self, pond: str, reading: LiveReading) -> bool:
        """Feed one live sample. Returns True when water rules were evaluated."""
        try:
            pond_id = await self._resolve(pond)
            self.offline.on_connectivity(pond_id, reading.online)
            if not reading.online:
                await self.heartbeats.record(pond_id, reading.ts, online=False)
                return False

            self._latest_reading[pond_id] = reading
            await self.heartbeats.record(pond_id, reading.ts)
            await self.insights.resolve(pond_id, DEVICE_OFFLINE_KEY)
            await self.daily.record(pond_id, reading)

            if not self._changed(pond_id, reading):
                return False
            self._last_evaluated[pond_id] = reading

            for signal in WATER_SIGNALS:
                previous = await self.insights.get_signal_state(pond_id, signal)
                outcome = evaluate_water(
                    signal,
                    reading.value_for(signal),
                    self.rules.water.band_for(signal),
                    previous,
                    self.notice_ttl_ms,
                )
                await self.insights.apply_signal(pond_id, signal, outcome)
            return True
        except Exception:
            logger.exception("Reading evaluation failed for pond %s", pond)
            return False

    async def on_connectivity(self, pond: str, online: bool) -> None:
        """Online/offline flag from the feed, outside of a reading."""
        try:
            pond_id = await self._resolve(pond)
            self.offline.on_connectivity(pond_id, online)
            await self.heartbeats.record(pond_id, self.clock.now_ms(), online=online)
        except Exception:
            logger.exception("Connectivity update failed for pond %s", pond)

    async def run_periodic(self, pond: str) -> None:
        """Coarse tick: mortality, survival, growth and heartbeat evaluators."""
        try:
            pond_id = await self._resolve(pond)
        except Exception:
            logger.exception("Periodic evaluation skipped for pond %s", pond)
            return
        await self._guard("Mortality evaluation", pond_id, self._evaluate_mortality(pond_id))
        await self._guard("Growth evaluation", pond_id, self._evaluate_growth(pond_id))
        await self._guard("Device evaluation", pond_id, self._evaluate_device(pond_id))

    async def sweep_expired(self, pond: str) -> list[str]:
        """Resolve expired ephemeral findings and refresh visible streams."""
        try:
            pond_id = await self._resolve(pond)
            resolved = await self.insights.sweep_expired(pond_id)
            for sub in list(self._visible_subs):
                if sub.pond_id == pond_id:
                    await self._emit_visible(sub)
            return resolved
        except Exception:
            logger.exception("Expiry sweep failed for pond %s", pond)
            return []

    # -----------------------------------------------------------------
    # Background monitoring
    # -----------------------------------------------------------------

    async def run_periodic_all(self) -> None:
        for pond_id in sorted(self._monitored):
            await self.run_periodic(pond_id)

    async def sweep_all(self) -> None:
        for pond_id in sorted(self._monitored):
            await self.sweep_expired(pond_id)

    def start_monitoring(self, pond_ids: Iterable[str]) -> None:
        """Start the periodic and expiry-sweep loops for these ponds."""
        self._monitored.update(pond_ids)
        if self._tasks:
            return
        self._tasks = [
            IntervalTask(
                "periodic-evaluation",
                self.settings.evaluation_interval_seconds,
                self.run_periodic_all,
                clock=self.clock,
            ),
            IntervalTask(
                "expiry-sweep",
                self.settings.sweep_interval_seconds,
                self.sweep_all,
                clock=self.clock,
            ),
        ]
        for task in self._tasks:
            task.start()

    def stop_monitoring(self, pond_ids: Iterable[str] | None = None) -> None:
        """Stop issuing ticks for these ponds (all ponds when None)."""
        if pond_ids is not None:
            self._monitored.difference_update(pond_ids)
            if self._monitored:
                return
        self._monitored.clear()
        for task in self._tasks:
            task.stop()
        self._tasks = []
        self.offline.cancel_all()

    @property
    def is_monitoring(self) -> bool:
        return any(task.is_running for task in self._tasks)
