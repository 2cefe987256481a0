"""End-to-end tests for PondMonitor on the in-memory store.

Time is driven by ``ManualClock`` so cadence checks, expiry and the offline
grace delay are deterministic.
"""

import asyncio
from datetime import timedelta

import pytest
from pond_sentinel.document_store import InMemoryDocumentStore
from pond_sentinel.errors import NotFoundError, ValidationError
from pond_sentinel.growth import ForecastUnavailable
from pond_sentinel.models import FindingStatus, LiveReading, Pond, Severity
from pond_sentinel.monitor import PondMonitor
from pond_sentinel.rules_config import default_rules
from pond_sentinel.scheduler import ManualClock
from pond_sentinel.settings import PondSettings

POND = "pond-1"
PERIOD = timedelta(days=15)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def monitor(clock):
    settings = PondSettings(
        _env_file=None,
        offline_clear_delay_seconds=5,
        notice_ttl_minutes=5,
        default_snooze_hours=6,
    )
    return PondMonitor(InMemoryDocumentStore(), default_rules(), settings, clock)


async def _register(monitor, stocked=1000, aliases=()):
    await monitor.ponds.register(
        Pond(id=POND, name="North", initial_stocked=stocked, aliases=list(aliases))
    )


def _reading(clock, offset_ms=0, **values):
    defaults = {
        "temp_c": 30.0,
        "ph": 7.5,
        "dissolved_oxygen_mg_l": 4.0,
        "tds_ppm": 200.0,
    }
    defaults.update(values)
    return LiveReading(ts=clock.now_ms() + offset_ms, **defaults)


async def _status(monitor, key):
    finding = await monitor.insights.get(POND, key)
    return finding.status if finding else None


# ---------------------------------------------------------------------------
# Pond directory
# ---------------------------------------------------------------------------


class TestPonds:
    @pytest.mark.asyncio
    async def test_alias_resolves_to_shared_pond(self, monitor, clock):
        await _register(monitor, aliases=["viewer-7"])
        await monitor.record_mortality("viewer-7", 4.0)
        state = await monitor.get_survival(POND)
        assert state.survival_percent == pytest.approx(96.0)

    @pytest.mark.asyncio
    async def test_link_alias_later(self, monitor):
        await _register(monitor)
        await monitor.ponds.link_alias("partner-view", POND)
        assert await monitor.ponds.resolve("partner-view") == POND
        assert (await monitor.ponds.get(POND)).aliases == ["partner-view"]

    @pytest.mark.asyncio
    async def test_unknown_pond(self, monitor):
        with pytest.raises(NotFoundError):
            await monitor.get_survival("ghost")


# ---------------------------------------------------------------------------
# Mortality
# ---------------------------------------------------------------------------


class TestMortality:
    @pytest.mark.asyncio
    async def test_survival_from_two_entries(self, monitor, clock):
        await _register(monitor)
        await monitor.record_mortality(POND, 5.0, period_date=clock.now() - PERIOD)
        await monitor.record_mortality(POND, 3.0)
        state = await monitor.get_survival(POND)
        assert state.survival_percent == pytest.approx(92.0)
        assert state.estimated_alive == 920

        curve = await monitor.get_survival_curve(POND)
        assert [p.survival_percent for p in curve] == pytest.approx([95.0, 92.0])

    @pytest.mark.asyncio
    async def test_entry_inside_cadence_rejected(self, monitor, clock):
        await _register(monitor)
        await monitor.record_mortality(POND, 1.0, period_date=clock.now() - timedelta(days=3))
        with pytest.raises(ValidationError) as exc:
            await monitor.record_mortality(POND, 1.0)
        assert exc.value.field == "period_date"
        assert len(await monitor.mortality.list(POND)) == 1

    @pytest.mark.asyncio
    async def test_out_of_range_rejected(self, monitor):
        await _register(monitor)
        with pytest.raises(ValidationError):
            await monitor.record_mortality(POND, 120.0)

    @pytest.mark.asyncio
    async def test_daily_spike_emits_danger(self, monitor):
        await _register(monitor)
        await monitor.record_mortality(POND, 6.0)
        finding = await monitor.insights.get(POND, "mortality_today")
        assert finding.severity is Severity.DANGER
        assert finding.status is FindingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_survival_low_and_recovery_by_correction(self, monitor):
        await _register(monitor)
        entry = await monitor.record_mortality(POND, 25.0)
        assert await _status(monitor, "survival_low") is FindingStatus.ACTIVE

        corrected = await monitor.correct_mortality(POND, entry.id, 5.0)
        assert corrected.mortality_rate_percent == 5.0
        assert (await monitor.get_survival(POND)).survival_percent == pytest.approx(95.0)
        assert await _status(monitor, "survival_low") is FindingStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_correct_unknown_entry(self, monitor):
        await _register(monitor)
        with pytest.raises(NotFoundError):
            await monitor.correct_mortality(POND, "missing", 1.0)

    @pytest.mark.asyncio
    async def test_correction_overflow_rejected(self, monitor, clock):
        await _register(monitor)
        await monitor.record_mortality(POND, 60.0, period_date=clock.now() - PERIOD)
        entry = await monitor.record_mortality(POND, 30.0)
        with pytest.raises(ValidationError):
            await monitor.correct_mortality(POND, entry.id, 41.0)

    @pytest.mark.asyncio
    async def test_naive_period_date_is_read_as_utc(self, monitor, clock):
        await _register(monitor)
        entry = await monitor.record_mortality(
            POND, 6.0, period_date=clock.now().replace(tzinfo=None)
        )
        assert entry.period_date == clock.now()
        assert await _status(monitor, "mortality_today") is FindingStatus.ACTIVE

        await clock.advance(16 * 86400)
        await monitor.record_mortality(POND, 1.0)
        assert (await monitor.get_survival(POND)).survival_percent == pytest.approx(93.0)


class _SlowReadStore(InMemoryDocumentStore):
    """Reads suspend before returning, the way a network-backed store does."""

    async def get(self, collection, doc_id):
        data = await super().get(collection, doc_id)
        await asyncio.sleep(0)
        return data

    async def _list(self, collection):
        docs = await super()._list(collection)
        await asyncio.sleep(0)
        return docs


class TestConcurrentMortality:
    @pytest.fixture
    def monitor(self, clock):
        settings = PondSettings(_env_file=None)
        return PondMonitor(_SlowReadStore(), default_rules(), settings, clock)

    @pytest.mark.asyncio
    async def test_concurrent_entries_cannot_pass_the_cap(self, monitor, clock):
        await _register(monitor)
        results = await asyncio.gather(
            monitor.record_mortality(POND, 60.0, period_date=clock.now() - PERIOD),
            monitor.record_mortality(POND, 60.0),
            return_exceptions=True,
        )
        assert sum(isinstance(r, ValidationError) for r in results) == 1
        entries = await monitor.mortality.list(POND)
        assert len(entries) == 1
        assert sum(e.mortality_rate_percent for e in entries) == 60.0

    @pytest.mark.asyncio
    async def test_concurrent_corrections_cannot_pass_the_cap(self, monitor, clock):
        await _register(monitor)
        first = await monitor.record_mortality(POND, 60.0, period_date=clock.now() - PERIOD)
        second = await monitor.record_mortality(POND, 30.0)
        results = await asyncio.gather(
            monitor.correct_mortality(POND, first.id, 68.0),
            monitor.correct_mortality(POND, second.id, 38.0),
            return_exceptions=True,
        )
        assert sum(isinstance(r, ValidationError) for r in results) == 1
        total = sum(e.mortality_rate_percent for e in await monitor.mortality.list(POND))
        assert total <= 100.0


# ---------------------------------------------------------------------------
# Growth
# ---------------------------------------------------------------------------


class TestGrowth:
    @pytest.mark.asyncio
    async def test_measurement_updates_setup_and_notice(self, monitor, clock):
        await _register(monitor)
        await monitor.set_target_weight(POND, 20.0)
        await monitor.record_growth_measurement(POND, 5.0)

        setup = await monitor.growth_setup.get(POND)
        assert setup.current_abw == 5.0
        assert setup.target_weight_grams == 20.0

        notice = await monitor.insights.get(POND, "abw_logged")
        assert notice.evidence.days_left == 27
        assert notice.auto_resolve_at == clock.now_ms() + 5 * 60_000
        assert await monitor.days_to_target(POND) == 27

    @pytest.mark.asyncio
    async def test_days_to_target_unavailable(self, monitor):
        await _register(monitor)
        assert await monitor.days_to_target(POND) is ForecastUnavailable.NO_CURRENT_WEIGHT
        await monitor.set_target_weight(POND, 250.0)
        assert await monitor.days_to_target(POND) is ForecastUnavailable.NO_CURRENT_WEIGHT
        await monitor.set_target_weight(POND, None)
        await monitor.record_growth_measurement(POND, 12.0)
        assert await monitor.days_to_target(POND) is ForecastUnavailable.NO_TARGET

    @pytest.mark.asyncio
    async def test_cadence_enforced(self, monitor, clock):
        await _register(monitor)
        start = clock.now()
        await monitor.record_growth_measurement(POND, 5.0)
        clock.set(start + timedelta(days=10))
        with pytest.raises(ValidationError) as exc:
            await monitor.record_growth_measurement(POND, 9.0)
        assert "5 days" in str(exc.value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("abw", [0, -3, float("nan")])
    async def test_non_positive_abw_rejected(self, monitor, abw):
        await _register(monitor)
        with pytest.raises(ValidationError):
            await monitor.record_growth_measurement(POND, abw)

    @pytest.mark.asyncio
    async def test_invalid_target_rejected(self, monitor):
        await _register(monitor)
        with pytest.raises(ValidationError):
            await monitor.set_target_weight(POND, -10.0)

    @pytest.mark.asyncio
    async def test_growth_gap_finding(self, monitor, clock):
        await _register(monitor)
        start = clock.now()
        await monitor.record_growth_measurement(POND, 5.0)
        clock.set(start + PERIOD)
        await monitor.record_growth_measurement(POND, 8.0)

        finding = await monitor.insights.get(POND, "growth_delta")
        assert finding.severity is Severity.DANGER
        assert finding.evidence.predicted_g == pytest.approx(13.57)

    @pytest.mark.asyncio
    async def test_abw_due_lifecycle(self, monitor, clock):
        await _register(monitor)
        await monitor.run_periodic(POND)
        finding = await monitor.insights.get(POND, "abw_due")
        assert finding.title == "ABW not set"

        await monitor.record_growth_measurement(POND, 5.0)
        assert await _status(monitor, "abw_due") is FindingStatus.RESOLVED

        await clock.advance(8 * 86400)
        await monitor.run_periodic(POND)
        finding = await monitor.insights.get(POND, "abw_due")
        assert finding.status is FindingStatus.ACTIVE
        assert finding.title == "ABW measurement due"

    @pytest.mark.asyncio
    async def test_forecast_with_live_multiplier(self, monitor, clock):
        await _register(monitor)
        start = clock.now()
        await monitor.record_growth_measurement(POND, 5.0)
        clock.set(start + PERIOD)
        await monitor.record_growth_measurement(POND, 13.0)

        neutral = await monitor.get_forecast(POND)
        assert neutral.multiplier == 1.0
        assert neutral.live_forecast == pytest.approx(neutral.baseline)
        assert neutral.latest_actual_index == 1
        assert len(neutral.baseline) == 2 + 8

        stressed = await monitor.get_forecast(
            POND, reading=_reading(clock, dissolved_oxygen_mg_l=2.0)
        )
        assert stressed.multiplier == pytest.approx(0.7)
        assert stressed.live_forecast[0] == stressed.baseline[0]
        assert stressed.live_forecast[-1] < stressed.baseline[-1]

    @pytest.mark.asyncio
    async def test_forecast_horizon(self, monitor):
        await _register(monitor)
        result = await monitor.get_forecast(POND, horizon_periods=3)
        assert len(result.baseline) == 4
        assert result.baseline[0] == 5.0  # default seed
        assert result.latest_actual_index is None


# ---------------------------------------------------------------------------
# Live readings
# ---------------------------------------------------------------------------


class TestReadings:
    @pytest.mark.asyncio
    async def test_low_oxygen_then_recovery(self, monitor, clock):
        await _register(monitor)
        assert await monitor.on_reading(POND, _reading(clock, dissolved_oxygen_mg_l=2.0))
        finding = await monitor.insights.get(POND, "do_low")
        assert finding.severity is Severity.DANGER

        assert await monitor.on_reading(POND, _reading(clock, 1000, dissolved_oxygen_mg_l=4.0))
        assert await _status(monitor, "do_low") is FindingStatus.RESOLVED
        notice = await monitor.insights.get(POND, "do_ok")
        assert notice.status is FindingStatus.ACTIVE
        assert notice.auto_resolve_at is not None

    @pytest.mark.asyncio
    async def test_warm_water_then_recovery(self, monitor, clock):
        await _register(monitor)
        await monitor.on_reading(POND, _reading(clock, temp_c=32.0))
        assert await _status(monitor, "temp_high") is FindingStatus.ACTIVE
        assert await monitor.insights.get(POND, "temp_low") is None

        await monitor.on_reading(POND, _reading(clock, 1000, temp_c=30.0))
        assert await _status(monitor, "temp_high") is FindingStatus.RESOLVED
        notice = await monitor.insights.get(POND, "temp_ok")
        assert notice.status is FindingStatus.ACTIVE
        assert notice.auto_resolve_at > clock.now_ms()
        assert [f.key for f in await monitor.visible_findings(POND)] == ["temp_ok"]

    @pytest.mark.asyncio
    async def test_optimal_first_reading_is_silent(self, monitor, clock):
        await _register(monitor)
        assert await monitor.on_reading(POND, _reading(clock))
        assert await monitor.visible_findings(POND) == []

    @pytest.mark.asyncio
    async def test_change_gate(self, monitor, clock):
        await _register(monitor)
        assert await monitor.on_reading(POND, _reading(clock))
        # Small movement inside the quiet window is skipped
        assert not await monitor.on_reading(POND, _reading(clock, 1000, temp_c=30.2))
        # A larger step passes
        assert await monitor.on_reading(POND, _reading(clock, 1500, temp_c=30.6))
        # So does the quiet-window timeout
        assert await monitor.on_reading(POND, _reading(clock, 4500, temp_c=30.6))

    @pytest.mark.asyncio
    async def test_missing_probe_passes_gate(self, monitor, clock):
        await _register(monitor)
        await monitor.on_reading(POND, _reading(clock))
        assert await monitor.on_reading(POND, _reading(clock, 100, tds_ppm=None))

    @pytest.mark.asyncio
    async def test_reading_feeds_daily_metrics(self, monitor, clock):
        await _register(monitor)
        reading = _reading(clock)
        await monitor.on_reading(POND, reading)
        await monitor.on_reading(POND, _reading(clock, 500))
        date_key, _ = monitor.daily.keys_for(reading.ts)
        metrics = await monitor.daily.get(POND, date_key)
        assert metrics.count == 2

    @pytest.mark.asyncio
    async def test_unknown_pond_never_raises(self, monitor, clock):
        assert await monitor.on_reading("ghost", _reading(clock)) is False


class TestOffline:
    @pytest.mark.asyncio
    async def test_water_findings_cleared_after_grace(self, monitor, clock):
        await _register(monitor)
        await monitor.on_reading(POND, _reading(clock, dissolved_oxygen_mg_l=2.0))
        assert not await monitor.on_reading(POND, _reading(clock, 100, online=False))

        await clock.advance(4)
        assert await _status(monitor, "do_low") is FindingStatus.ACTIVE
        await clock.advance(1)
        assert await _status(monitor, "do_low") is FindingStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_reconnect_inside_grace_keeps_findings(self, monitor, clock):
        await _register(monitor)
        await monitor.on_reading(POND, _reading(clock, dissolved_oxygen_mg_l=2.0))
        await monitor.on_connectivity(POND, False)
        await clock.advance(3)
        await monitor.on_connectivity(POND, True)
        await clock.advance(10)
        assert await _status(monitor, "do_low") is FindingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_device_offline_after_silence(self, monitor, clock):
        await _register(monitor)
        await monitor.run_periodic(POND)  # seeds the heartbeat
        assert await monitor.insights.get(POND, "device_offline") is None

        await clock.advance(21 * 60)
        await monitor.run_periodic(POND)
        finding = await monitor.insights.get(POND, "device_offline")
        assert finding.severity is Severity.ERROR

        await monitor.on_reading(POND, _reading(clock))
        assert await _status(monitor, "device_offline") is FindingStatus.RESOLVED


# ---------------------------------------------------------------------------
# Feeding, snoozes, expiry
# ---------------------------------------------------------------------------


class TestFeedingAndExpiry:
    @pytest.mark.asyncio
    async def test_underfeeding_notice_expires(self, monitor, clock):
        await _register(monitor)
        event = await monitor.record_feeding(POND, 80.0, suggested_g=100.0)
        assert event.id is not None
        assert await _status(monitor, "feeding_under") is FindingStatus.ACTIVE

        await clock.advance(5 * 60)
        assert [f.key for f in await monitor.visible_findings(POND)] == []
        assert await monitor.sweep_expired(POND) == ["feeding_under"]
        assert await _status(monitor, "feeding_under") is FindingStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_negative_feed_rejected(self, monitor):
        await _register(monitor)
        with pytest.raises(ValidationError):
            await monitor.record_feeding(POND, -1.0)


class TestSnoozeAndResolve:
    @pytest.mark.asyncio
    async def test_snooze_is_per_user(self, monitor, clock):
        await _register(monitor)
        await monitor.on_reading(POND, _reading(clock, dissolved_oxygen_mg_l=2.0))
        entry = await monitor.snooze_finding("user-1", "do_low")
        assert entry.until == clock.now_ms() + 6 * 3_600_000

        assert await monitor.visible_findings(POND, "user-1") == []
        assert [f.key for f in await monitor.visible_findings(POND, "user-2")] == ["do_low"]
        assert await _status(monitor, "do_low") is FindingStatus.ACTIVE

        await clock.advance(6 * 3600)
        assert [f.key for f in await monitor.visible_findings(POND, "user-1")] == ["do_low"]

    @pytest.mark.asyncio
    async def test_expired_snoozes_pruned_on_read(self, monitor, clock):
        await _register(monitor)
        await monitor.on_reading(POND, _reading(clock, dissolved_oxygen_mg_l=2.0))
        await monitor.snooze_finding("user-1", "do_low", hours=1)
        await monitor.snooze_finding("user-1", "ph_high", hours=4)

        await clock.advance(2 * 3600)
        assert [f.key for f in await monitor.visible_findings(POND, "user-1")] == ["do_low"]
        assert set(await monitor.snoozes.load("user-1")) == {"ph_high"}

    @pytest.mark.asyncio
    async def test_pond_scoped_snooze(self, monitor, clock):
        await _register(monitor)
        await monitor.on_reading(POND, _reading(clock, dissolved_oxygen_mg_l=2.0))
        await monitor.snooze_finding("user-1", "do_low", hours=1, pond=POND)
        assert await monitor.snoozes.load("user-1") == {
            f"{POND}:do_low": clock.now_ms() + 3_600_000
        }
        assert await monitor.visible_findings(POND, "user-1") == []

    @pytest.mark.asyncio
    async def test_resolve_finding(self, monitor, clock):
        await _register(monitor)
        await monitor.on_reading(POND, _reading(clock, ph=10.0))
        assert await monitor.resolve_finding(POND, "ph_high") is True
        assert await monitor.resolve_finding(POND, "ph_high") is False
        assert await monitor.resolve_finding(POND, "never_created") is False


class TestVisibleSubscription:
    @pytest.mark.asyncio
    async def test_stream_follows_writes_snoozes_and_sweeps(self, monitor, clock):
        await _register(monitor)
        emissions = []
        unsubscribe = await monitor.subscribe_visible_findings(
            POND, "user-1", lambda findings: emissions.append([f.key for f in findings])
        )
        assert emissions == [[]]

        await monitor.on_reading(POND, _reading(clock, dissolved_oxygen_mg_l=2.0))
        assert emissions[-1] == ["do_low"]

        await monitor.record_feeding(POND, 150.0, suggested_g=100.0)
        assert emissions[-1] == ["do_low", "feeding_over"]

        await monitor.snooze_finding("user-1", "do_low")
        assert emissions[-1] == ["feeding_over"]

        await clock.advance(5 * 60)
        count = len(emissions)
        await monitor.sweep_expired(POND)
        assert len(emissions) > count
        assert emissions[-1] == []

        unsubscribe()
        count = len(emissions)
        await monitor.record_feeding(POND, 10.0, suggested_g=100.0)
        assert len(emissions) == count


# ---------------------------------------------------------------------------
# Cycle reset and background monitoring
# ---------------------------------------------------------------------------


class TestCycleAndMonitoring:
    @pytest.mark.asyncio
    async def test_start_new_cycle(self, monitor):
        await _register(monitor)
        await monitor.record_mortality(POND, 30.0)
        await monitor.record_growth_measurement(POND, 5.0)
        assert await _status(monitor, "survival_low") is FindingStatus.ACTIVE

        await monitor.start_new_cycle(POND, initial_stocked=2000)

        state = await monitor.get_survival(POND)
        assert state.survival_percent == 100.0
        assert state.estimated_alive == 2000
        assert await monitor.growth_setup.get(POND) is None
        assert await monitor.growth_log.list(POND) == []
        assert await _status(monitor, "survival_low") is FindingStatus.RESOLVED
        assert await _status(monitor, "mortality_today") is FindingStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_survival_forecast(self, monitor, clock):
        await _register(monitor)
        await monitor.record_mortality(POND, 10.0)
        flat = await monitor.get_survival_forecast(POND)
        assert len(flat) == 16
        assert flat == pytest.approx([90.0] * 16)

        stressed = await monitor.get_survival_forecast(
            POND, reading=_reading(clock, dissolved_oxygen_mg_l=2.0), days=3
        )
        assert len(stressed) == 4
        assert stressed[1] == pytest.approx(90.0 * (1 - 0.2 / 7))

    @pytest.mark.asyncio
    async def test_background_loops(self, monitor, clock):
        await _register(monitor)
        monitor.start_monitoring([POND])
        await clock.advance(0)
        assert monitor.is_monitoring
        assert (await monitor.insights.get(POND, "abw_due")).title == "ABW not set"

        await monitor.record_feeding(POND, 150.0, suggested_g=100.0)
        await clock.advance(5 * 60 + 5)
        assert await _status(monitor, "feeding_over") is FindingStatus.RESOLVED

        monitor.stop_monitoring()
        await clock.advance(0)
        assert not monitor.is_monitoring
