"""Tests for the stage-based growth model.

Covers stage lookup, the forward forecast with rebase and target clamping,
days-to-target interpolation and the safety cap.
"""

import pytest
from pond_sentinel.growth import ForecastUnavailable, GrowthModel, GrowthStage
from pond_sentinel.rules_config import default_rules

STEP_SMALL = 4.5 * 15 / 7  # 9.642857...
STEP_LARGE = 14 * 15 / 7  # 30.0


@pytest.fixture
def model():
    return GrowthModel(
        [
            GrowthStage(1, 20, 4.5),
            GrowthStage(20, 100, 14.0),
            GrowthStage(100, None, 10.0),
        ],
        cadence_days=15,
    )


@pytest.fixture
def weekly_model():
    """Cadence of one week so a period gain equals the weekly rate."""
    return GrowthModel(
        [GrowthStage(1, 20, 7.0), GrowthStage(20, None, 14.0)],
        cadence_days=7,
    )


# ---------------------------------------------------------------------------
# Stage lookup
# ---------------------------------------------------------------------------


class TestStageRate:
    def test_first_match(self, model):
        assert model.stage_rate(5) == 4.5
        assert model.stage_rate(19.99) == 4.5

    def test_upper_bound_is_exclusive(self, model):
        assert model.stage_rate(20) == 14.0

    def test_tail_rate(self, model):
        assert model.stage_rate(100) == 10.0
        assert model.stage_rate(5000) == 10.0

    def test_below_first_stage_uses_first_rate(self, model):
        assert model.stage_rate(0.5) == 4.5

    def test_rate_per_cadence(self, model):
        assert model.rate_per_cadence(5) == pytest.approx(STEP_SMALL)

    def test_empty_table_rejected(self):
        with pytest.raises(ValueError):
            GrowthModel([])


# ---------------------------------------------------------------------------
# Forward forecast
# ---------------------------------------------------------------------------


class TestForwardForecast:
    def test_baseline_crosses_into_next_stage(self, model):
        series = model.baseline(5, 4)
        assert series[0] == 5
        assert series[1] == pytest.approx(5 + STEP_SMALL)
        assert series[2] == pytest.approx(5 + 2 * STEP_SMALL)
        # 24.29 g is past the 20 g edge, so the next step uses 14 g/week
        assert series[3] == pytest.approx(5 + 2 * STEP_SMALL + STEP_LARGE)

    def test_seed_floored_at_table_minimum(self, model):
        assert model.baseline(0.2, 1) == [1]

    def test_no_actuals_uses_extra_periods(self, model):
        series = model.forward_forecast([], seed=5, extra_periods=8)
        assert len(series) == 9
        assert series[0] == 5

    def test_rebase_from_latest_actual(self, model):
        series = model.forward_forecast([5.0, 12.0], seed=5, extra_periods=2)
        assert len(series) == 4
        assert series[0] == 5
        # Point at the latest actual keeps the original prediction
        assert series[1] == pytest.approx(5 + STEP_SMALL)
        assert series[2] == pytest.approx(12 + STEP_SMALL)
        assert series[3] == pytest.approx(12 + STEP_SMALL + STEP_LARGE)

    def test_rebase_invariant_when_measurement_added(self, model):
        before = model.forward_forecast([5.0, 13.0], seed=5)
        after = model.forward_forecast([5.0, 13.0, 20.5], seed=5)

        # Indices before the new measurement are untouched
        assert after[:2] == pytest.approx(before[:2])
        # The new measurement's index keeps the seed-only baseline prediction
        assert after[2] == pytest.approx(model.baseline(5, 3)[2])
        # Everything after is re-simulated from 20.5 g
        assert after[3] == pytest.approx(20.5 + STEP_LARGE)
        assert after[3] != pytest.approx(before[3])

    def test_trailing_gaps_are_rebased(self, model):
        series = model.forward_forecast([5.0, 12.0, None], seed=5, extra_periods=0)
        assert len(series) == 3
        assert series[2] == pytest.approx(12 + STEP_SMALL)

    def test_target_already_reached_stops_at_first_hit(self, model):
        series = model.forward_forecast([5.0, 25.0, 40.0], seed=5, target=20)
        assert len(series) == 2
        assert series == pytest.approx([5, 5 + STEP_SMALL])

    def test_target_continues_from_latest_actual_and_clamps(self, model):
        series = model.forward_forecast([5.0, 12.0], seed=5, target=30)
        assert series == pytest.approx([5, 5 + STEP_SMALL, 12 + STEP_SMALL, 30])

    def test_target_without_actuals(self, model):
        series = model.forward_forecast([], seed=5, target=20)
        assert series == pytest.approx([5, 5 + STEP_SMALL, 20])

    def test_safety_cap_bounds_flat_table(self):
        flat = GrowthModel([GrowthStage(1, None, 0.0)], safety_cap=50)
        series = flat.forward_forecast([], seed=5, target=100)
        assert len(series) == 51
        assert series[-1] == 5

    def test_predicted_at_latest(self, model):
        index, predicted = model.predicted_at_latest([5.0, 12.0], seed=5)
        assert index == 1
        assert predicted == pytest.approx(5 + STEP_SMALL)

    def test_predicted_at_latest_without_actuals(self, model):
        assert model.predicted_at_latest([None, None], seed=5) is None


# ---------------------------------------------------------------------------
# Days to target
# ---------------------------------------------------------------------------


class TestDaysToTarget:
    @pytest.mark.parametrize(
        "current,target", [(50, 50), (50, 20), (1, 0.5), (300, 299.9)]
    )
    def test_reached_target_is_zero(self, model, current, target):
        assert model.days_to_target(current, target) == 0

    def test_missing_current_weight(self, model):
        assert model.days_to_target(None, 200) is ForecastUnavailable.NO_CURRENT_WEIGHT
        assert model.days_to_target(0, 200) is ForecastUnavailable.NO_CURRENT_WEIGHT

    def test_missing_target(self, model):
        assert model.days_to_target(10, None) is ForecastUnavailable.NO_TARGET

    def test_interpolates_inside_crossing_period(self, weekly_model):
        # 6 -> 13 after one week, then 7 g/week = 1 g/day for the last 7 g
        assert weekly_model.days_to_target(6, 20) == 14
        assert weekly_model.days_to_target(6, 16) == 10

    def test_partial_day_rounds_up(self, weekly_model):
        assert weekly_model.days_to_target(6, 13.5) == 8

    def test_canonical_table(self):
        model = GrowthModel.from_rules(default_rules())
        # 5 -> 13.57 after 15 days, then 0.571 g/day for 6.43 g -> 12 days
        assert model.days_to_target(5, 20) == 27

    def test_unreachable_with_flat_table(self):
        flat = GrowthModel([GrowthStage(1, None, 0.0)], safety_cap=10)
        assert flat.days_to_target(5, 100) is ForecastUnavailable.UNREACHABLE

    def test_from_rules_uses_packaged_table(self):
        model = GrowthModel.from_rules(default_rules())
        assert len(model.stages) == 8
        assert model.cadence_days == 15
        assert model.stage_rate(10) == 4.0
        assert model.stage_rate(200) == 12.0
