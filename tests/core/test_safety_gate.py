from datetime import datetime, timedelta

import pytest

from fcl.core.dosing.phased import BolusSnapshot
from fcl.core.safety import SafetyConfig
from fcl.core.safety.gate import POST, PRE, GateResult, SafetyGate, project_bg


def test_hypo_recovery_blocks_rebound(samples, context, observation):
    ctx = context()
    obs = observation(samples([4.0, 4.2, 4.5, 4.9, 5.3, 5.8, 6.2]), ctx)

    result = SafetyGate().evaluate(PRE, ctx, obs, 0.0, BolusSnapshot())

    assert not result.allowed
    assert result.phase == "hypo_recovery"
    assert result.critical
    assert result.reason.startswith("Hypo recovery")


def test_conservative_day_block_on_fast_decline(samples, context, observation):
    ctx = context()
    obs = observation(samples([14.0, 13.0, 12.0, 11.0, 10.0, 9.0], iob=2.5), ctx)

    result = SafetyGate().evaluate(PRE, ctx, obs, 0.0, BolusSnapshot())

    assert not result.allowed
    assert result.phase == "conservative_block"
    assert result.reason == "Conservative day block: BG decline -12.0 mmol/L/h with IOB 2.50U (83% of max)"
    assert not result.critical


def test_conservative_day_block_on_high_iob(samples, context, observation):
    ctx = context()
    obs = observation(samples([8.0] * 6, iob=2.8), ctx)

    result = SafetyGate().check_conservative(ctx, obs, BolusSnapshot())

    assert result is not None
    assert "above 90% limit" in result.reason


def test_night_limits_are_stricter(samples, context, observation):
    night = datetime(2026, 3, 4, 2, 0)
    day_ctx = context()
    night_ctx = context(now=night)
    gate = SafetyGate()

    day_obs = observation(samples([8.0] * 6, iob=2.0), day_ctx)
    night_obs = observation(samples([8.0] * 6, end=night, iob=2.0), night_ctx)

    assert gate.check_conservative(day_ctx, day_obs, BolusSnapshot()) is None
    blocked = gate.check_conservative(night_ctx, night_obs, BolusSnapshot())
    assert blocked is not None
    assert blocked.reason.startswith("Conservative night block")


def test_conservative_block_on_bolus_history(samples, context, observation, noon):
    ctx = context()
    obs = observation(samples([8.0] * 6), ctx)
    gate = SafetyGate()

    chain = BolusSnapshot(last_bolus_time=noon - timedelta(minutes=20), consecutive=5)
    assert "5 consecutive boluses" in gate.check_conservative(ctx, obs, chain).reason

    recent = BolusSnapshot(last_bolus_time=noon - timedelta(minutes=3), consecutive=1)
    assert "last bolus 3 min ago" in gate.check_conservative(ctx, obs, recent).reason


def test_short_term_decline_veto(samples, context, observation):
    ctx = context()
    obs = observation(samples([9.0, 9.0, 9.0, 8.0, 7.95, 7.9]), ctx)

    result = SafetyGate().evaluate(PRE, ctx, obs, 0.0, BolusSnapshot())

    assert result.phase == "short_term_decline"
    assert obs.short_term_trend == pytest.approx(-4.4)


def test_trend_reversal_with_high_iob(samples, context, observation):
    ctx = context()
    obs = observation(samples([6.0, 7.0, 8.0, 9.0, 9.3, 9.4], iob=2.55), ctx)

    result = SafetyGate().evaluate(PRE, ctx, obs, 0.0, BolusSnapshot())

    assert result.phase == "trend_reversal"


def test_hard_stop_on_cumulative_insulin(samples, context, observation, noon):
    ctx = context()
    obs = observation(samples([8.0] * 6), ctx)
    gate = SafetyGate()
    history = BolusSnapshot(
        last_bolus_time=noon - timedelta(minutes=30), consecutive=1, recent_insulin=2.5, session_insulin=7.5
    )

    normal = gate.evaluate(POST, ctx, obs, 1.0, history)
    assert normal.phase == "hard_stop"
    assert normal.reason == "Hard stop: 3.50U within 60 min exceeds 3.0U"
    assert not normal.critical

    meal = gate.evaluate(POST, ctx, obs, 1.0, history, meal_active=True, cob=60.0)
    assert meal.reason == "Hard stop: meal insulin 8.50U exceeds 8.0U"


def test_lookahead_blocks_projected_hypo(samples, context, observation):
    ctx = context()
    obs = observation(samples([6.0] * 6), ctx)
    gate = SafetyGate()

    result = gate.evaluate(POST, ctx, obs, 2.0, BolusSnapshot())
    assert not result.allowed
    assert result.critical
    assert "projected BG" in result.reason
    assert gate.evaluate_critical(ctx, obs, 2.0) == result

    # Carbs on board offset the insulin.
    assert gate.evaluate(POST, ctx, obs, 2.0, BolusSnapshot(), cob=40.0).allowed


def test_project_bg_components(context):
    ctx = context()

    assert project_bg(10.0, 1.0, 0.0, 0.0, 60, ctx) == pytest.approx(6.1073, abs=1e-4)
    assert project_bg(6.0, 0.0, 14.0, 0.0, 40, ctx) == pytest.approx(16.1139, abs=1e-4)
    assert project_bg(6.0, 0.0, 0.0, 2.0, 60, ctx) == pytest.approx(6.6)


def test_hypo_floor_adds_night_margin(context):
    gate = SafetyGate(SafetyConfig(hypo_floor=4.0, night_floor_margin=0.3))

    assert gate.hypo_floor(context()) == pytest.approx(4.0)
    assert gate.hypo_floor(context(now=datetime(2026, 3, 4, 2, 0))) == pytest.approx(4.3)


def test_relax_only_non_critical_in_steep_rise(samples, context, observation):
    ctx = context()
    gate = SafetyGate()
    rising = observation(samples([6.0, 6.5, 7.0, 7.5, 8.0, 8.5]), ctx)
    flat = observation(samples([8.0] * 6), ctx)
    veto = GateResult(False, "Hard stop", "hard_stop")

    assert gate.relax(veto, rising, 2.0) == pytest.approx(1.0)
    assert gate.relax(GateResult(False, "Hard stop", "hard_stop", critical=True), rising, 2.0) is None
    assert gate.relax(veto, flat, 2.0) is None
    assert gate.relax(GateResult.ok(), rising, 2.0) is None
