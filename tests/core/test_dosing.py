from datetime import datetime, timedelta

import pytest

from fcl.core.dosing import bolus_math
from fcl.core.dosing.carbs import CarbDetector, CarbsOnBoard
from fcl.core.dosing.hybrid import HybridBasalTracker
from fcl.core.dosing.persistent import PersistentHighRule
from fcl.core.dosing.phased import PhasedBolusManager
from fcl.core.dosing.reserved import ReservedDoseLedger

STEADY_RISE = [6.0, 6.5, 7.0, 7.5, 8.0, 8.5]
FAST_RISE = [6.0, 6.6, 7.2, 7.8, 8.4, 9.0]


@pytest.mark.parametrize(
    "dose,expected",
    [(1.234, 1.25), (0.024, 0.0), (-1.0, 0.0), (2.5, 2.5)],
)
def test_round_dose(dose, expected):
    assert bolus_math.round_dose(dose) == pytest.approx(expected)


def test_round_dose_stays_under_ceiling():
    assert bolus_math.round_dose(1.23, ceiling=1.23) == pytest.approx(1.2)
    assert bolus_math.round_dose(1.2, ceiling=1.2) == pytest.approx(1.2)


def test_iob_aggressiveness_bands():
    assert bolus_math.iob_aggressiveness(0.1, 100.0) == pytest.approx(1.0)
    assert bolus_math.iob_aggressiveness(0.5, 100.0) == pytest.approx(0.6)
    assert bolus_math.iob_aggressiveness(0.9, 150.0) == pytest.approx(0.3)


def test_rising_phase_bolus_advice(samples, context, observation):
    ctx = context()
    obs = observation(samples(STEADY_RISE), ctx)

    advice = bolus_math.mathematical_bolus_advice(ctx, obs, meal_active=False)

    # 1.0 base * trend 1.2 * safety 1.0 * confidence 0.98
    assert advice.immediate_percentage == pytest.approx(1.176)
    assert advice.reserved_percentage == pytest.approx(0.15)
    assert advice.reason.startswith("Rising phase: 118% now, 15% reserved")


def test_no_bolus_advice_when_declining_or_iob_high(samples, context, observation):
    ctx = context()
    declining = observation(samples([9.0, 8.7, 8.4, 8.1, 7.8, 7.5]), ctx)
    loaded = observation(samples(STEADY_RISE, iob=2.9), ctx)

    assert bolus_math.mathematical_bolus_advice(ctx, declining, False).immediate_percentage == 0.0
    blocked = bolus_math.mathematical_bolus_advice(ctx, loaded, False)
    assert blocked.immediate_percentage == 0.0
    assert "too high" in blocked.reason


def test_correction_for_rising_high(samples, context, observation):
    ctx = context()
    obs = observation(samples([8.0, 8.1, 8.2, 8.3, 8.4, 8.5]), ctx)

    result = bolus_math.correction_dose(ctx, obs, 0.5)

    # (8.5 - 5.2) / 8 * 0.5, tripled for a 1.2 mmol/L/h rise
    assert result.deliver
    assert result.dose == pytest.approx(0.61875)
    assert result.reason.startswith("Correction ")
    assert "for BG 8.5" in result.reason


def test_correction_held_on_plateau(samples, context, observation):
    ctx = context()
    obs = observation(samples([9.0] * 6), ctx)

    result = bolus_math.correction_dose(ctx, obs, 0.5)

    assert not result.deliver
    assert result.dose == 0.0
    assert "held" in result.reason
    assert "peak damping" not in result.reason


def test_early_boost_for_predicted_peak(samples, context, observation):
    ctx = context()
    obs = observation(samples(FAST_RISE), ctx)

    assert bolus_math.dynamic_max_rise(9.0) == pytest.approx(4.0)
    assert bolus_math.dynamic_max_rise(15.0) == pytest.approx(2.0)
    # peak min(9 + 7.2 * 0.7, 9 + 4) = 13; (13 - 10) / 8 * 0.4 * 1.3
    assert bolus_math.early_boost(ctx, obs, 0.0) == pytest.approx(0.195)
    assert bolus_math.early_boost(ctx, obs, 10.0) == 0.0


def test_carb_detector_rapid_rise(samples, context, observation):
    ctx = context()
    estimate = CarbDetector().detect(ctx, observation(samples(FAST_RISE), ctx))

    assert estimate.source == "rapid_rise"
    assert estimate.carbs == pytest.approx(86.4)
    assert estimate.confidence == pytest.approx(0.72)
    assert estimate.meal_detected


def test_carb_detector_caps_at_night(samples, context, observation):
    night = datetime(2026, 3, 4, 2, 0)
    ctx = context(now=night)
    estimate = CarbDetector().detect(ctx, observation(samples(FAST_RISE, end=night), ctx))

    assert estimate.carbs == pytest.approx(25.0)
    assert estimate.confidence == pytest.approx(0.64)


def test_carb_detector_ignores_flat_glucose(samples, context, observation):
    ctx = context()
    estimate = CarbDetector().detect(ctx, observation(samples([7.0] * 6), ctx))

    assert estimate.carbs == 0.0
    assert not estimate.meal_detected


def test_carbs_on_board_absorb_and_merge(noon):
    cob = CarbsOnBoard()
    cob.add(noon, 40.0, 40)
    cob.add(noon + timedelta(minutes=10), 30.0, 40)  # same meal, smaller than what is left

    assert len(cob.entries) == 1
    assert cob.total(noon + timedelta(minutes=40), 40) == pytest.approx(40.0 * 0.367879, rel=1e-4)
    assert cob.total(noon + timedelta(minutes=200), 40) == 0.0
    assert cob.entries == []


def test_reserved_dose_decays_to_zero(noon):
    ledger = ReservedDoseLedger()
    ledger.reserve("meal-1", 2.0, 40.0, "rising", noon)

    assert ledger.remaining(noon) == pytest.approx(2.0)
    assert ledger.remaining(noon + timedelta(minutes=30)) == pytest.approx(2.0 * 0.367879, rel=1e-4)
    assert ledger.remaining(noon + timedelta(minutes=90)) == 0.0
    assert ledger.entries(noon + timedelta(minutes=90)) == []


def test_reserved_release_never_exceeds_remaining(samples, context, observation, noon):
    ledger = ReservedDoseLedger()
    ledger.reserve("meal-1", 2.0, 40.0, "rising", noon)

    same_tick = context()
    rising = [8.0, 8.5, 9.0, 9.5, 10.0, 10.5]
    assert ledger.release(same_tick, observation(samples(rising, iob=0.5), same_tick), None, 2.5) is None

    later = noon + timedelta(minutes=15)
    ctx = context(now=later)
    obs = observation(samples(rising, end=later, iob=0.5), ctx)
    before = ledger.remaining(later)

    result = ledger.release(ctx, obs, None, 2.5)

    assert result is not None
    assert result.amount <= before
    assert result.amount == pytest.approx(0.9 * before)
    assert ledger.remaining(later) == pytest.approx(before - result.amount)


def test_reserved_release_for_extreme_glucose(samples, context, observation, noon):
    ledger = ReservedDoseLedger()
    ledger.reserve("meal-1", 1.0, 30.0, "rising", noon)
    later = noon + timedelta(minutes=15)
    ctx = context(now=later)
    obs = observation(samples([15.0] * 6, end=later), ctx)

    result = ledger.release(ctx, obs, 5.0, 0.5)

    assert result.amount == pytest.approx(0.5)
    assert "above 14.0" in result.reason


def test_phased_bolus_cadence(noon):
    manager = PhasedBolusManager()
    manager.record(noon, 1.0)
    manager.record(noon + timedelta(minutes=10), 0.5)

    assert manager.consecutive_count(noon + timedelta(minutes=15)) == 2
    assert manager.max_consecutive(50.0, night=False) == 5
    assert manager.max_consecutive(80.0, night=False) == 6
    assert manager.max_consecutive(20.0, night=True) == 2
    assert manager.min_interval(8, 50.0, False, 2) == pytest.approx(9.0)

    allowed, reason = manager.can_bolus(noon + timedelta(minutes=15), 50.0, False, 8)
    assert not allowed
    assert reason.startswith("Bolus cadence")
    assert manager.can_bolus(noon + timedelta(minutes=25), 50.0, False, 8)[0]
    # chain resets after a quiet half hour
    assert manager.consecutive_count(noon + timedelta(minutes=45)) == 0


def test_bolus_snapshot_totals(noon):
    manager = PhasedBolusManager()
    manager.record(noon - timedelta(minutes=90), 1.0)
    manager.start_session()
    manager.record(noon - timedelta(minutes=20), 0.8)
    manager.record(noon - timedelta(minutes=5), 0.4)

    snapshot = manager.snapshot(noon, 60)

    assert snapshot.recent_insulin == pytest.approx(1.2)
    assert snapshot.session_insulin == pytest.approx(1.2)
    assert snapshot.consecutive == 2
    assert snapshot.minutes_since_last(noon) == pytest.approx(5.0)


def test_hybrid_split_runs_once(samples, context, observation, noon):
    ctx = context(hybrid_basal_perc=50.0)
    obs = observation(samples(STEADY_RISE), ctx)
    tracker = HybridBasalTracker()

    split = tracker.split(ctx, obs, 1.0)

    assert split.basal_units == pytest.approx(0.5)
    assert split.bolus == pytest.approx(0.5)
    assert split.basal_rate == pytest.approx(3.0)
    assert tracker.split(ctx, obs, 1.0).basal_units == 0.0
    assert tracker.current(noon + timedelta(minutes=10)) is None

    tracker.split(ctx, obs, 1.0)
    tracker.stop("hypo")
    assert tracker.active is None


def test_hybrid_disabled_keeps_full_bolus(samples, context, observation):
    ctx = context()
    split = HybridBasalTracker().split(ctx, observation(samples(STEADY_RISE), ctx), 1.0)

    assert split.bolus == pytest.approx(1.0)
    assert split.percentage == 0.0


def test_persistent_high_with_cooldown(samples, context, observation, noon):
    ctx = context()
    obs = observation(samples([11.0] * 8), ctx)
    rule = PersistentHighRule()

    proposal = rule.propose(ctx, obs)
    assert proposal.dose == pytest.approx(0.5)
    assert proposal.reason.startswith("Persistent high BG 11.0")

    rule.mark_fired(noon)
    assert rule.propose(ctx, obs) is None


def test_persistent_high_needs_stable_glucose(samples, context, observation):
    ctx = context()
    obs = observation(samples([9.0, 9.5, 10.0, 10.5, 11.0, 11.5, 12.0, 12.5]), ctx)

    assert PersistentHighRule().propose(ctx, obs) is None


def test_carb_detector_is_stricter_at_night(samples, context, observation):
    slow_rise = [6.0, 6.15, 6.3, 6.45, 6.6, 6.75]
    night = datetime(2026, 3, 4, 2, 0)
    day_ctx, night_ctx = context(), context(now=night)

    by_day = CarbDetector().detect(day_ctx, observation(samples(slow_rise), day_ctx))
    by_night = CarbDetector().detect(night_ctx, observation(samples(slow_rise, end=night), night_ctx))

    assert by_day.source == "moderate_rise"
    assert by_day.carbs == pytest.approx(14.4)
    assert by_night.carbs == 0.0
