import pytest

from fcl.analysis import trend
from fcl.analysis.trend import TrendAnalyzer, TrendSettings, classify_phase
from fcl.api.models import TrendPhase


def test_steady_rise_is_rising_with_high_consistency(samples):
    state = TrendAnalyzer().analyze(samples([6.0, 6.5, 7.0, 7.5, 8.0, 8.5]))

    assert state.phase == TrendPhase.RISING
    assert state.first_derivative == pytest.approx(4.8827, abs=1e-3)
    # direction 1.0, magnitude 1.0, pattern 0.9
    assert state.consistency == pytest.approx(0.98)
    assert state.transition_factor == pytest.approx(1.0)
    assert state.data_points == 6


def test_flat_window_is_plateau(samples):
    state = TrendAnalyzer().analyze(samples([7.0] * 6))

    assert state.phase == TrendPhase.PLATEAU
    assert state.first_derivative == pytest.approx(0.0)
    assert state.consistency == pytest.approx(0.18)
    assert state.transition_factor == pytest.approx(0.7)


def test_falling_window_is_declining(samples):
    state = TrendAnalyzer().analyze(samples([9.0, 8.7, 8.4, 8.1, 7.8, 7.5]))

    assert state.phase == TrendPhase.DECLINING
    assert state.first_derivative < -1.0


def test_short_history_is_uncertain(samples):
    state = TrendAnalyzer().analyze(samples([6.0, 6.5, 7.0, 7.5]))

    assert state.phase == TrendPhase.UNCERTAIN
    assert state.data_points == 4


def test_out_of_range_readings_are_ignored(samples):
    analyzer = TrendAnalyzer()

    kept = analyzer.analyze(samples([6.0, 2.5, 6.2, 25.0, 6.4, 6.6]))
    assert kept.phase != TrendPhase.UNCERTAIN
    assert kept.data_points == 4

    dropped = analyzer.analyze(samples([2.5, 25.0, 2.0, 6.0, 6.2, 6.4]))
    assert dropped.phase == TrendPhase.UNCERTAIN


def test_analysis_is_deterministic(samples):
    window = samples([6.0, 6.4, 6.7, 7.3, 7.6, 8.2])
    settings = TrendSettings(smoothing_alpha=0.5)
    analyzer = TrendAnalyzer()

    assert analyzer.analyze(window, settings) == analyzer.analyze(window, settings)


@pytest.mark.parametrize(
    "derivative,slopes,expected",
    [
        (1.0, [], TrendPhase.PLATEAU),  # equal to rising threshold is not rising
        (1.0001, [], TrendPhase.RISING),
        (0.4, [], TrendPhase.PLATEAU),  # equal to plateau threshold is plateau
        (-0.6, [], TrendPhase.PLATEAU),
        (-1.5, [], TrendPhase.DECLINING),
        (0.9, [0.5, 0.8, 0.9, 1.0], TrendPhase.RISING),  # sustained rise
        (0.7, [0.5, 0.8, 0.9, 1.0], TrendPhase.PLATEAU),
        (0.9, [0.5, -0.2, 0.05, 1.0], TrendPhase.PLATEAU),
    ],
)
def test_classify_phase_boundaries(derivative, slopes, expected):
    assert classify_phase(derivative, slopes, 1.0, 0.4) == expected


def test_smoothing_and_derivatives():
    assert list(trend.exponential_smoothing([6.0, 7.0, 8.0], 0.5)) == pytest.approx([6.0, 6.5, 7.25])
    assert trend.weighted_derivative([1.0, 2.0]) == pytest.approx(5.0 / 3.0)
    assert trend.weighted_derivative([]) == 0.0
    assert trend.second_derivative([1.0, 2.0, 4.0]) == pytest.approx(1.5)
    assert trend.second_derivative([1.0]) == 0.0


def test_consistency_components():
    assert trend.direction_consistency([0.5, 0.5, -0.5, 0.0], 0.35) == pytest.approx(2.0 / 3.0)
    assert trend.direction_consistency([0.0, 0.01], 0.35) == 0.0
    assert trend.magnitude_consistency([0.5, 0.5, 0.5]) == pytest.approx(1.0)
    assert trend.magnitude_consistency([0.0, 0.01]) == 0.0
    assert trend.pattern_consistency([0.5, 0.5, 0.5]) == pytest.approx(0.9)
    assert trend.pattern_consistency([0.2, 0.12, 0.04, -0.04, -0.12]) == pytest.approx(0.7)
    assert trend.pattern_consistency([0.5, -0.5, 0.5]) == pytest.approx(0.3)


def test_point_helpers(samples):
    rising = samples([6.0, 6.5, 7.0, 7.5, 8.0, 8.5])

    assert trend.recent_trend(rising, 2) == pytest.approx(6.0)
    assert trend.short_term_trend(rising) == pytest.approx(6.0)
    assert trend.acceleration(rising, 2) == pytest.approx(0.0)
    assert trend.consistent_rise(rising, 3)
    assert not trend.consistent_decline(rising)
    assert trend.volatility(rising) == pytest.approx(0.5)
    assert not trend.is_reversing_to_decline(rising)


def test_peak_detection(samples):
    assert trend.is_at_peak_or_declining(samples([8.0, 9.0, 10.0, 10.2, 9.8, 9.4]))
    assert not trend.is_at_peak_or_declining(samples([8.0, 8.5, 9.0, 9.5, 10.0, 10.5]))
