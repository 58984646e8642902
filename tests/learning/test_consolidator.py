from datetime import timedelta

import pytest

from fcl.api.interfaces import FixedClock
from fcl.api.models import AdviceDirection, ParameterAdvice
from fcl.core.config import EngineConfig
from fcl.learning.consolidator import AdviceConsolidator, apply_symmetry_correction, count_direction_flips
from fcl.learning.parameter_store import ParameterStateStore
from fcl.utils.persistence import InMemoryStore


def _advice(name, current, recommended, confidence, when):
    direction = AdviceDirection.INCREASE if recommended > current else AdviceDirection.DECREASE
    return ParameterAdvice(name, current, recommended, direction, confidence, "meal", when)


def _consolidator(noon, store=None, config=None):
    parameters = ParameterStateStore(store=store, clock=FixedClock(noon))
    return AdviceConsolidator(parameters, store=store, clock=FixedClock(noon), config=config)


def test_opposite_advice_is_discounted_not_cancelled(noon):
    consolidator = _consolidator(noon)
    consolidator.add(
        [
            _advice("bolus_perc_rising", 100.0, 110.0, 0.8, noon - timedelta(hours=1)),
            _advice("bolus_perc_rising", 100.0, 90.0, 0.8, noon - timedelta(hours=1)),
        ],
        noon,
    )

    entry = consolidator.consolidate(noon).entries["bolus_perc_rising"]

    assert entry.confidence == pytest.approx(0.64)
    assert entry.advice_count == 2
    assert entry.weighted_value == pytest.approx(100.0)
    assert entry.trend == "stable"


@pytest.mark.parametrize(
    "directions, expected",
    [
        (["inc"], [0.8]),
        (["inc", "dec"], [0.64, 0.64]),
        (["inc", "inc", "dec"], [0.64, 0.64, 0.64]),
        (["inc", "inc", "inc", "dec"], [0.64, 0.64, 0.64, 0.8]),
        (["dec", "dec"], [0.64, 0.64]),
    ],
)
def test_symmetry_correction(noon, directions, expected):
    advices = [
        _advice("carb_percentage", 100.0, 110.0 if d == "inc" else 90.0, 0.8, noon) for d in directions
    ]

    corrected = apply_symmetry_correction(advices, 0.8)

    assert [a.confidence for a in corrected] == pytest.approx(expected)
    assert [a.confidence for a in advices] == pytest.approx([0.8] * len(advices))


def test_symmetry_factor_is_configurable(noon):
    consolidator = _consolidator(noon, config=EngineConfig(symmetry_factor=0.5))
    consolidator.add(
        [
            _advice("carb_percentage", 100.0, 110.0, 0.8, noon),
            _advice("carb_percentage", 100.0, 90.0, 0.8, noon),
        ],
        noon,
    )

    assert consolidator.consolidate(noon).entries["carb_percentage"].confidence == pytest.approx(0.4)


def test_recent_confident_advice_dominates(noon):
    consolidator = _consolidator(noon)
    consolidator.add(
        [
            _advice("carb_percentage", 100.0, 120.0, 0.9, noon),
            _advice("carb_percentage", 100.0, 120.0, 0.4, noon - timedelta(hours=60)),
        ],
        noon,
    )
    # two increases: lopsided window, both discounted the same
    entry = consolidator.consolidate(noon).entries["carb_percentage"]

    assert entry.weighted_value == pytest.approx(120.0)
    assert entry.trend == "increasing"
    assert entry.confidence == pytest.approx((0.72 * 0.72 + 0.16 * 0.32) / (0.72 + 0.16))


def test_weak_and_stale_advice_is_ignored(noon):
    consolidator = _consolidator(noon)
    consolidator.add(
        [
            _advice("carb_percentage", 100.0, 110.0, 0.2, noon),
            _advice("iob_corr_perc", 100.0, 90.0, 0.9, noon - timedelta(hours=80)),
        ],
        noon,
    )

    assert consolidator.consolidate(noon).entries == {}


def test_locked_parameter_is_skipped(noon):
    consolidator = _consolidator(noon)
    consolidator.parameters.register_manual_adjustment("carb_percentage", 110.0, noon)
    consolidator.add([_advice("carb_percentage", 110.0, 120.0, 0.9, noon)], noon)

    assert "carb_percentage" not in consolidator.consolidate(noon).entries


def test_direction_churn_penalty(noon):
    consolidator = _consolidator(noon)
    advices = [
        _advice("carb_percentage", 100.0, 110.0 if i % 2 == 0 else 90.0, 0.8, noon - timedelta(hours=4 - i))
        for i in range(4)
    ]
    consolidator.add(advices, noon)

    assert count_direction_flips(advices) == 3
    entry = consolidator.consolidate(noon).entries["carb_percentage"]
    assert entry.confidence == pytest.approx(0.64 * 0.7)


def test_coherent_rising_and_plateau_shift_into_day(noon):
    consolidator = _consolidator(noon)
    consolidator.add(
        [
            _advice("bolus_perc_rising", 100.0, 110.0, 0.8, noon),
            _advice("bolus_perc_plateau", 60.0, 66.0, 0.7, noon),
        ],
        noon,
    )

    entries = consolidator.consolidate(noon).entries

    day = entries["bolus_perc_day"]
    assert day.weighted_value == pytest.approx(110.0)
    assert day.confidence == pytest.approx(0.6)
    assert day.trend == "increasing"
    assert entries["bolus_perc_rising"].weighted_value == pytest.approx(100.0)
    assert entries["bolus_perc_plateau"].weighted_value == pytest.approx(60.0)


def test_coherence_absorbs_only_the_smaller_change(noon):
    consolidator = _consolidator(noon)
    consolidator.add(
        [
            _advice("bolus_perc_rising", 100.0, 120.0, 0.8, noon),
            _advice("bolus_perc_plateau", 60.0, 63.0, 0.8, noon),
        ],
        noon,
    )

    entries = consolidator.consolidate(noon).entries

    assert entries["bolus_perc_day"].weighted_value == pytest.approx(105.0)
    assert entries["bolus_perc_rising"].weighted_value == pytest.approx(115.0)
    assert entries["bolus_perc_plateau"].weighted_value == pytest.approx(60.0)


def test_conflicting_directions_are_left_alone(noon):
    consolidator = _consolidator(noon)
    consolidator.add(
        [
            _advice("bolus_perc_rising", 100.0, 110.0, 0.8, noon),
            _advice("bolus_perc_plateau", 60.0, 54.0, 0.8, noon),
        ],
        noon,
    )

    entries = consolidator.consolidate(noon).entries

    assert "bolus_perc_day" not in entries
    assert entries["bolus_perc_rising"].weighted_value == pytest.approx(110.0)
    assert entries["bolus_perc_plateau"].weighted_value == pytest.approx(54.0)


def test_submit_feeds_parameter_store(noon):
    consolidator = _consolidator(noon)

    results = [
        consolidator.submit([_advice("carb_percentage", 100.0, 110.0, 0.9, noon)], noon) for _ in range(3)
    ]

    assert results[0] == [] and results[1] == []
    assert len(results[2]) == 1
    assert results[2][0].recommended_value == pytest.approx(105.0)
    assert consolidator.parameters.value("carb_percentage") == pytest.approx(105.0)


def test_old_advice_is_not_recounted_by_later_submits(noon):
    consolidator = _consolidator(noon)
    start = noon - timedelta(hours=3)
    consolidator.submit([_advice("bolus_perc_rising", 100.0, 110.0, 0.8, start)], start)

    emitted = []
    for hours in (2, 1, 0):
        when = noon - timedelta(hours=hours)
        emitted += consolidator.submit([_advice("carb_percentage", 100.0, 110.0, 0.9, when)], when)

    assert [a.parameter_name for a in emitted] == ["carb_percentage"]
    assert consolidator.parameters.value("bolus_perc_rising") == pytest.approx(100.0)
    assert consolidator.parameters.state("bolus_perc_rising").pending_events == 1
    assert consolidator.parameters.value("carb_percentage") == pytest.approx(105.0)


def test_history_is_bounded(noon):
    consolidator = _consolidator(noon, config=EngineConfig(advice_history_limit=3))
    consolidator.add(
        [_advice("carb_percentage", 100.0, 110.0, 0.9, noon - timedelta(hours=i)) for i in range(5)]
        + [_advice("carb_percentage", 100.0, 110.0, 0.9, noon - timedelta(days=40))],
        noon,
    )

    kept = consolidator.history("carb_percentage")
    assert len(kept) == 3
    assert kept[-1].timestamp == noon


def test_history_and_result_survive_restart(noon):
    store = InMemoryStore()
    consolidator = _consolidator(noon, store=store)
    consolidator.add([_advice("carb_percentage", 100.0, 110.0, 0.9, noon)], noon)
    result = consolidator.consolidate(noon)

    restored = _consolidator(noon, store=store)

    assert [a.to_dict() for a in restored.history("carb_percentage")] == [
        a.to_dict() for a in consolidator.history("carb_percentage")
    ]
    assert restored.latest.to_dict() == result.to_dict()
