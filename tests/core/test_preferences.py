from datetime import datetime

import pytest

from fcl.core.config import EngineConfig
from fcl.core.errors import ConfigError, ErrorKind, InputError, Result
from fcl.core.parameters import PARAMETER_DEFINITIONS, ParameterId, get_definition, is_learnable
from fcl.core.preferences import PreferenceStore

WEDNESDAY = datetime(2026, 3, 4)
SATURDAY = datetime(2026, 3, 7)


def test_defaults_and_typed_set():
    prefs = PreferenceStore()

    assert prefs.get("max_bolus_day") == pytest.approx(2.5)
    prefs.set("max_bolus_day", 3.0)
    assert prefs.get_float("max_bolus_day") == pytest.approx(3.0)


def test_out_of_range_or_unknown_preference_is_rejected():
    prefs = PreferenceStore()

    with pytest.raises(ConfigError):
        prefs.set("max_bolus_day", 50.0)
    with pytest.raises(ConfigError):
        prefs.set("not_a_setting", 1.0)
    with pytest.raises(ConfigError):
        prefs.get("not_a_setting")
    assert prefs.get("max_bolus_day") == pytest.approx(2.5)


def test_plateau_slope_must_stay_below_rising_slope():
    with pytest.raises(ConfigError):
        PreferenceStore(phase_rising_slope=0.8, phase_plateau_slope=0.9)


@pytest.mark.parametrize(
    "when,night",
    [
        (WEDNESDAY.replace(hour=12), False),
        (WEDNESDAY.replace(hour=23, minute=30), True),
        (WEDNESDAY.replace(hour=2), True),
        (WEDNESDAY.replace(hour=7), False),
        (SATURDAY.replace(hour=7), True),  # weekend day starts at 08:00
        (SATURDAY.replace(hour=8), False),
    ],
)
def test_night_schedule(when, night):
    assert PreferenceStore().is_night(when) is night


def test_max_bolus_follows_schedule():
    prefs = PreferenceStore(max_bolus_day=2.0, max_bolus_night=0.8)

    assert prefs.max_bolus(WEDNESDAY.replace(hour=12)) == pytest.approx(2.0)
    assert prefs.max_bolus(WEDNESDAY.replace(hour=3)) == pytest.approx(0.8)


def test_context_prefers_learned_values(context, noon):
    ctx = context(learned={"bolus_perc_rising": 120.0}, bolus_perc_rising=90.0)

    assert ctx.bolus_perc_rising == pytest.approx(120.0)
    assert ctx.bolus_perc_daynight == pytest.approx(100.0)
    assert ctx.max_bolus == pytest.approx(2.5)
    assert ctx.hypo_threshold == pytest.approx(4.3)


def test_context_at_night(context):
    ctx = context(now=WEDNESDAY.replace(hour=2))

    assert ctx.night
    assert ctx.bolus_perc_daynight == pytest.approx(20.0)
    assert ctx.hypo_threshold == pytest.approx(4.6)
    assert ctx.persistent_threshold == pytest.approx(11.0)


def test_parameter_definitions():
    assert len(PARAMETER_DEFINITIONS) == 10
    assert is_learnable("phase_rising_slope")
    assert not is_learnable("max_bolus_day")
    definition = get_definition(ParameterId.BOLUS_PERC_NIGHT)
    assert definition.clamp(150.0) == pytest.approx(100.0)
    assert definition.policy.max_daily_change_percent == pytest.approx(5.0)
    assert get_definition("phase_plateau_slope").policy.min_events == 2


def test_engine_config_overrides():
    config = EngineConfig().with_overrides({"symmetry_factor": 0.7, "optimizer_step_sizes": [0.05]})

    assert config.symmetry_factor == pytest.approx(0.7)
    assert config.optimizer_step_sizes == (0.05,)
    with pytest.raises(KeyError):
        EngineConfig().with_overrides({"nope": 1})


def test_result_from_exception():
    failed = Result.from_exception(InputError("no data"))
    assert not failed.ok
    assert failed.kind is ErrorKind.INPUT
    assert failed.message == "no data"

    assert Result.from_exception(ZeroDivisionError()).kind is ErrorKind.COMPUTATION
    assert Result.success(3).value == 3
