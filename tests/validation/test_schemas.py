import pytest
import yaml
from pydantic import ValidationError

from fcl.core.errors import ConfigError
from fcl.validation import (
    PreferencesModel,
    format_validation_error,
    load_engine_config,
    load_preferences,
    validate_preferences_dict,
)


def _write(path, data):
    path.write_text(yaml.safe_dump(data))
    return path


def test_defaults_round_trip_through_yaml(tmp_path):
    path = _write(tmp_path / "prefs.yaml", PreferencesModel().model_dump())

    assert load_preferences(path) == PreferencesModel()


def test_partial_file_keeps_defaults(tmp_path):
    path = _write(tmp_path / "prefs.yaml", {"isf": 6.5, "weekend_days": ["Fri", "Sat"]})

    model = load_preferences(path)

    assert model.isf == pytest.approx(6.5)
    assert model.weekend_days == "fri,sat"
    assert model.carb_ratio == pytest.approx(7.0)


@pytest.mark.parametrize(
    "data, field",
    [
        ({"night_start": "25:00"}, "night_start"),
        ({"bolus_perc_night": 150}, "bolus_perc_night"),
        ({"weekend_days": "sat,funday"}, "weekend_days"),
        ({"unknown_knob": 1}, "unknown_knob"),
    ],
)
def test_invalid_preferences_are_reported(data, field):
    with pytest.raises(ValidationError) as excinfo:
        validate_preferences_dict(data)

    lines = format_validation_error(excinfo.value)
    assert any(line.startswith(field) for line in lines)


def test_slope_order_is_a_model_error():
    with pytest.raises(ValidationError) as excinfo:
        validate_preferences_dict({"phase_rising_slope": 0.5, "phase_plateau_slope": 0.6})

    assert "phase_plateau_slope must be below" in " ".join(format_validation_error(excinfo.value))


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError):
        load_preferences(tmp_path / "absent.yaml")


def test_non_mapping_file_is_config_error(tmp_path):
    path = tmp_path / "prefs.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigError):
        load_preferences(path)


def test_empty_file_means_defaults(tmp_path):
    path = tmp_path / "prefs.yaml"
    path.write_text("")

    assert load_preferences(path) == PreferencesModel()


def test_engine_config_overrides_only_given_keys(tmp_path):
    path = _write(
        tmp_path / "engine.yaml",
        {"symmetry_factor": 0.5, "optimizer_step_sizes": [0.1, 0.05]},
    )

    config = load_engine_config(path)

    assert config.symmetry_factor == pytest.approx(0.5)
    assert config.optimizer_step_sizes == (0.05, 0.1)
    assert config.coherence_day_confidence_cap == pytest.approx(0.6)


def test_engine_config_rejects_unknown_keys(tmp_path):
    path = _write(tmp_path / "engine.yaml", {"symmetry_fudge": 0.5})

    with pytest.raises(ValidationError):
        load_engine_config(path)
