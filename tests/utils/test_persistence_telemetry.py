import json

import pandas as pd
import pytest

from fcl.api.models import AdviceDirection, BGSample, DoseDecision, ParameterAdvice
from fcl.utils.persistence import InMemoryStore, JsonFileStore
from fcl.utils.telemetry import TICK_COLUMNS, TelemetryLog, TelemetryRecord, read_glucose_csv, read_telemetry


def test_in_memory_store_returns_copies():
    store = InMemoryStore()
    payload = {"bolus_perc_rising": {"current_value": 100.0}}
    store.save("parameter_state", payload)

    loaded = store.load("parameter_state")
    loaded["bolus_perc_rising"]["current_value"] = 1.0

    assert store.load("parameter_state") == payload
    assert store.load("missing") is None


def test_in_memory_store_rejects_non_json():
    store = InMemoryStore()

    with pytest.raises(TypeError):
        store.save("bad", {"value": object()})
    assert not store.save_quietly("bad", {"value": object()})


def test_json_file_store_round_trip(tmp_path):
    store = JsonFileStore(tmp_path / "state")
    store.save("consolidated_advice", {"entries": {}, "created_at": None})

    assert (tmp_path / "state" / "consolidated_advice.json").exists()
    assert JsonFileStore(tmp_path / "state").load("consolidated_advice") == {"entries": {}, "created_at": None}


def test_json_file_store_ignores_corrupt_file(tmp_path, caplog):
    (tmp_path / "parameter_state.json").write_text("{not json")
    store = JsonFileStore(tmp_path)

    with caplog.at_level("WARNING", logger="fcl"):
        assert store.load("parameter_state") is None
    assert "unreadable" in caplog.text


def test_telemetry_appends_rows(tmp_path, noon):
    log = TelemetryLog(tmp_path / "ticks.csv")
    decision = DoseDecision(dose=0.5, deliver=True, reason="Correction", phase="plateau", timestamp=noon)

    assert log.record_tick(TelemetryRecord.from_tick(BGSample(noon, 9.0, 0.4), decision, noon))
    assert log.record_tick(TelemetryRecord.from_tick(None, DoseDecision.safe("no data"), noon))

    frame = read_telemetry(tmp_path / "ticks.csv")
    assert list(frame.columns) == TICK_COLUMNS
    assert len(frame) == 2
    assert frame.loc[0, "dose"] == pytest.approx(0.5)
    assert bool(frame.loc[0, "delivered"])
    assert pd.isna(frame.loc[1, "bg"])


def test_telemetry_advice_file_sits_next_to_ticks(tmp_path, noon):
    log = TelemetryLog(tmp_path / "ticks.csv")
    advice = ParameterAdvice("carb_percentage", 100.0, 105.0, AdviceDirection.INCREASE, 0.7, "3 events", noon)

    assert log.record_advice(advice)

    frame = pd.read_csv(tmp_path / "ticks_advice.csv")
    assert frame.loc[0, "parameter_name"] == "carb_percentage"
    assert frame.loc[0, "direction"] == "increase"


def test_telemetry_failure_is_not_raised(tmp_path, noon, caplog):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory")
    log = TelemetryLog(blocker / "ticks.csv")

    with caplog.at_level("WARNING", logger="fcl"):
        assert not log.record_tick(TelemetryRecord.from_tick(None, DoseDecision.safe("x"), noon))
    assert "Telemetry write" in caplog.text


def test_read_glucose_csv_sorts_and_fills_iob(tmp_path):
    path = tmp_path / "cgm.csv"
    path.write_text("timestamp,bg\n2026-03-04 12:05,7.1\n2026-03-04 12:00,6.8\n")

    frame = read_glucose_csv(path)

    assert list(frame["bg"]) == [6.8, 7.1]
    assert list(frame["iob"]) == [0.0, 0.0]
    assert frame["timestamp"].is_monotonic_increasing


def test_read_glucose_csv_requires_bg_column(tmp_path):
    path = tmp_path / "cgm.csv"
    path.write_text("timestamp,glucose\n2026-03-04 12:00,6.8\n")

    with pytest.raises(ValueError, match="bg"):
        read_glucose_csv(path)


def test_sample_serialization(noon):
    sample = BGSample(noon, 7.4, 1.2)

    assert BGSample.from_dict(json.loads(json.dumps(sample.to_dict()))) == sample
