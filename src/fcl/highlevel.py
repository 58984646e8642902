from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import pandas as pd

from fcl.api.interfaces import FixedClock, InMemoryHistoryProvider
from fcl.api.models import BGSample, DoseDecision
from fcl.core.config import EngineConfig
from fcl.core.preferences import PreferenceStore
from fcl.engine import FCLEngine
from fcl.utils.persistence import PersistentKeyValueStore
from fcl.utils.telemetry import TelemetryLog, read_glucose_csv
from fcl.validation import load_preferences
from fcl.validation.schemas import PreferencesModel

PreferencesLike = Union[None, str, Path, Dict[str, Any], PreferencesModel, PreferenceStore]


def resolve_preferences(preferences: PreferencesLike) -> PreferenceStore:
    if preferences is None:
        return PreferenceStore()
    if isinstance(preferences, PreferenceStore):
        return preferences
    if isinstance(preferences, PreferencesModel):
        return PreferenceStore(preferences)
    if isinstance(preferences, dict):
        return PreferenceStore(**preferences)
    return PreferenceStore(load_preferences(preferences))


def decide(
    samples: Sequence[BGSample],
    preferences: PreferencesLike = None,
    now: Optional[datetime] = None,
) -> DoseDecision:
    """
    One-shot decision for a glucose window with a fresh engine.

    No learned state or reserved doses carry over; use FCLEngine for a
    running loop.
    """
    if now is None:
        now = samples[-1].timestamp if samples else datetime.now()
    engine = FCLEngine(preferences=resolve_preferences(preferences), clock=FixedClock(now))
    return engine.tick(list(samples))


def samples_from_frame(df: pd.DataFrame) -> List[BGSample]:
    return [
        BGSample(timestamp=row.timestamp.to_pydatetime(), bg=float(row.bg), iob=float(row.iob))
        for row in df.itertuples(index=False)
    ]


def replay(
    glucose: Union[str, Path, pd.DataFrame],
    preferences: PreferencesLike = None,
    config: Optional[EngineConfig] = None,
    store: Optional[PersistentKeyValueStore] = None,
    telemetry: Optional[TelemetryLog] = None,
    history_minutes: int = 180,
) -> pd.DataFrame:
    """
    Run the engine tick by tick over a recorded glucose trace.

    The clock follows the trace. Closed meals are optimized synchronously
    after the tick that closed them.
    """
    df = glucose if isinstance(glucose, pd.DataFrame) else read_glucose_csv(glucose)
    samples = samples_from_frame(df)
    if not samples:
        return pd.DataFrame()

    clock = FixedClock(samples[0].timestamp)
    provider = InMemoryHistoryProvider(max_minutes=max(history_minutes, 360))
    engine = FCLEngine(
        preferences=resolve_preferences(preferences),
        config=config,
        store=store,
        clock=clock,
        history=provider,
        telemetry=telemetry,
        history_minutes=history_minutes,
    )

    rows: List[Dict[str, Any]] = []
    for sample in samples:
        clock.set(sample.timestamp)
        provider.add(sample)
        decision = engine.tick()
        if engine.worker.pending:
            engine.run_optimizer(sample.timestamp)
        row = decision.to_dict()
        row["timestamp"] = sample.timestamp
        row["bg"] = sample.bg
        row["iob"] = sample.iob
        rows.append(row)
    engine.close()
    return pd.DataFrame(rows)
