from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd

from fcl.api.models import BGSample, DoseDecision, ParameterAdvice

logger = logging.getLogger("fcl")

TICK_COLUMNS = [
    "timestamp",
    "bg",
    "iob",
    "dose",
    "delivered",
    "basal_rate",
    "reserved_dose",
    "phase",
    "meal_detected",
    "detected_carbs",
    "carbs_on_board",
    "reason",
]


@dataclass
class TelemetryRecord:
    timestamp: datetime
    bg: float
    iob: float
    dose: float
    delivered: bool
    basal_rate: float
    reserved_dose: float
    phase: str
    meal_detected: bool
    detected_carbs: float
    carbs_on_board: float
    reason: str

    @classmethod
    def from_tick(cls, sample: Optional[BGSample], decision: DoseDecision, now: datetime) -> "TelemetryRecord":
        return cls(
            timestamp=now,
            bg=sample.bg if sample else float("nan"),
            iob=sample.iob if sample else float("nan"),
            dose=decision.dose,
            delivered=decision.deliver,
            basal_rate=decision.basal_rate,
            reserved_dose=decision.reserved_dose,
            phase=decision.phase,
            meal_detected=decision.meal_detected,
            detected_carbs=decision.detected_carbs,
            carbs_on_board=decision.carbs_on_board,
            reason=decision.reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "bg": self.bg,
            "iob": self.iob,
            "dose": self.dose,
            "delivered": self.delivered,
            "basal_rate": self.basal_rate,
            "reserved_dose": self.reserved_dose,
            "phase": self.phase,
            "meal_detected": self.meal_detected,
            "detected_carbs": self.detected_carbs,
            "carbs_on_board": self.carbs_on_board,
            "reason": self.reason,
        }


class TelemetryLog:
    """Append-only CSV logs for tick records and advice. Write failures are logged and ignored."""

    def __init__(self, tick_path: Union[str, Path], advice_path: Optional[Union[str, Path]] = None):
        self.tick_path = Path(tick_path)
        self.advice_path = Path(advice_path) if advice_path else self.tick_path.with_name(
            f"{self.tick_path.stem}_advice.csv"
        )
        self._lock = threading.Lock()

    def _append(self, path: Path, row: Dict[str, Any]) -> bool:
        try:
            with self._lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                frame = pd.DataFrame([row])
                frame.to_csv(path, mode="a", header=not path.exists(), index=False)
        except (OSError, ValueError) as exc:
            logger.warning("Telemetry write to %s failed: %s", path, exc)
            return False
        return True

    def record_tick(self, record: TelemetryRecord) -> bool:
        return self._append(self.tick_path, record.to_dict())

    def record_advice(self, advice: ParameterAdvice) -> bool:
        return self._append(self.advice_path, advice.to_dict())


def read_telemetry(path: Union[str, Path]) -> pd.DataFrame:
    df = pd.read_csv(path)
    if "timestamp" in df.columns:
        df["timestamp"] = pd.to_datetime(df["timestamp"])
    return df


def read_glucose_csv(path: Union[str, Path]) -> pd.DataFrame:
    """Load a timestamp,bg[,iob] CSV, sorted by time."""
    df = pd.read_csv(path)
    missing = {"timestamp", "bg"} - set(df.columns)
    if missing:
        raise ValueError(f"{path}: missing column(s) {sorted(missing)}")
    if "iob" not in df.columns:
        df["iob"] = 0.0
    df["timestamp"] = pd.to_datetime(df["timestamp"])
    return df.sort_values("timestamp").reset_index(drop=True)
