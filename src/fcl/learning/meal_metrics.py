from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from fcl.api.models import MealDataPoint, MealSession
from fcl.core.config import DEFAULT_ENGINE_CONFIG, EngineConfig


@dataclass
class MealMetrics:
    """Outcome of one closed meal."""
    peak_bg: float
    time_to_peak: float  # minutes
    time_to_first_bolus: Optional[float]  # minutes, None without a bolus
    decline_rate: float  # mmol/L/h over the last readings
    rapid_decline: bool
    post_meal_hypo: bool
    time_in_range: float  # fraction 0..1
    max_iob: float
    virtual_hypo_score: float
    min_bg: float
    total_insulin: float = 0.0
    detection_score: float = 1.0

    def to_dict(self) -> Dict:
        return {
            "peak_bg": self.peak_bg,
            "time_to_peak": self.time_to_peak,
            "time_to_first_bolus": self.time_to_first_bolus,
            "decline_rate": self.decline_rate,
            "rapid_decline": self.rapid_decline,
            "post_meal_hypo": self.post_meal_hypo,
            "time_in_range": self.time_in_range,
            "max_iob": self.max_iob,
            "virtual_hypo_score": self.virtual_hypo_score,
            "min_bg": self.min_bg,
            "total_insulin": self.total_insulin,
            "detection_score": self.detection_score,
        }


def virtual_hypo_score(decline_rate: float, average_iob: float, min_bg: float) -> float:
    """0-8 estimate of how close a meal came to a hypo without actually reaching one."""
    score = min(abs(min(0.0, decline_rate)) * 0.5, 3.0)
    if average_iob > 2.0:
        score += 1.0
    if average_iob > 3.0:
        score += 1.0
    if min_bg < 4.5:
        score += 1.0
    if min_bg < 4.0:
        score += 1.0
    return min(score, 8.0)


def _minutes(points: List[MealDataPoint], index: int) -> float:
    return (points[index].timestamp - points[0].timestamp).total_seconds() / 60.0


def extract_metrics(session: MealSession, config: Optional[EngineConfig] = None) -> Optional[MealMetrics]:
    config = config or DEFAULT_ENGINE_CONFIG
    points = [p for p in session.data_points if 2.0 <= p.bg <= 25.0]
    if len(points) < 3:
        return None

    bgs = np.array([p.bg for p in points], dtype=float)
    iobs = np.array([p.iob for p in points], dtype=float)
    peak_index = int(np.argmax(bgs))

    first_bolus = next((i for i, p in enumerate(points) if p.insulin_delivered > 0.1), None)
    time_to_first_bolus = _minutes(points, first_bolus) if first_bolus is not None else None

    tail = points[-4:]
    hours = (tail[-1].timestamp - tail[0].timestamp).total_seconds() / 3600.0
    decline_rate = (tail[-1].bg - tail[0].bg) / hours if hours > 0 else 0.0

    after_peak = iobs[peak_index:]
    average_iob = float(after_peak.mean()) if after_peak.size else 0.0
    min_bg = float(bgs.min())
    in_range = (bgs >= config.tir_low) & (bgs <= config.tir_high)

    return MealMetrics(
        peak_bg=float(bgs[peak_index]),
        time_to_peak=_minutes(points, peak_index),
        time_to_first_bolus=time_to_first_bolus,
        decline_rate=decline_rate,
        rapid_decline=decline_rate < -2.0,
        post_meal_hypo=bool(min_bg < config.tir_low),
        time_in_range=float(in_range.mean()),
        max_iob=float(iobs.max()),
        virtual_hypo_score=virtual_hypo_score(decline_rate, average_iob, min_bg),
        min_bg=min_bg,
        total_insulin=session.total_insulin,
        detection_score=session.detection_confidence if session.detected_carbs > 0 else 0.0,
    )
