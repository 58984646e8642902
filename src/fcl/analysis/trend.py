"""
Trend and phase analysis over a short glucose window.

All slopes are in mmol/L per hour. Every function here is pure: the same
window and settings always give the same result.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Sequence

import numpy as np

from fcl.api.models import BGSample, TrendPhase, TrendState
from fcl.core.config import DEFAULT_ENGINE_CONFIG, EngineConfig


def _hours_between(a: BGSample, b: BGSample) -> float:
    return (b.timestamp - a.timestamp).total_seconds() / 3600.0


def exponential_smoothing(values: Sequence[float], alpha: float) -> np.ndarray:
    smoothed = np.empty(len(values), dtype=float)
    if len(values) == 0:
        return smoothed
    smoothed[0] = values[0]
    for i in range(1, len(values)):
        smoothed[i] = alpha * values[i] + (1.0 - alpha) * smoothed[i - 1]
    return smoothed


def segment_slopes(samples: Sequence[BGSample], values: Optional[Sequence[float]] = None) -> List[float]:
    """Per-segment slopes; segments without elapsed time are skipped."""
    series = [s.bg for s in samples] if values is None else list(values)
    slopes: List[float] = []
    for i in range(len(samples) - 1):
        hours = _hours_between(samples[i], samples[i + 1])
        if hours <= 0:
            continue
        slopes.append((series[i + 1] - series[i]) / hours)
    return slopes


def weighted_derivative(slopes: Sequence[float]) -> float:
    """Most recent segment weighs 1, the one before 1/2, then 1/3..."""
    if not slopes:
        return 0.0
    n = len(slopes)
    weights = np.array([1.0 / (1.0 + (n - 1 - i)) for i in range(n)])
    return float(np.dot(weights, np.asarray(slopes, dtype=float)) / weights.sum())


def second_derivative(slopes: Sequence[float]) -> float:
    tail = list(slopes)[-3:]
    if len(tail) < 2:
        return 0.0
    diffs = np.diff(np.asarray(tail, dtype=float))
    return float(diffs.mean())


def direction_consistency(deltas: Sequence[float], sensitivity: float) -> float:
    noise = max(0.02, 0.15 * sensitivity)
    significant = [d for d in deltas if abs(d) > noise]
    if not significant:
        return 0.0
    positives = sum(1 for d in significant if d > 0)
    negatives = len(significant) - positives
    return max(positives, negatives) / len(significant)


def magnitude_consistency(deltas: Sequence[float]) -> float:
    significant = np.array([abs(d) for d in deltas if abs(d) > 0.05], dtype=float)
    if significant.size == 0:
        return 0.0
    return float(math.exp(-5.0 * float(significant.var())))


def pattern_consistency(deltas: Sequence[float]) -> float:
    if len(deltas) < 2:
        return 0.3
    non_decreasing = all(d >= -0.1 for d in deltas)
    non_increasing = all(d <= 0.1 for d in deltas)
    if non_decreasing or non_increasing:
        return 0.9
    second = np.diff(np.asarray(deltas, dtype=float))
    if np.all(np.abs(second) <= 0.1):
        return 0.7
    return 0.3


def classify_phase(
    derivative: float,
    slopes: Sequence[float],
    rising_threshold: float,
    plateau_threshold: float,
    config: EngineConfig = DEFAULT_ENGINE_CONFIG,
) -> TrendPhase:
    """
    Map a derivative onto a phase. Strictly above the rising threshold is
    Rising; at or below the plateau threshold (in magnitude) is Plateau.
    """
    if derivative < config.declining_threshold:
        return TrendPhase.DECLINING
    if derivative > rising_threshold:
        return TrendPhase.RISING
    if abs(derivative) <= plateau_threshold:
        return TrendPhase.PLATEAU
    recent = list(slopes)[-(config.sustained_rise_min_slopes + 1):]
    positive = sum(1 for s in recent if s > 0.1)
    if positive >= config.sustained_rise_min_slopes and derivative > config.sustained_rise_ratio * rising_threshold:
        return TrendPhase.RISING
    return TrendPhase.PLATEAU


def transition_factor(derivative: float, rising_threshold: float) -> float:
    if rising_threshold <= 0:
        return 1.0
    steepness = max(0.0, min(1.0, derivative / (2.0 * rising_threshold)))
    return 0.7 + 0.3 * steepness


@dataclass
class TrendSettings:
    smoothing_alpha: float = 0.4
    rising_threshold: float = 1.0
    plateau_threshold: float = 0.4
    sensitivity: float = 0.35


class TrendAnalyzer:
    """Computes a TrendState from the tail of a glucose history."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or DEFAULT_ENGINE_CONFIG

    def analyze(self, samples: Sequence[BGSample], settings: Optional[TrendSettings] = None) -> TrendState:
        settings = settings or TrendSettings()
        cfg = self.config
        if len(samples) < cfg.trend_min_samples:
            return TrendState.uncertain(len(samples))

        window = [
            s for s in list(samples)[-cfg.trend_window_size:]
            if cfg.valid_bg_min < s.bg < cfg.valid_bg_max
        ]
        if len(window) < cfg.trend_min_valid_samples:
            return TrendState.uncertain(len(window))

        smoothed = exponential_smoothing([s.bg for s in window], settings.smoothing_alpha)
        slopes = segment_slopes(window, smoothed)
        if not slopes:
            return TrendState.uncertain(len(window))

        derivative = weighted_derivative(slopes)
        deltas = [b.bg - a.bg for a, b in zip(window, window[1:])]
        consistency = (
            cfg.direction_weight * direction_consistency(deltas, settings.sensitivity)
            + cfg.magnitude_weight * magnitude_consistency(deltas)
            + cfg.pattern_weight * pattern_consistency(deltas)
        )
        phase = classify_phase(
            derivative, slopes, settings.rising_threshold, settings.plateau_threshold, cfg
        )
        return TrendState(
            first_derivative=derivative,
            second_derivative=second_derivative(slopes),
            consistency=max(0.0, min(1.0, consistency)),
            phase=phase,
            transition_factor=transition_factor(derivative, settings.rising_threshold),
            data_points=len(window),
        )


# Point-based helpers on the raw (unsmoothed) history.

def recent_trend(samples: Sequence[BGSample], points_back: int = 2) -> float:
    if len(samples) <= points_back:
        return 0.0
    past, current = samples[-1 - points_back], samples[-1]
    hours = _hours_between(past, current)
    if hours <= 0:
        return 0.0
    return (current.bg - past.bg) / hours


def short_term_trend(samples: Sequence[BGSample]) -> float:
    """Slope against a reading 15-20 minutes back, else the last one older than 10 minutes."""
    if len(samples) < 4:
        return 0.0
    current = samples[-1]
    lower = current.timestamp - timedelta(minutes=20)
    upper = current.timestamp - timedelta(minutes=15)
    past = next((s for s in reversed(samples) if lower <= s.timestamp <= upper), None)
    if past is None:
        cutoff = current.timestamp - timedelta(minutes=10)
        past = next((s for s in reversed(samples) if s.timestamp < cutoff), None)
    if past is None:
        return 0.0
    hours = _hours_between(past, current)
    if hours <= 0:
        return 0.0
    return (current.bg - past.bg) / hours


def acceleration(samples: Sequence[BGSample], points: int = 2) -> float:
    """Change of the two-point slope between now and `points` readings back, per hour."""
    if len(samples) <= points * 2:
        return 0.0
    last = len(samples) - 1
    recent = recent_trend(samples[last - 1:last + 1], 1)
    start = max(0, last - points)
    previous = recent_trend(samples[start:start + 2], 1)
    hours = _hours_between(samples[start + 1], samples[last])
    if hours <= 0:
        return 0.0
    return (recent - previous) / hours


def count_declines(samples: Sequence[BGSample], threshold: float = 0.1) -> int:
    return sum(1 for a, b in zip(samples, samples[1:]) if b.bg < a.bg - threshold)


def count_rises(samples: Sequence[BGSample], threshold: float = 0.1) -> int:
    return sum(1 for a, b in zip(samples, samples[1:]) if b.bg > a.bg + threshold)


def consistent_decline(samples: Sequence[BGSample]) -> bool:
    if len(samples) < 3:
        return False
    return count_declines(samples[-3:]) >= 2


def consistent_rise(samples: Sequence[BGSample], points: int = 3) -> bool:
    if len(samples) < points + 1:
        return False
    return count_rises(samples[-(points + 1):]) >= points


def volatility(samples: Sequence[BGSample]) -> float:
    if len(samples) < 2:
        return 0.0
    return float(np.mean([abs(b.bg - a.bg) for a, b in zip(samples, samples[1:])]))


def is_at_peak_or_declining(samples: Sequence[BGSample]) -> bool:
    if len(samples) < 6:
        return False
    recent = list(samples[-6:])
    trend = recent_trend(samples, 2)
    values = [s.bg for s in recent]
    max_index = int(np.argmax(values))
    clear_peak = 2 <= max_index <= 4 and values[-1] < values[max_index] - 0.5
    tail = values[-4:]
    plateau = (max(tail) - min(tail)) < 0.4 and trend < 0.8
    decelerating = acceleration(samples, 2) < -0.3 and trend < 1.5
    declining = count_declines(recent) >= 3
    return clear_peak or plateau or decelerating or declining


def is_reversing_to_decline(samples: Sequence[BGSample]) -> bool:
    if len(samples) < 5:
        return False
    trend = recent_trend(samples, 2)
    if acceleration(samples, 2) < -0.3:
        return True
    if short_term_trend(samples) < 0 and trend > 1.0:
        return True
    return count_declines(samples[-3:]) >= 2
