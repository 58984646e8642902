"""Unannounced-meal carb detection and carbs-on-board tracking."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from fcl.api.models import BGSample
from fcl.core.dosing.context import DosingContext, Observation


@dataclass(frozen=True)
class CarbEstimate:
    carbs: float = 0.0
    confidence: float = 0.0
    source: str = "none"

    @property
    def meal_detected(self) -> bool:
        return self.carbs > 10.0 and self.confidence > 0.4


def slope_over(samples: Sequence[BGSample], minutes: int) -> float:
    """Slope in mmol/L/h between the latest reading and the newest one at least `minutes` older."""
    if len(samples) < 2:
        return 0.0
    current = samples[-1]
    cutoff = current.timestamp - timedelta(minutes=minutes)
    past = next((s for s in reversed(samples[:-1]) if s.timestamp <= cutoff), None)
    if past is None:
        past = samples[0]
    hours = (current.timestamp - past.timestamp).total_seconds() / 3600.0
    if hours <= 0:
        return 0.0
    return (current.bg - past.bg) / hours


def iob_reduction(iob_ratio: float) -> float:
    if iob_ratio > 0.8:
        return 0.3
    if iob_ratio > 0.6:
        return 0.5
    if iob_ratio > 0.4:
        return 0.7
    if iob_ratio > 0.2:
        return 0.85
    return 1.0


def iob_carb_ceiling(iob_ratio: float) -> float:
    if iob_ratio > 0.75:
        return 40.0
    if iob_ratio > 0.5:
        return 60.0
    if iob_ratio > 0.25:
        return 80.0
    return 100.0


def size_confidence(carbs: float) -> float:
    if carbs > 30:
        return 0.9
    if carbs > 20:
        return 0.8
    if carbs > 10:
        return 0.7
    return 0.5


@dataclass(frozen=True)
class DetectionTiers:
    """Slope tiers and carb multipliers for one time of day."""
    rapid_slope: float = 5.0
    rapid_multiplier: float = 12.0
    trend_min_carbs: float = 20.0
    trend_min_consistency: float = 0.6
    unexplained_factor: float = 0.7
    moderate_slope: float = 1.5
    moderate_margin: float = 0.3
    moderate_multiplier: float = 8.0
    carb_cap: Optional[float] = None


DAY_TIERS = DetectionTiers()
NIGHT_TIERS = DetectionTiers(
    rapid_slope=6.0,
    rapid_multiplier=8.0,
    trend_min_carbs=25.0,
    trend_min_consistency=0.7,
    unexplained_factor=1.0,
    moderate_slope=2.0,
    moderate_margin=0.8,
    moderate_multiplier=6.0,
    carb_cap=25.0,
)


class CarbDetector:
    def __init__(self, day: DetectionTiers = DAY_TIERS, night: DetectionTiers = NIGHT_TIERS):
        self.day = day
        self.night = night

    def detect(self, ctx: DosingContext, obs: Observation) -> CarbEstimate:
        samples = obs.samples
        if len(samples) < 3:
            return CarbEstimate()

        tiers = self.night if ctx.night else self.day
        slope10 = slope_over(samples, 10)
        consistency = obs.trend.consistency
        math_carbs = max(0.0, obs.trend.first_derivative) * 8.0
        unexplained = self._unexplained_rise(ctx, samples)

        carbs, confidence, source = 0.0, 0.0, "none"
        if slope10 > tiers.rapid_slope:
            carbs, confidence, source = slope10 * tiers.rapid_multiplier, 0.8, "rapid_rise"
        elif math_carbs > tiers.trend_min_carbs and consistency > tiers.trend_min_consistency:
            carbs, confidence, source = math_carbs, 0.7, "trend"
        elif unexplained > ctx.meal_sensitivity * tiers.unexplained_factor:
            carbs, confidence, source = unexplained * ctx.carb_ratio, 0.6, "unexplained_rise"
        elif (
            slope10 > tiers.moderate_slope
            and obs.bg > ctx.target_bg + tiers.moderate_margin
            and consistency > 0.4
        ):
            carbs, confidence, source = slope10 * tiers.moderate_multiplier, 0.5, "moderate_rise"

        if carbs <= 0:
            return CarbEstimate()

        carbs *= iob_reduction(obs.iob_ratio)
        carbs *= ctx.carb_percentage / 100.0
        carbs = min(carbs, iob_carb_ceiling(obs.iob_ratio))
        if tiers.carb_cap is not None:
            carbs = min(carbs, tiers.carb_cap)
        confidence *= size_confidence(carbs)
        return CarbEstimate(carbs=round(carbs, 1), confidence=confidence, source=source)

    @staticmethod
    def _unexplained_rise(ctx: DosingContext, samples: Sequence[BGSample]) -> float:
        """BG rise over ~15 minutes that insulin on board would not explain."""
        if len(samples) < 4:
            return 0.0
        past, current = samples[-4], samples[-1]
        rise = current.bg - past.bg
        hours = (current.timestamp - past.timestamp).total_seconds() / 3600.0
        expected_drop = current.iob * ctx.isf * hours / 3.0
        return max(0.0, (rise + expected_drop) / max(1.0, ctx.isf))


@dataclass
class ActiveCarbs:
    timestamp: datetime
    carbs: float

    def remaining(self, now: datetime, tau_minutes: float) -> float:
        minutes = max(0.0, (now - self.timestamp).total_seconds() / 60.0)
        return self.carbs * math.exp(-minutes / max(1.0, tau_minutes))


@dataclass
class CarbsOnBoard:
    """Exponential absorption of detected carbs."""
    entries: List[ActiveCarbs] = field(default_factory=list)
    depleted_below: float = 1.0
    merge_minutes: int = 30

    def add(self, timestamp: datetime, carbs: float, tau_minutes: float) -> None:
        """Record a detection; repeat detections of the same meal keep the larger estimate."""
        if carbs <= 0:
            return
        recent: Optional[ActiveCarbs] = None
        for entry in self.entries:
            if (timestamp - entry.timestamp) <= timedelta(minutes=self.merge_minutes):
                recent = entry
        if recent is not None:
            if carbs > recent.remaining(timestamp, tau_minutes):
                recent.carbs = carbs
                recent.timestamp = timestamp
            return
        self.entries.append(ActiveCarbs(timestamp, carbs))

    def total(self, now: datetime, tau_minutes: float) -> float:
        self.entries = [e for e in self.entries if e.remaining(now, tau_minutes) >= self.depleted_below]
        return sum(e.remaining(now, tau_minutes) for e in self.entries)

    def clear(self) -> None:
        self.entries = []
