from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from fcl.analysis import trend as trend_ops
from fcl.analysis.trend import TrendAnalyzer, TrendSettings
from fcl.api.models import BGSample, TrendState
from fcl.core.parameters import ParameterId
from fcl.core.preferences import PreferenceStore
from fcl.core.safety.config import SafetyConfig


@dataclass(frozen=True)
class DosingContext:
    """Tunables resolved for one tick. Learned values take precedence over preferences."""
    now: datetime
    night: bool
    target_bg: float
    isf: float
    carb_ratio: float
    max_iob: float
    max_bolus: float
    basal_rate: float
    hypo_threshold: float

    bolus_perc_rising: float
    bolus_perc_plateau: float
    bolus_perc_daynight: float
    hybrid_basal_perc: float
    enhanced_early_boost_perc: float

    rising_slope: float
    plateau_slope: float
    min_consistency: float
    smoothing_alpha: float
    meal_sensitivity: float

    min_minutes_between_bolus: int
    carb_percentage: float
    tau_absorption_minutes: int
    peak_damping_percentage: float
    hypo_risk_percentage: float
    iob_corr_perc: float

    persistent_enabled: bool
    persistent_threshold: float
    persistent_max_bolus: float
    persistent_cooldown_minutes: int

    @property
    def trend_settings(self) -> TrendSettings:
        return TrendSettings(
            smoothing_alpha=self.smoothing_alpha,
            rising_threshold=self.rising_slope,
            plateau_threshold=self.plateau_slope,
            sensitivity=self.meal_sensitivity,
        )

    @classmethod
    def resolve(
        cls,
        preferences: PreferenceStore,
        learned: dict,
        now: datetime,
        safety: Optional[SafetyConfig] = None,
    ) -> "DosingContext":
        safety = safety or SafetyConfig()
        night = preferences.is_night(now)

        def tunable(pid: ParameterId) -> float:
            if pid.value in learned:
                return float(learned[pid.value])
            return preferences.get_float(pid.value)

        p = preferences.get
        return cls(
            now=now,
            night=night,
            target_bg=p("target_bg"),
            isf=p("isf"),
            carb_ratio=p("carb_ratio"),
            max_iob=p("max_iob"),
            max_bolus=preferences.max_bolus(now),
            basal_rate=p("basal_rate"),
            hypo_threshold=safety.hypo_threshold_night if night else safety.hypo_threshold_day,
            bolus_perc_rising=tunable(ParameterId.BOLUS_PERC_RISING),
            bolus_perc_plateau=tunable(ParameterId.BOLUS_PERC_PLATEAU),
            bolus_perc_daynight=tunable(
                ParameterId.BOLUS_PERC_NIGHT if night else ParameterId.BOLUS_PERC_DAY
            ),
            hybrid_basal_perc=p("hybrid_basal_perc"),
            enhanced_early_boost_perc=p("enhanced_early_boost_perc"),
            rising_slope=tunable(ParameterId.PHASE_RISING_SLOPE),
            plateau_slope=tunable(ParameterId.PHASE_PLATEAU_SLOPE),
            min_consistency=p("phase_min_consistency"),
            smoothing_alpha=p("data_smoothing_alpha"),
            meal_sensitivity=tunable(ParameterId.MEAL_DETECTION_SENSITIVITY),
            min_minutes_between_bolus=int(p("min_minutes_between_bolus")),
            carb_percentage=tunable(ParameterId.CARB_PERCENTAGE),
            tau_absorption_minutes=int(p("tau_absorption_minutes")),
            peak_damping_percentage=p("peak_damping_percentage"),
            hypo_risk_percentage=tunable(ParameterId.HYPO_RISK_PERCENTAGE),
            iob_corr_perc=tunable(ParameterId.IOB_CORR_PERC),
            persistent_enabled=bool(p("persistent_enabled")),
            persistent_threshold=p("persistent_threshold_night" if night else "persistent_threshold_day"),
            persistent_max_bolus=p("persistent_max_bolus_night" if night else "persistent_max_bolus_day"),
            persistent_cooldown_minutes=int(p("persistent_cooldown_minutes")),
        )


@dataclass(frozen=True)
class Observation:
    """Glucose history plus everything derived from it once per tick."""
    samples: List[BGSample]
    trend: TrendState
    recent_trend: float
    short_term_trend: float
    acceleration: float
    volatility: float
    consistent_decline: bool
    iob_ratio: float

    @property
    def current(self) -> BGSample:
        return self.samples[-1]

    @property
    def bg(self) -> float:
        return self.samples[-1].bg

    @property
    def iob(self) -> float:
        return self.samples[-1].iob

    @classmethod
    def build(cls, samples: List[BGSample], ctx: DosingContext, analyzer: TrendAnalyzer) -> "Observation":
        state = analyzer.analyze(samples, ctx.trend_settings)
        iob = samples[-1].iob if samples else 0.0
        return cls(
            samples=list(samples),
            trend=state,
            recent_trend=trend_ops.recent_trend(samples, 2),
            short_term_trend=trend_ops.short_term_trend(samples),
            acceleration=trend_ops.acceleration(samples, 2),
            volatility=trend_ops.volatility(samples[-6:]),
            consistent_decline=trend_ops.consistent_decline(samples),
            iob_ratio=iob / ctx.max_iob if ctx.max_iob > 0 else 1.0,
        )
