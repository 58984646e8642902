"""
Phase-weighted bolus shaping.

Given the trend phase and IOB, decide what share of a carb-implied bolus is
given now and what share is reserved for later release.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from fcl.analysis import trend as trend_ops
from fcl.api.models import TrendPhase
from fcl.core.dosing.context import DosingContext, Observation
from fcl.core.safety.gate import project_bg


def round_dose(dose: float, step: float = 0.05, ceiling: Optional[float] = None) -> float:
    """Nearest pump step; never above `ceiling`."""
    if dose <= 0:
        return 0.0
    rounded = round(round(dose / step) * step, 2)
    if ceiling is not None and rounded > ceiling:
        rounded = round(math.floor(ceiling / step + 1e-9) * step, 2)
    return rounded


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class BolusAdvice:
    immediate_percentage: float
    reserved_percentage: float
    reason: str


@dataclass(frozen=True)
class CorrectionResult:
    dose: float
    deliver: bool
    reason: str


def iob_aggressiveness(iob_ratio: float, iob_corr_perc: float) -> float:
    if iob_ratio > 0.8:
        base = 0.2
    elif iob_ratio > 0.6:
        base = 0.4
    elif iob_ratio > 0.4:
        base = 0.6
    elif iob_ratio > 0.2:
        base = 0.8
    else:
        base = 1.0
    return base * iob_corr_perc / 100.0


def consistency_scaling(consistency: float) -> float:
    if consistency > 0.8:
        return 1.0
    if consistency > 0.6:
        return 0.8
    if consistency > 0.4:
        return 0.6
    if consistency > 0.2:
        return 0.4
    return 0.2


def trend_factor(slope: float) -> float:
    if slope > 3.0:
        return 1.2
    if slope > 2.0:
        return 1.1
    if slope > 1.0:
        return 1.0
    if slope > 0.5:
        return 0.9
    return 0.8


def safety_factor(ctx: DosingContext, obs: Observation) -> float:
    above = obs.bg - ctx.target_bg
    if obs.bg < ctx.target_bg:
        base = 0.2
    elif above > 3.0:
        base = 1.0
    elif above > 2.0:
        base = 0.8
    elif above > 1.0:
        base = 0.6
    else:
        base = 0.4
    ratio = obs.iob_ratio
    if ratio > 0.8:
        penalty = 0.6
    elif ratio > 0.6:
        penalty = 0.75
    elif ratio > 0.4:
        penalty = 0.85
    elif ratio > 0.2:
        penalty = 0.9
    else:
        penalty = 1.0
    penalty *= ctx.iob_corr_perc / 100.0
    volatility_penalty = 0.7 if obs.volatility > 1.0 else 1.0
    return clamp(base * penalty * volatility_penalty, 0.1, 1.0)


def confidence_factor(obs: Observation) -> float:
    data_factor = 1.0 if obs.trend.data_points >= 4 else 0.7
    return clamp(obs.trend.consistency * data_factor, 0.5, 1.0)


def high_iob_block(obs: Observation, meal_active: bool) -> bool:
    ratio, slope = obs.iob_ratio, obs.recent_trend
    if meal_active:
        return ratio > 0.95 or (ratio > 0.85 and slope < 0.5) or (ratio > 0.75 and slope < 0.0)
    return ratio > 0.95 or (ratio > 0.85 and slope < 1.0) or (ratio > 0.75 and slope < 0.5)


def mathematical_bolus_advice(ctx: DosingContext, obs: Observation, meal_active: bool) -> BolusAdvice:
    phase = obs.trend.phase
    if phase in (TrendPhase.DECLINING, TrendPhase.UNCERTAIN):
        return BolusAdvice(0.0, 0.0, f"{phase.value.capitalize()} phase: no bolus")
    if high_iob_block(obs, meal_active):
        return BolusAdvice(0.0, 0.0, f"IOB {obs.iob:.2f}U ({obs.iob_ratio:.0%}) too high for {phase.value} bolus")

    if phase == TrendPhase.RISING:
        base, reserved = ctx.bolus_perc_rising / 100.0, 0.15
    else:
        base, reserved = ctx.bolus_perc_plateau / 100.0, 0.10

    percentage = (
        base
        * obs.trend.transition_factor
        * iob_aggressiveness(obs.iob_ratio, ctx.iob_corr_perc)
        * consistency_scaling(obs.trend.consistency)
        * ctx.bolus_perc_daynight / 100.0
    )
    dynamic = trend_factor(obs.recent_trend) * safety_factor(ctx, obs) * confidence_factor(obs)
    immediate = clamp(percentage * dynamic, 0.0, 1.5)
    reason = (
        f"{phase.value.capitalize()} phase: {immediate:.0%} now, {reserved:.0%} reserved "
        f"(slope {obs.trend.first_derivative:.1f}, consistency {obs.trend.consistency:.2f})"
    )
    return BolusAdvice(immediate, reserved, reason)


def correction_dose(ctx: DosingContext, obs: Observation, immediate_percentage: float) -> CorrectionResult:
    """Non-meal correction toward target, damped near the peak and when hypo risk looms."""
    if obs.bg <= ctx.target_bg + 0.5:
        return CorrectionResult(0.0, False, "")
    slope = obs.recent_trend
    if obs.iob >= 0.9 * ctx.max_iob and slope <= 0:
        return CorrectionResult(0.0, False, f"Correction blocked: IOB {obs.iob:.2f}U near max")

    dose = (obs.bg - ctx.target_bg) / ctx.isf * immediate_percentage
    notes = []
    if slope > 0.2:
        dose *= 1.0 + min(2.0, slope / 0.3)
    if slope <= 0 and obs.bg < ctx.target_bg + 3.0:
        dose *= ctx.peak_damping_percentage / 100.0
        notes.append("peak damping")
    if project_bg(obs.bg, obs.iob + dose, 0.0, slope, 120, ctx) < 4.0:
        dose *= ctx.hypo_risk_percentage / 100.0
        notes.append("hypo risk")

    reversing = trend_ops.is_reversing_to_decline(obs.samples)
    deliver = slope > 0.5 and obs.bg > ctx.target_bg + 1.0 and not reversing
    suffix = f" ({', '.join(notes)})" if notes else ""
    if not deliver:
        return CorrectionResult(0.0, False, f"Correction {dose:.2f}U held: trend {slope:.1f}{suffix}")
    return CorrectionResult(dose, True, f"Correction {dose:.2f}U for BG {obs.bg:.1f}{suffix}")


def predicted_peak(obs: Observation, minutes: int = 60) -> float:
    slope = max(0.0, obs.recent_trend)
    damping = 0.5 if obs.acceleration < 0 else 0.7
    return obs.bg + slope * minutes / 60.0 * damping


def dynamic_max_rise(start_bg: float) -> float:
    """Largest plausible meal excursion from a starting BG."""
    table = ((4.0, 6.5), (5.0, 6.0), (6.0, 5.5), (7.0, 5.0), (8.0, 4.5), (9.0, 4.0), (10.0, 3.5), (12.0, 3.0), (14.0, 2.5))
    for limit, rise in table:
        if start_bg <= limit:
            return rise
    return 2.0


def early_boost(ctx: DosingContext, obs: Observation, current_dose: float) -> float:
    """Extra dose for BG 8-10 heading above 10. Returns the added amount."""
    if not 8.0 <= obs.bg < 10.0 or ctx.enhanced_early_boost_perc <= 0:
        return 0.0
    peak = min(predicted_peak(obs), obs.bg + dynamic_max_rise(obs.bg))
    if peak <= 10.0:
        return 0.0
    factor = ctx.enhanced_early_boost_perc / 100.0 * (1.0 + clamp((peak - obs.bg) / 10.0, 0.0, 0.3))
    boost = (peak - 10.0) / ctx.isf * factor
    dynamic_cap = ctx.max_iob * (1.0 + clamp((peak - 10.0) / 5.0, 0.0, 0.5))
    headroom = max(0.0, dynamic_cap - obs.iob - current_dose)
    return clamp(boost, 0.0, headroom)
