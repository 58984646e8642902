"""
Pre/post veto layer over any candidate dose.

The gate never produces a dose. Checks run in a fixed order and the first
veto wins. Hypo-recovery and the hypo lookahead are critical: they cannot
be relaxed and they stop an in-progress hybrid basal.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional

from fcl.analysis.trend import is_reversing_to_decline
from fcl.api.models import TrendPhase
from fcl.core.dosing.context import DosingContext, Observation
from fcl.core.dosing.phased import BolusSnapshot
from fcl.core.safety.config import SafetyConfig

logger = logging.getLogger("fcl")

PRE = "pre"
POST = "post"


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    reason: str = ""
    phase: str = "safety_ok"
    critical: bool = False

    @classmethod
    def ok(cls) -> "GateResult":
        return cls(allowed=True)


def project_bg(
    bg: float,
    insulin: float,
    cob: float,
    trend: float,
    minutes: float,
    ctx: DosingContext,
    config: Optional[SafetyConfig] = None,
) -> float:
    """BG forecast: current BG minus insulin effect, plus carb and trend effects."""
    config = config or SafetyConfig()
    hours = minutes / 60.0
    insulin_effect = max(0.0, insulin) * ctx.isf * (1.0 - math.exp(-hours / config.insulin_effect_tau_hours))
    carb_effect = 0.0
    if cob > 0 and ctx.carb_ratio > 0:
        tau = max(1.0, float(ctx.tau_absorption_minutes))
        carb_effect = (cob / ctx.carb_ratio) * ctx.isf * (1.0 - math.exp(-minutes / tau))
    trend_effect = trend * hours * config.trend_effect_weight
    return bg - insulin_effect + carb_effect + trend_effect


class SafetyGate:
    def __init__(self, safety_config: Optional[SafetyConfig] = None):
        self.config = safety_config or SafetyConfig()

    def evaluate(
        self,
        stage: str,
        ctx: DosingContext,
        obs: Observation,
        candidate: float,
        bolus: BolusSnapshot,
        meal_active: bool = False,
        cob: float = 0.0,
    ) -> GateResult:
        checks: List[Callable[[], Optional[GateResult]]] = [
            lambda: self.check_hypo_recovery(ctx, obs),
            lambda: self.check_conservative(ctx, obs, bolus),
            lambda: self.check_short_term_decline(obs),
            lambda: self.check_trend_reversal(obs),
            lambda: self.check_hard_stop(ctx, obs, candidate, bolus, meal_active, cob),
        ]
        for check in checks:
            result = check()
            if result is not None:
                logger.info("Safety %s veto (%s): %s", stage, result.phase, result.reason)
                return result
        return GateResult.ok()

    def evaluate_critical(
        self,
        ctx: DosingContext,
        obs: Observation,
        candidate: float,
        cob: float = 0.0,
    ) -> GateResult:
        """Only the checks that may never be relaxed."""
        result = self.check_hypo_recovery(ctx, obs) or self.check_lookahead(ctx, obs, candidate, cob)
        return result or GateResult.ok()

    def relax(self, veto: GateResult, obs: Observation, candidate: float) -> Optional[float]:
        """Reduced dose for a non-critical post veto during a steep rise, else None."""
        if veto.allowed or veto.critical:
            return None
        if obs.trend.phase != TrendPhase.RISING:
            return None
        if obs.trend.transition_factor < self.config.relax_min_transition_factor:
            return None
        return candidate * self.config.relax_dose_fraction

    # Individual checks. Each returns a veto or None.

    def check_hypo_recovery(self, ctx: DosingContext, obs: Observation) -> Optional[GateResult]:
        cfg = self.config
        samples = obs.samples
        if len(samples) < 4:
            return None
        now = obs.current.timestamp
        window_start = now - timedelta(minutes=cfg.hypo_recovery_window_minutes)
        recent = [s for s in samples if s.timestamp >= window_start]
        threshold = ctx.hypo_threshold

        if any(s.bg < threshold for s in recent) and threshold <= obs.bg <= threshold + cfg.hypo_recovery_bg_range:
            low = min(recent, key=lambda s: s.bg)
            minutes_since_low = (now - low.timestamp).total_seconds() / 60.0
            rise = obs.bg - low.bg
            after_low = [s for s in recent if s.timestamp > low.timestamp]
            if len(after_low) >= 3:
                rising = sum(1 for a, b in zip(after_low, after_low[1:]) if b.bg > a.bg + 0.1)
                rapid = (
                    cfg.hypo_recovery_min_minutes <= minutes_since_low <= cfg.hypo_recovery_window_minutes
                    and rise > cfg.hypo_recovery_min_rise
                )
                if rapid and rising >= len(after_low) * cfg.hypo_recovery_rising_fraction:
                    return GateResult(
                        False,
                        f"Hypo recovery: BG {obs.bg:.1f} rebounding {rise:.1f} mmol/L "
                        f"from low {low.bg:.1f} {minutes_since_low:.0f} min ago",
                        "hypo_recovery",
                        critical=True,
                    )

        if obs.bg < threshold + 1.5 and obs.recent_trend > 1.0:
            if any(s.bg < threshold + 0.5 for s in recent):
                return GateResult(
                    False,
                    f"Hypo recovery: rise to {obs.bg:.1f} shortly after a low",
                    "hypo_recovery",
                    critical=True,
                )
        return None

    def check_conservative(self, ctx: DosingContext, obs: Observation, bolus: BolusSnapshot) -> Optional[GateResult]:
        cfg = self.config
        if ctx.night:
            max_ratio, max_consecutive = cfg.night_max_iob_ratio, cfg.night_max_consecutive_boluses
            min_interval, decline = cfg.night_min_bolus_interval_minutes, cfg.night_decline_slope
        else:
            max_ratio, max_consecutive = cfg.day_max_iob_ratio, cfg.day_max_consecutive_boluses
            min_interval, decline = cfg.day_min_bolus_interval_minutes, cfg.day_decline_slope
        label = "night" if ctx.night else "day"
        iob_text = f"IOB {obs.iob:.2f}U ({obs.iob_ratio:.0%} of max)"

        reason = None
        if obs.recent_trend < decline:
            reason = f"BG decline {obs.recent_trend:.1f} mmol/L/h with {iob_text}"
        elif obs.iob_ratio > max_ratio:
            reason = f"{iob_text} above {max_ratio:.0%} limit"
        elif bolus.consecutive >= max_consecutive:
            reason = f"{bolus.consecutive} consecutive boluses (max {max_consecutive})"
        else:
            since = bolus.minutes_since_last(obs.current.timestamp)
            if since is not None and since < min_interval:
                reason = f"last bolus {since:.0f} min ago (min {min_interval})"
        if reason is None:
            return None
        return GateResult(False, f"Conservative {label} block: {reason}", "conservative_block")

    def check_short_term_decline(self, obs: Observation) -> Optional[GateResult]:
        cfg = self.config
        if len(obs.samples) < 4:
            return None
        st = obs.short_term_trend
        blocked = (
            st < cfg.short_term_hard_decline
            or (st < cfg.short_term_consistent_decline and obs.consistent_decline)
            or (st < cfg.short_term_iob_decline and obs.iob_ratio > cfg.short_term_iob_ratio)
            or (obs.consistent_decline and st < cfg.short_term_mild_decline)
        )
        if not blocked:
            return None
        return GateResult(
            False,
            f"Short-term decline {st:.1f} mmol/L/h, IOB {obs.iob:.2f}U ({obs.iob_ratio:.0%})",
            "short_term_decline",
        )

    def check_trend_reversal(self, obs: Observation) -> Optional[GateResult]:
        cfg = self.config
        if not is_reversing_to_decline(obs.samples):
            return None
        ratio = obs.iob_ratio
        blocked = (
            ratio > cfg.reversal_iob_ratio
            or (ratio > cfg.reversal_iob_ratio_falling and obs.recent_trend < -1.0)
            or (ratio > cfg.reversal_iob_ratio_steep and obs.recent_trend < -2.0)
        )
        if not blocked:
            return None
        return GateResult(
            False,
            f"Trend reversal toward decline with IOB {obs.iob:.2f}U ({ratio:.0%})",
            "trend_reversal",
        )

    def check_hard_stop(
        self,
        ctx: DosingContext,
        obs: Observation,
        candidate: float,
        bolus: BolusSnapshot,
        meal_active: bool,
        cob: float,
    ) -> Optional[GateResult]:
        cfg = self.config
        if meal_active:
            total = bolus.session_insulin + candidate
            if total > cfg.meal_max_cumulative_insulin:
                return GateResult(
                    False, f"Hard stop: meal insulin {total:.2f}U exceeds {cfg.meal_max_cumulative_insulin}U", "hard_stop"
                )
            if candidate > 0 and bolus.consecutive >= cfg.meal_max_consecutive_boluses:
                return GateResult(False, f"Hard stop: {bolus.consecutive} consecutive meal boluses", "hard_stop")
        else:
            total = bolus.recent_insulin + candidate
            if total > cfg.normal_max_cumulative_insulin:
                return GateResult(
                    False,
                    f"Hard stop: {total:.2f}U within {cfg.cumulative_window_minutes} min "
                    f"exceeds {cfg.normal_max_cumulative_insulin}U",
                    "hard_stop",
                )
            if candidate > 0 and bolus.consecutive >= cfg.normal_max_consecutive_boluses:
                return GateResult(False, f"Hard stop: {bolus.consecutive} consecutive boluses", "hard_stop")
        return self.check_lookahead(ctx, obs, candidate, cob)

    def hypo_floor(self, ctx: DosingContext) -> float:
        return self.config.hypo_floor + (self.config.night_floor_margin if ctx.night else 0.0)

    def check_lookahead(self, ctx: DosingContext, obs: Observation, candidate: float, cob: float) -> Optional[GateResult]:
        floor = self.hypo_floor(ctx)
        for minutes in self.config.lookahead_minutes:
            projected = project_bg(obs.bg, obs.iob + candidate, cob, obs.recent_trend, minutes, ctx, self.config)
            if projected < floor:
                return GateResult(
                    False,
                    f"Hard stop: projected BG {projected:.1f} in {minutes} min below {floor:.1f} "
                    f"(IOB {obs.iob:.2f}U + {candidate:.2f}U)",
                    "hard_stop",
                    critical=True,
                )
        return None
