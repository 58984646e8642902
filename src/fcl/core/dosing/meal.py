from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from fcl.analysis import trend as trend_ops
from fcl.api.models import MealDataPoint, MealSession
from fcl.core.config import DEFAULT_ENGINE_CONFIG, EngineConfig
from fcl.core.dosing.carbs import CarbEstimate, CarbsOnBoard
from fcl.core.dosing.context import DosingContext, Observation

logger = logging.getLogger("fcl")


class MealTracker:
    """Opens, feeds and closes meal sessions; owns carbs on board."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or DEFAULT_ENGINE_CONFIG
        self.active: Optional[MealSession] = None
        self.last_start: Optional[datetime] = None
        self.cob = CarbsOnBoard()

    def carbs_on_board(self, ctx: DosingContext) -> float:
        return self.cob.total(ctx.now, ctx.tau_absorption_minutes)

    @staticmethod
    def _minutes(since: datetime, now: datetime) -> float:
        return (now - since).total_seconds() / 60.0

    def _should_start(self, ctx: DosingContext, obs: Observation, estimate: CarbEstimate) -> bool:
        if self.last_start is not None and self._minutes(self.last_start, ctx.now) < self.config.meal_restart_cooldown_minutes:
            return False
        if estimate.meal_detected:
            return True
        recent_low = any(s.bg < 4.0 for s in obs.samples[-6:])
        strong_rise = obs.recent_trend > 2.0 and obs.acceleration > 0.1
        return (
            not recent_low
            and obs.bg > ctx.target_bg
            and (trend_ops.consistent_rise(obs.samples, 3) or strong_rise)
        )

    def _end_reason(self, session: MealSession, ctx: DosingContext, obs: Observation, cob: float) -> str:
        cfg = self.config
        elapsed = self._minutes(session.start_time, ctx.now)
        if elapsed > cfg.meal_timeout_minutes:
            return "timeout"
        peaked = session.peak_bg > session.start_bg + 1.0
        if peaked and obs.recent_trend < -1.0 and elapsed > cfg.meal_decline_min_minutes:
            return "post_peak_decline"
        if elapsed > cfg.meal_baseline_return_minutes and obs.bg <= session.start_bg:
            return "baseline_return"
        if elapsed > cfg.meal_quiet_minutes and abs(obs.recent_trend) < 0.3:
            return "quiet_period"
        if session.detected_carbs > 0 and cob < self.cob.depleted_below and elapsed > cfg.meal_baseline_return_minutes:
            return "cob_depleted"
        return ""

    def update(
        self,
        ctx: DosingContext,
        obs: Observation,
        estimate: CarbEstimate,
        parameter_snapshot: Dict[str, float],
    ) -> Optional[MealSession]:
        """Advance the lifecycle by one tick. Returns a session that just closed."""
        if estimate.carbs > 5.0 and estimate.confidence > 0.3:
            self.cob.add(ctx.now, estimate.carbs, ctx.tau_absorption_minutes)
        cob = self.carbs_on_board(ctx)

        session = self.active
        if session is not None:
            session.data_points.append(MealDataPoint(ctx.now, obs.bg, obs.iob))
            if obs.bg > session.peak_bg:
                session.peak_bg = obs.bg
                session.peak_time = ctx.now
            if estimate.meal_detected and estimate.carbs > session.detected_carbs:
                session.detected_carbs = estimate.carbs
                session.detection_confidence = estimate.confidence
            reason = self._end_reason(session, ctx, obs, cob)
            if reason:
                session.end_time = ctx.now
                session.end_reason = reason
                self.active = None
                logger.info("Meal %s closed (%s), peak %.1f", session.id, reason, session.peak_bg)
                return session
            return None

        if self._should_start(ctx, obs, estimate):
            self.active = MealSession(
                id=f"meal-{ctx.now:%Y%m%d%H%M}",
                start_time=ctx.now,
                start_bg=obs.bg,
                detected_carbs=estimate.carbs,
                parameter_snapshot=dict(parameter_snapshot),
                data_points=[MealDataPoint(ctx.now, obs.bg, obs.iob)],
                peak_bg=obs.bg,
                peak_time=ctx.now,
                detection_confidence=estimate.confidence,
            )
            self.last_start = ctx.now
            logger.info("Meal %s started at BG %.1f (%.0fg)", self.active.id, obs.bg, estimate.carbs)
        return None

    def record_insulin(self, amount: float) -> None:
        session = self.active
        if session is None or amount <= 0:
            return
        session.total_insulin += amount
        session.bolus_count += 1
        if session.data_points:
            session.data_points[-1].insulin_delivered += amount
