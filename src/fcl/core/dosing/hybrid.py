from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fcl.core.config import DEFAULT_ENGINE_CONFIG, EngineConfig
from fcl.core.dosing.context import DosingContext, Observation

logger = logging.getLogger("fcl")


@dataclass(frozen=True)
class HybridSplit:
    bolus: float
    basal_rate: float  # U/h over the split duration
    basal_units: float
    percentage: float


@dataclass
class ActiveBasal:
    rate: float
    started: datetime
    until: datetime
    percentage: float


class HybridBasalTracker:
    """
    Splits a dose into an immediate bolus and a short elevated basal.

    A started basal runs for its full duration. Only a critical safety stop
    cancels it, and no new split starts while one is running.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or DEFAULT_ENGINE_CONFIG
        self.active: Optional[ActiveBasal] = None

    def current(self, now: datetime) -> Optional[ActiveBasal]:
        if self.active is not None and now >= self.active.until:
            self.active = None
        return self.active

    def stop(self, reason: str) -> None:
        if self.active is not None:
            logger.warning("Hybrid basal stopped: %s", reason)
        self.active = None

    def split(self, ctx: DosingContext, obs: Observation, dose: float) -> HybridSplit:
        if dose <= 0 or ctx.hybrid_basal_perc <= 0 or self.current(ctx.now) is not None:
            return HybridSplit(bolus=dose, basal_rate=0.0, basal_units=0.0, percentage=0.0)

        cfg = self.config
        hours = cfg.hybrid_duration_minutes / 60.0
        basal_units = dose * ctx.hybrid_basal_perc / 100.0

        headroom = cfg.hybrid_headroom_fraction * max(0.0, ctx.max_iob - obs.iob)
        multiplier = cfg.hybrid_max_multiplier
        if obs.bg > cfg.extreme_bg_threshold and obs.iob_ratio < cfg.hybrid_extreme_iob_ratio:
            multiplier = cfg.hybrid_extreme_multiplier
        rate_ceiling = ctx.basal_rate * multiplier
        basal_units = min(basal_units, headroom, rate_ceiling * hours)
        if basal_units <= 0:
            return HybridSplit(bolus=dose, basal_rate=0.0, basal_units=0.0, percentage=0.0)

        rate = basal_units / hours
        bolus = dose - basal_units
        self.active = ActiveBasal(
            rate=rate,
            started=ctx.now,
            until=ctx.now + timedelta(minutes=cfg.hybrid_duration_minutes),
            percentage=basal_units / dose * 100.0,
        )
        return HybridSplit(bolus=bolus, basal_rate=rate, basal_units=basal_units, percentage=basal_units / dose * 100.0)
