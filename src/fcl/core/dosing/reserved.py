from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from fcl.analysis import trend as trend_ops
from fcl.api.models import ReservedBolus
from fcl.core.config import DEFAULT_ENGINE_CONFIG, EngineConfig
from fcl.core.dosing.context import DosingContext, Observation

logger = logging.getLogger("fcl")


@dataclass(frozen=True)
class ReleaseResult:
    amount: float
    origin: str
    reason: str


class ReservedDoseLedger:
    """
    Deferred insulin, at most one entry per origin event.

    An entry decays exponentially from its last update and is cleared once
    it falls below the floor or outlives the maximum age.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or DEFAULT_ENGINE_CONFIG
        self._entries: Dict[str, ReservedBolus] = {}
        self._created: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def reserve(self, origin: str, amount: float, carbs: float, phase: str, now: datetime) -> None:
        if amount <= self.config.reserved_floor:
            return
        with self._lock:
            self._entries[origin] = ReservedBolus(
                amount=amount, carbs=carbs, timestamp=now, phase=phase, origin=origin
            )
            self._created.setdefault(origin, now)

    def _decayed(self, entry: ReservedBolus, now: datetime) -> float:
        created = self._created.get(entry.origin, entry.timestamp)
        if (now - created).total_seconds() / 60.0 > self.config.reserved_max_age_minutes:
            return 0.0
        hours = max(0.0, (now - entry.timestamp).total_seconds() / 3600.0)
        return entry.amount * math.exp(-self.config.reserved_decay_per_hour * hours)

    def _prune(self, now: datetime) -> None:
        for origin, entry in list(self._entries.items()):
            if self._decayed(entry, now) < self.config.reserved_floor:
                del self._entries[origin]
                self._created.pop(origin, None)

    def remaining(self, now: datetime, origin: Optional[str] = None) -> float:
        with self._lock:
            self._prune(now)
            entries = [e for e in self._entries.values() if origin is None or e.origin == origin]
            return sum(self._decayed(e, now) for e in entries)

    def entries(self, now: datetime) -> List[ReservedBolus]:
        with self._lock:
            self._prune(now)
            return [
                ReservedBolus(self._decayed(e, now), e.carbs, e.timestamp, e.phase, e.origin)
                for e in self._entries.values()
            ]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._created.clear()

    @staticmethod
    def release_fraction(ctx: DosingContext, obs: Observation, iob_capacity: float) -> float:
        above = obs.bg - ctx.target_bg
        if above > 5.0:
            fraction = 0.8 if iob_capacity > 1.0 else 0.6
        elif above > 3.0:
            fraction = 0.7 if iob_capacity > 1.0 else 0.5
        elif above > 2.0:
            fraction = 0.4
        else:
            fraction = 0.2
        if obs.recent_trend > 2.0:
            fraction += 0.1
        return min(1.0, fraction)

    def _should_release(self, ctx: DosingContext, obs: Observation, minutes_since_bolus: Optional[float]) -> bool:
        if ctx.max_iob - obs.iob <= 0.3:
            return False
        rising = obs.recent_trend > 0.5 or obs.short_term_trend > 1.0
        rapid = obs.recent_trend > 2.0 or obs.short_term_trend > 2.5
        above = obs.bg - ctx.target_bg
        if not (rising and (above > 4.0 or (above > 2.0 and rapid))):
            return False
        if trend_ops.is_at_peak_or_declining(obs.samples):
            return False
        if obs.iob >= 0.7 * ctx.max_iob:
            return False
        if minutes_since_bolus is not None and minutes_since_bolus < self.config.reserved_min_minutes_since_bolus:
            return False
        return True

    def release(
        self,
        ctx: DosingContext,
        obs: Observation,
        minutes_since_bolus: Optional[float],
        max_single_bolus: float,
    ) -> Optional[ReleaseResult]:
        """Release part of the largest reserved dose. Never more than what remains."""
        now = ctx.now
        with self._lock:
            self._prune(now)
            candidates = [e for e in self._entries.values() if self._created.get(e.origin, now) < now]
            if not candidates:
                return None
            entry = max(candidates, key=lambda e: self._decayed(e, now))
            remaining = self._decayed(entry, now)
            iob_capacity = max(0.0, ctx.max_iob - obs.iob)
            extreme = obs.bg > self.config.extreme_bg_threshold

            if extreme:
                amount = min(remaining, max_single_bolus, iob_capacity)
            elif self._should_release(ctx, obs, minutes_since_bolus):
                fraction = self.release_fraction(ctx, obs, iob_capacity)
                amount = min(fraction * remaining, max_single_bolus, iob_capacity, remaining)
            else:
                return None

            if amount <= self.config.reserved_floor:
                return None
            left = remaining - amount
            if left < self.config.reserved_floor:
                del self._entries[entry.origin]
                self._created.pop(entry.origin, None)
            else:
                self._entries[entry.origin] = ReservedBolus(
                    amount=left, carbs=entry.carbs, timestamp=now, phase=entry.phase, origin=entry.origin
                )

        reason = f"Reserved release {amount:.2f}U of {remaining:.2f}U"
        if extreme:
            reason += f" (BG {obs.bg:.1f} above {self.config.extreme_bg_threshold:.1f})"
        logger.info(reason)
        return ReleaseResult(amount=amount, origin=entry.origin, reason=reason)
