from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from fcl.api.models import BGSample
from fcl.core.dosing.context import DosingContext, Observation


@dataclass(frozen=True)
class PersistentHighProposal:
    dose: float
    reason: str


def _bg_at(samples: Sequence[BGSample], minutes_ago: int) -> Optional[float]:
    target = samples[-1].timestamp - timedelta(minutes=minutes_ago)
    past = [s for s in samples if s.timestamp <= target]
    return past[-1].bg if past else None


def _iob_factor(iob_ratio: float) -> float:
    if iob_ratio > 0.75:
        return 0.6
    if iob_ratio > 0.5:
        return 0.7
    if iob_ratio > 0.25:
        return 0.8
    if iob_ratio > 0.1:
        return 0.9
    return 1.0


class PersistentHighRule:
    """Small corrections for a BG that sits high and flat, rate-limited by a cooldown."""

    min_points = 7
    stability_limits = ((5, 0.6), (15, 1.1), (30, 1.6))
    min_dose = 0.1

    def __init__(self) -> None:
        self.last_fired: Optional[datetime] = None

    def propose(self, ctx: DosingContext, obs: Observation) -> Optional[PersistentHighProposal]:
        if not ctx.persistent_enabled or len(obs.samples) < self.min_points:
            return None
        if obs.bg <= ctx.persistent_threshold:
            return None
        if self.last_fired is not None:
            if ctx.now - self.last_fired < timedelta(minutes=ctx.persistent_cooldown_minutes):
                return None
        for minutes, limit in self.stability_limits:
            past = _bg_at(obs.samples, minutes)
            if past is None or abs(obs.bg - past) >= limit:
                return None

        linear = max(0.0, min(1.0, obs.bg - ctx.persistent_threshold))
        dose = ctx.persistent_max_bolus * linear * _iob_factor(obs.iob_ratio)
        dose = min(dose, max(0.0, ctx.max_iob - obs.iob))
        if dose < self.min_dose:
            return None
        return PersistentHighProposal(
            dose=dose,
            reason=(
                f"Persistent high BG {obs.bg:.1f} above {ctx.persistent_threshold:.1f}: "
                f"{dose:.2f}U (IOB {obs.iob:.2f}U)"
            ),
        )

    def mark_fired(self, when: datetime) -> None:
        self.last_fired = when
