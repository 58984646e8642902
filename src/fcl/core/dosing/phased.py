from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class BolusEvent:
    timestamp: datetime
    amount: float


@dataclass(frozen=True)
class BolusSnapshot:
    """Bolus history as seen by the safety gate."""
    last_bolus_time: Optional[datetime] = None
    consecutive: int = 0
    recent_insulin: float = 0.0
    session_insulin: float = 0.0

    def minutes_since_last(self, now: datetime) -> Optional[float]:
        if self.last_bolus_time is None:
            return None
        return (now - self.last_bolus_time).total_seconds() / 60.0


@dataclass
class PhasedBolusManager:
    """
    Bolus cadence for the active meal: how many boluses in a row, and how
    far apart. Larger meals and daytime relax both limits; every bolus in the
    chain stretches the next interval.
    """
    max_consecutive_day: int = 4
    max_consecutive_night: int = 2
    chain_gap_minutes: int = 30
    history_minutes: int = 180
    events: List[BolusEvent] = field(default_factory=list)
    session_events: List[BolusEvent] = field(default_factory=list)

    def start_session(self) -> None:
        self.session_events = []

    def end_session(self) -> None:
        self.session_events = []

    def record(self, timestamp: datetime, amount: float) -> None:
        if amount <= 0:
            return
        event = BolusEvent(timestamp, amount)
        self.events.append(event)
        self.session_events.append(event)
        cutoff = timestamp - timedelta(minutes=self.history_minutes)
        self.events = [e for e in self.events if e.timestamp >= cutoff]

    def consecutive_count(self, now: datetime) -> int:
        """Length of the bolus chain ending at the latest bolus, 0 once the chain has gone quiet."""
        if not self.events:
            return 0
        if now - self.events[-1].timestamp > timedelta(minutes=self.chain_gap_minutes):
            return 0
        count = 1
        for newer, older in zip(reversed(self.events), list(reversed(self.events))[1:]):
            if newer.timestamp - older.timestamp > timedelta(minutes=self.chain_gap_minutes):
                break
            count += 1
        return count

    def snapshot(self, now: datetime, window_minutes: int = 60) -> BolusSnapshot:
        cutoff = now - timedelta(minutes=window_minutes)
        return BolusSnapshot(
            last_bolus_time=self.events[-1].timestamp if self.events else None,
            consecutive=self.consecutive_count(now),
            recent_insulin=sum(e.amount for e in self.events if e.timestamp >= cutoff),
            session_insulin=sum(e.amount for e in self.session_events),
        )

    def max_consecutive(self, detected_carbs: float, night: bool) -> int:
        limit = self.max_consecutive_night if night else self.max_consecutive_day
        if detected_carbs > 40:
            limit += 1
        if detected_carbs > 70:
            limit += 1
        return limit

    def min_interval(self, base_minutes: float, detected_carbs: float, night: bool, consecutive: int) -> float:
        interval = float(base_minutes)
        if night:
            interval *= 1.5
        if detected_carbs > 40:
            interval = max(5.0, interval - 2.0)
        return interval * (1.0 + 0.25 * consecutive)

    def can_bolus(
        self,
        now: datetime,
        detected_carbs: float,
        night: bool,
        base_interval_minutes: float,
    ) -> Tuple[bool, str]:
        consecutive = self.consecutive_count(now)
        limit = self.max_consecutive(detected_carbs, night)
        if consecutive >= limit:
            return False, f"Bolus cadence: {consecutive} consecutive boluses (max {limit})"
        if self.events:
            since = (now - self.events[-1].timestamp).total_seconds() / 60.0
            interval = self.min_interval(base_interval_minutes, detected_carbs, night, consecutive)
            if since < interval:
                return False, f"Bolus cadence: {since:.0f} min since last bolus (min {interval:.0f})"
        return True, ""
