from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from fcl.api.models import BGSample


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now()


class FixedClock(Clock):
    """Manually advanced clock for deterministic runs."""

    def __init__(self, start: datetime):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, minutes: float) -> datetime:
        self._now = self._now + timedelta(minutes=minutes)
        return self._now


class GlucoseHistoryProvider(ABC):
    """
    Source of glucose history for the decision engine.

    Implementations must return samples ordered by timestamp. Gaps are allowed.
    """

    @abstractmethod
    def get_history(self, minutes: int, now: Optional[datetime] = None) -> List[BGSample]:
        ...


class InMemoryHistoryProvider(GlucoseHistoryProvider):
    def __init__(self, samples: Optional[Iterable[BGSample]] = None, max_minutes: int = 360):
        self.max_minutes = max_minutes
        self._samples: List[BGSample] = []
        for sample in samples or []:
            self.add(sample)

    def add(self, sample: BGSample) -> None:
        if self._samples and sample.timestamp <= self._samples[-1].timestamp:
            # Out-of-order or duplicate readings replace by timestamp.
            self._samples = [s for s in self._samples if s.timestamp != sample.timestamp]
            self._samples.append(sample)
            self._samples.sort(key=lambda s: s.timestamp)
        else:
            self._samples.append(sample)
        cutoff = self._samples[-1].timestamp - timedelta(minutes=self.max_minutes)
        self._samples = [s for s in self._samples if s.timestamp >= cutoff]

    def get_history(self, minutes: int, now: Optional[datetime] = None) -> List[BGSample]:
        if not self._samples:
            return []
        end = now or self._samples[-1].timestamp
        start = end - timedelta(minutes=minutes)
        return [s for s in self._samples if start <= s.timestamp <= end]
