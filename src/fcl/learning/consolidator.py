"""
Consolidation of parameter advice across meals.

Advice for the same parameter is weighted by confidence and recency. Before
weighting, mixed-direction or one-sided windows are discounted (symmetry
correction), locked parameters and weak advice are dropped, and parameters
whose direction keeps flipping are penalised.
"""
from __future__ import annotations

import logging
import math
import threading
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from fcl.api.interfaces import Clock, SystemClock
from fcl.api.models import (
    AdviceDirection,
    ConsolidatedAdvice,
    ConsolidatedEntry,
    ParameterAdvice,
)
from fcl.core.config import DEFAULT_ENGINE_CONFIG, EngineConfig
from fcl.core.parameters import ParameterId, get_definition
from fcl.learning.parameter_store import ParameterStateStore
from fcl.utils.persistence import ADVICE_HISTORY_KEY, CONSOLIDATED_ADVICE_KEY, PersistentKeyValueStore

logger = logging.getLogger("fcl")

COHERENT_PERCENTAGES = (ParameterId.BOLUS_PERC_RISING, ParameterId.BOLUS_PERC_PLATEAU)


def apply_symmetry_correction(advices: List[ParameterAdvice], factor: float) -> List[ParameterAdvice]:
    """
    Discount confidence instead of cancelling opposite advice.

    A window with both directions discounts every advice. A lopsided window
    (counts differ by more than one) discounts only the majority direction.
    """
    increases = sum(1 for a in advices if a.direction is AdviceDirection.INCREASE)
    decreases = len(advices) - increases
    if increases and decreases and abs(increases - decreases) <= 1:
        return [replace(a, confidence=a.confidence * factor) for a in advices]
    if abs(increases - decreases) > 1:
        majority = AdviceDirection.INCREASE if increases > decreases else AdviceDirection.DECREASE
        return [
            replace(a, confidence=a.confidence * factor) if a.direction is majority else a
            for a in advices
        ]
    return list(advices)


def count_direction_flips(advices: List[ParameterAdvice]) -> int:
    ordered = sorted(advices, key=lambda a: a.timestamp)
    return sum(1 for a, b in zip(ordered, ordered[1:]) if a.direction is not b.direction)


class AdviceConsolidator:
    def __init__(
        self,
        parameters: ParameterStateStore,
        store: Optional[PersistentKeyValueStore] = None,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.parameters = parameters
        self.store = store
        self.clock = clock or SystemClock()
        self.config = config or DEFAULT_ENGINE_CONFIG
        self._history: Dict[str, List[ParameterAdvice]] = defaultdict(list)
        self._lock = threading.Lock()
        self.latest: Optional[ConsolidatedAdvice] = None
        self.load()

    # Persistence

    def load(self) -> None:
        if self.store is None:
            return
        history = self.store.load(ADVICE_HISTORY_KEY) or {}
        with self._lock:
            for name, items in history.items():
                self._history[name] = [ParameterAdvice.from_dict(item) for item in items]
        consolidated = self.store.load(CONSOLIDATED_ADVICE_KEY)
        if consolidated:
            self.latest = ConsolidatedAdvice.from_dict(consolidated)

    def save(self) -> None:
        if self.store is None:
            return
        with self._lock:
            history = {name: [a.to_dict() for a in items] for name, items in self._history.items()}
        self.store.save_quietly(ADVICE_HISTORY_KEY, history)
        if self.latest is not None:
            self.store.save_quietly(CONSOLIDATED_ADVICE_KEY, self.latest.to_dict())

    # History

    def history(self, parameter: str) -> List[ParameterAdvice]:
        with self._lock:
            return list(self._history.get(parameter, []))

    def add(self, advices: List[ParameterAdvice], now: Optional[datetime] = None) -> None:
        now = now or self.clock.now()
        retention = now - timedelta(days=self.config.advice_retention_days)
        with self._lock:
            for advice in advices:
                self._history[advice.parameter_name].append(advice)
            for name, items in self._history.items():
                kept = sorted((a for a in items if a.timestamp >= retention), key=lambda a: a.timestamp)
                self._history[name] = kept[-self.config.advice_history_limit:]

    # Consolidation

    def _recency_weight(self, advice: ParameterAdvice, now: datetime) -> float:
        hours = max(0.0, (now - advice.timestamp).total_seconds() / 3600.0)
        return math.pow(0.5, hours / self.config.recency_half_life_hours)

    def _window(self, parameter: str, now: datetime) -> List[ParameterAdvice]:
        start = now - timedelta(hours=self.config.symmetry_window_hours)
        return [a for a in self._history.get(parameter, []) if start <= a.timestamp <= now]

    def _consolidate_parameter(self, parameter: str, now: datetime) -> Optional[ConsolidatedEntry]:
        cfg = self.config
        if self.parameters.is_locked(parameter, now):
            logger.debug("Skipping consolidation of locked parameter %s", parameter)
            return None
        window = apply_symmetry_correction(self._window(parameter, now), cfg.symmetry_factor)
        window = [a for a in window if a.confidence >= cfg.consolidation_min_confidence]
        if not window:
            return None

        churn_start = now - timedelta(days=cfg.direction_churn_window_days)
        recent = [a for a in self._history.get(parameter, []) if a.timestamp >= churn_start]
        churn = 1.0
        if count_direction_flips(recent) > cfg.direction_churn_limit:
            churn = cfg.direction_churn_penalty

        weights = [a.confidence * self._recency_weight(a, now) for a in window]
        total = sum(weights)
        if total <= 0:
            return None
        value = sum(w * a.recommended_value for w, a in zip(weights, window)) / total
        confidence = churn * sum(w * a.confidence for w, a in zip(weights, window)) / total
        current = self.parameters.value(parameter)
        deadband = get_definition(parameter).policy.deadband_percent
        change = (value - current) / current * 100.0 if current else 0.0
        if change > deadband:
            trend = "increasing"
        elif change < -deadband:
            trend = "decreasing"
        else:
            trend = "stable"
        return ConsolidatedEntry(
            parameter_name=parameter,
            weighted_value=get_definition(parameter).clamp(value),
            confidence=max(0.0, min(1.0, confidence)),
            trend=trend,
            advice_count=len(window),
            updated_at=now,
        )

    def _apply_coherence(self, entries: Dict[str, ConsolidatedEntry], now: datetime) -> None:
        """Move the shared part of a same-direction rising/plateau change into the day percentage."""
        rising = entries.get(ParameterId.BOLUS_PERC_RISING.value)
        plateau = entries.get(ParameterId.BOLUS_PERC_PLATEAU.value)
        if rising is None or plateau is None:
            return
        day_id = ParameterId.BOLUS_PERC_DAY
        if self.parameters.is_locked(day_id, now):
            return
        rising_now = self.parameters.value(ParameterId.BOLUS_PERC_RISING)
        plateau_now = self.parameters.value(ParameterId.BOLUS_PERC_PLATEAU)
        d_rising = (rising.weighted_value - rising_now) / rising_now
        d_plateau = (plateau.weighted_value - plateau_now) / plateau_now
        if d_rising == 0 or d_plateau == 0 or (d_rising > 0) != (d_plateau > 0):
            logger.info(
                "Rising/plateau advice disagree (%+.3f vs %+.3f); coherence left untouched", d_rising, d_plateau
            )
            return

        shared = math.copysign(min(abs(d_rising), abs(d_plateau)), d_rising)
        day_now = self.parameters.value(day_id)
        entries[day_id.value] = ConsolidatedEntry(
            parameter_name=day_id.value,
            weighted_value=get_definition(day_id).clamp(day_now * (1.0 + shared)),
            confidence=min(
                self.config.coherence_day_confidence_cap, rising.confidence, plateau.confidence
            ),
            trend="increasing" if shared > 0 else "decreasing",
            advice_count=rising.advice_count + plateau.advice_count,
            updated_at=now,
        )
        entries[rising.parameter_name] = replace(
            rising, weighted_value=get_definition(rising.parameter_name).clamp(rising_now * (1.0 + d_rising - shared))
        )
        entries[plateau.parameter_name] = replace(
            plateau, weighted_value=get_definition(plateau.parameter_name).clamp(plateau_now * (1.0 + d_plateau - shared))
        )

    def consolidate(self, now: Optional[datetime] = None) -> ConsolidatedAdvice:
        now = now or self.clock.now()
        with self._lock:
            names = [name for name, items in self._history.items() if items]
            entries: Dict[str, ConsolidatedEntry] = {}
            for name in names:
                entry = self._consolidate_parameter(name, now)
                if entry is not None:
                    entries[name] = entry
        self._apply_coherence(entries, now)
        self.latest = ConsolidatedAdvice(entries=entries, created_at=now)
        self.save()
        return self.latest

    def submit(self, advices: List[ParameterAdvice], now: Optional[datetime] = None) -> List[ParameterAdvice]:
        """
        Record advice, consolidate, and feed the result into the parameter store.

        Only parameters that received advice in this call count as a new
        event; the day percentage counts when rising or plateau did.
        """
        now = now or self.clock.now()
        self.add(advices, now)
        consolidated = self.consolidate(now)
        fresh = {a.parameter_name for a in advices}
        if fresh.intersection(p.value for p in COHERENT_PERCENTAGES):
            fresh.add(ParameterId.BOLUS_PERC_DAY.value)
        emitted: List[ParameterAdvice] = []
        for name, entry in consolidated.entries.items():
            if name not in fresh or entry.trend == "stable":
                continue
            current = self.parameters.value(name)
            result = self.parameters.apply_advice(
                ParameterAdvice(
                    parameter_name=name,
                    current_value=current,
                    recommended_value=entry.weighted_value,
                    direction=(
                        AdviceDirection.INCREASE if entry.weighted_value > current else AdviceDirection.DECREASE
                    ),
                    confidence=entry.confidence,
                    reason=f"Consolidated from {entry.advice_count} advice(s)",
                    timestamp=now,
                ),
                now,
            )
            if result is not None:
                emitted.append(result)
        return emitted
