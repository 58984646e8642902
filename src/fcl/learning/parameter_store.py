"""
Per-parameter adaptive state.

Automated advice flows through `ParameterStateStore.apply_advice`. Each event
is clamped to the parameter bounds and to what is left of today's change
budget, then accumulated. A visible (and, with auto-apply, committed) change
is only emitted once enough events and confidence have been collected for
the parameter's class.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Mapping, Optional

from fcl.api.interfaces import Clock, SystemClock
from fcl.api.models import AdviceDirection, ParameterAdvice, parse_timestamp
from fcl.core.config import DEFAULT_ENGINE_CONFIG, EngineConfig
from fcl.core.errors import ConfigError
from fcl.core.parameters import PARAMETER_DEFINITIONS, ParameterId, get_definition
from fcl.utils.persistence import MANUAL_ADJUSTMENTS_KEY, PARAMETER_STATE_KEY, PersistentKeyValueStore

logger = logging.getLogger("fcl")


@dataclass
class ParameterState:
    name: str
    current_value: float
    smoothed_value: float
    deadband: float
    daily_change_used: float
    last_daily_reset: datetime
    max_daily_change_percent: float
    manual_lock: bool = False
    manual_lock_until: Optional[datetime] = None
    pending_events: int = 0
    pending_confidence: float = 0.0
    last_manual_adjustment: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "current_value": self.current_value,
            "smoothed_value": self.smoothed_value,
            "deadband": self.deadband,
            "daily_change_used": self.daily_change_used,
            "last_daily_reset": self.last_daily_reset.isoformat(),
            "max_daily_change_percent": self.max_daily_change_percent,
            "manual_lock": self.manual_lock,
            "manual_lock_until": self.manual_lock_until.isoformat() if self.manual_lock_until else None,
            "pending_events": self.pending_events,
            "pending_confidence": self.pending_confidence,
            "last_manual_adjustment": (
                self.last_manual_adjustment.isoformat() if self.last_manual_adjustment else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "ParameterState":
        return cls(
            name=str(data["name"]),
            current_value=float(data["current_value"]),
            smoothed_value=float(data["smoothed_value"]),
            deadband=float(data["deadband"]),
            daily_change_used=float(data["daily_change_used"]),
            last_daily_reset=parse_timestamp(data["last_daily_reset"]),  # type: ignore[arg-type]
            max_daily_change_percent=float(data["max_daily_change_percent"]),
            manual_lock=bool(data.get("manual_lock", False)),
            manual_lock_until=parse_timestamp(data.get("manual_lock_until")),
            pending_events=int(data.get("pending_events", 0)),
            pending_confidence=float(data.get("pending_confidence", 0.0)),
            last_manual_adjustment=parse_timestamp(data.get("last_manual_adjustment")),
        )

    @property
    def remaining_budget_percent(self) -> float:
        return max(0.0, self.max_daily_change_percent - self.daily_change_used)


def _percent_change(old: float, new: float) -> float:
    if old == 0:
        return 0.0 if new == 0 else 100.0
    return abs(new - old) / abs(old) * 100.0


class ParameterStateStore:
    def __init__(
        self,
        store: Optional[PersistentKeyValueStore] = None,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None,
        initial_values: Optional[Mapping[str, float]] = None,
        auto_apply: bool = True,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.config = config or DEFAULT_ENGINE_CONFIG
        self.auto_apply = auto_apply
        self._lock = threading.RLock()
        now = self.clock.now()
        initial = dict(initial_values or {})
        self._states: Dict[ParameterId, ParameterState] = {}
        for pid, definition in PARAMETER_DEFINITIONS.items():
            value = definition.clamp(float(initial.get(pid.value, definition.default)))
            self._states[pid] = self._fresh_state(pid, value, now)
        self.load()

    @staticmethod
    def _fresh_state(pid: ParameterId, value: float, now: datetime) -> ParameterState:
        policy = get_definition(pid).policy
        return ParameterState(
            name=pid.value,
            current_value=value,
            smoothed_value=value,
            deadband=policy.deadband_percent,
            daily_change_used=0.0,
            last_daily_reset=now,
            max_daily_change_percent=policy.max_daily_change_percent,
        )

    # Persistence

    def load(self) -> None:
        if self.store is None:
            return
        payload = self.store.load(PARAMETER_STATE_KEY) or {}
        with self._lock:
            for name, data in payload.items():
                try:
                    pid = ParameterId(name)
                except ValueError:
                    logger.warning("Dropping unknown stored parameter '%s'", name)
                    continue
                state = ParameterState.from_dict(data)
                state.current_value = get_definition(pid).clamp(state.current_value)
                self._states[pid] = state

    def save(self) -> None:
        if self.store is None:
            return
        with self._lock:
            payload = {pid.value: state.to_dict() for pid, state in self._states.items()}
            manual = {
                pid.value: state.last_manual_adjustment.isoformat()
                for pid, state in self._states.items()
                if state.last_manual_adjustment is not None
            }
        self.store.save_quietly(PARAMETER_STATE_KEY, payload)
        self.store.save_quietly(MANUAL_ADJUSTMENTS_KEY, manual)

    # Reads

    @staticmethod
    def _resolve(parameter: "ParameterId | str") -> ParameterId:
        try:
            return ParameterId(parameter)
        except ValueError as exc:
            raise ConfigError(f"Unknown parameter '{parameter}'") from exc

    def value(self, parameter: "ParameterId | str") -> float:
        with self._lock:
            return self._states[self._resolve(parameter)].current_value

    def values(self) -> Dict[str, float]:
        with self._lock:
            return {pid.value: state.current_value for pid, state in self._states.items()}

    def state(self, parameter: "ParameterId | str") -> ParameterState:
        with self._lock:
            return ParameterState.from_dict(self._states[self._resolve(parameter)].to_dict())

    def states(self) -> Dict[str, ParameterState]:
        with self._lock:
            return {pid.value: ParameterState.from_dict(s.to_dict()) for pid, s in self._states.items()}

    def is_locked(self, parameter: "ParameterId | str", now: Optional[datetime] = None) -> bool:
        now = now or self.clock.now()
        with self._lock:
            state = self._states[self._resolve(parameter)]
            self._refresh_lock(state, now)
            return state.manual_lock

    # Writes

    def _refresh_lock(self, state: ParameterState, now: datetime) -> None:
        if state.manual_lock and state.manual_lock_until is not None and now >= state.manual_lock_until:
            state.manual_lock = False
            state.manual_lock_until = None
            logger.info("Manual lock on %s expired", state.name)

    @staticmethod
    def _roll_daily_budget(state: ParameterState, now: datetime) -> None:
        if now.date() != state.last_daily_reset.date():
            state.daily_change_used = 0.0
            state.last_daily_reset = now

    def register_manual_adjustment(
        self,
        parameter: "ParameterId | str",
        value: float,
        now: Optional[datetime] = None,
        dwell_hours: Optional[float] = None,
    ) -> ParameterState:
        """Take a user edit and suppress automated advice for the dwell period."""
        pid = self._resolve(parameter)
        now = now or self.clock.now()
        dwell = self.config.manual_dwell_hours if dwell_hours is None else dwell_hours
        definition = get_definition(pid)
        if not definition.minimum <= value <= definition.maximum:
            raise ConfigError(
                f"{pid.value}={value} outside [{definition.minimum}, {definition.maximum}]"
            )
        with self._lock:
            state = self._states[pid]
            state.current_value = float(value)
            state.smoothed_value = float(value)
            state.daily_change_used = 0.0
            state.last_daily_reset = now
            state.pending_events = 0
            state.pending_confidence = 0.0
            state.manual_lock = dwell > 0
            state.manual_lock_until = now + timedelta(hours=dwell) if dwell > 0 else None
            state.last_manual_adjustment = now
            snapshot = ParameterState.from_dict(state.to_dict())
        logger.info("Manual adjustment %s=%s, advice suppressed for %.0fh", pid.value, value, dwell)
        self.save()
        return snapshot

    def apply_advice(self, advice: ParameterAdvice, now: Optional[datetime] = None) -> Optional[ParameterAdvice]:
        """
        Feed one advice event. Returns the emitted advice when the batching
        thresholds are crossed, otherwise None.
        """
        pid = self._resolve(advice.parameter_name)
        now = now or self.clock.now()
        definition = get_definition(pid)
        policy = definition.policy
        committed = False

        with self._lock:
            state = self._states[pid]
            self._refresh_lock(state, now)
            self._roll_daily_budget(state, now)

            current = state.current_value
            target = definition.clamp(advice.recommended_value)

            step_cap = abs(current) * policy.max_change_per_advice
            target = max(current - step_cap, min(current + step_cap, target))

            budget = abs(current) * state.remaining_budget_percent / 100.0
            target = max(current - budget, min(current + budget, target))
            target = definition.clamp(target)

            state.pending_events += 1
            state.pending_confidence += max(0.0, min(1.0, advice.confidence))
            alpha = policy.smoothing_alpha
            state.smoothed_value = alpha * target + (1.0 - alpha) * state.smoothed_value

            if state.manual_lock:
                logger.debug("Advice for %s held back by manual lock", pid.value)
                return None

            if state.pending_events < policy.min_events:
                return None
            if state.pending_confidence < policy.min_cumulative_confidence:
                return None

            change = target - current
            change_percent = _percent_change(current, target)
            smoothed_direction = state.smoothed_value - current
            if change_percent < state.deadband or change * smoothed_direction <= 0:
                state.pending_events = 0
                state.pending_confidence = 0.0
                return None

            emitted = ParameterAdvice(
                parameter_name=pid.value,
                current_value=current,
                recommended_value=target,
                direction=AdviceDirection.INCREASE if change > 0 else AdviceDirection.DECREASE,
                confidence=state.pending_confidence / state.pending_events,
                reason=f"{state.pending_events} events: {advice.reason}",
                timestamp=now,
            )
            state.pending_events = 0
            state.pending_confidence = 0.0
            if self.auto_apply:
                state.current_value = target
                state.daily_change_used += change_percent
                committed = True

        if committed:
            logger.info(
                "Parameter %s %s -> %s (confidence %.2f)",
                pid.value, round(current, 3), round(target, 3), emitted.confidence,
            )
            self.save()
        return emitted
