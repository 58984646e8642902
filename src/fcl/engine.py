"""
Public entry point.

`FCLEngine.tick` is the only boundary a host needs: it always returns a
DoseDecision. Input and configuration problems and unexpected faults are
turned into a zero-dose decision with a readable reason.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence

from fcl.api.interfaces import Clock, GlucoseHistoryProvider, SystemClock
from fcl.api.models import BGSample, DoseDecision, MealSession, ParameterAdvice
from fcl.core.config import DEFAULT_ENGINE_CONFIG, EngineConfig
from fcl.core.dosing.context import DosingContext
from fcl.core.dosing.engine import DoseEngine
from fcl.core.errors import ErrorKind, Result
from fcl.core.parameters import PARAMETER_DEFINITIONS, is_learnable
from fcl.core.preferences import PreferenceStore
from fcl.core.safety.config import SafetyConfig
from fcl.learning.consolidator import AdviceConsolidator
from fcl.learning.parameter_store import ParameterStateStore
from fcl.learning.worker import OptimizationWorker
from fcl.utils.persistence import PersistentKeyValueStore
from fcl.utils.telemetry import TelemetryLog, TelemetryRecord

logger = logging.getLogger("fcl")

AdviceSink = Callable[[ParameterAdvice], None]


class FCLEngine:
    def __init__(
        self,
        preferences: Optional[PreferenceStore] = None,
        config: Optional[EngineConfig] = None,
        safety_config: Optional[SafetyConfig] = None,
        store: Optional[PersistentKeyValueStore] = None,
        clock: Optional[Clock] = None,
        history: Optional[GlucoseHistoryProvider] = None,
        telemetry: Optional[TelemetryLog] = None,
        history_minutes: int = 180,
        start_worker: bool = False,
    ):
        self.preferences = preferences or PreferenceStore()
        self.config = config or DEFAULT_ENGINE_CONFIG
        self.safety_config = safety_config or SafetyConfig()
        self.clock = clock or SystemClock()
        self.history = history
        self.telemetry = telemetry
        self.history_minutes = history_minutes

        seed = {pid.value: self.preferences.get_float(pid.value) for pid in PARAMETER_DEFINITIONS}
        self.parameters = ParameterStateStore(
            store=store,
            clock=self.clock,
            config=self.config,
            initial_values=seed,
            auto_apply=bool(self.preferences.get("auto_apply_advice")),
        )
        self.consolidator = AdviceConsolidator(self.parameters, store, self.clock, self.config)
        self.dose_engine = DoseEngine(self.config, self.safety_config)
        self.worker = OptimizationWorker(
            self.parameters,
            self.consolidator,
            clock=self.clock,
            config=self.config,
            sink=self._publish_advice,
        )
        self._sinks: List[AdviceSink] = []
        self._tick_lock = threading.Lock()
        self.closed_sessions: List[MealSession] = []
        if telemetry is not None:
            self._sinks.append(telemetry.record_advice)
        if start_worker:
            self.worker.start()

    # Advice stream

    def add_advice_sink(self, sink: AdviceSink) -> None:
        self._sinks.append(sink)

    def _publish_advice(self, advice: ParameterAdvice) -> None:
        for sink in self._sinks:
            try:
                sink(advice)
            except Exception:
                logger.exception("Advice sink %r failed", sink)

    # Tick

    def context(self, now: Optional[datetime] = None) -> DosingContext:
        return DosingContext.resolve(
            self.preferences, self.parameters.values(), now or self.clock.now(), self.safety_config
        )

    def tick(self, samples: Optional[Sequence[BGSample]] = None) -> DoseDecision:
        """One decision. Never raises; callers must not run ticks concurrently."""
        now = self.clock.now()
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Tick at %s skipped: previous tick still running", now)
            return DoseDecision.safe("Tick skipped: previous tick still running", "busy", now)
        history: Sequence[BGSample] = ()
        try:
            result = self._evaluate(samples, now)
            history = result.value[1] if result.ok and result.value else ()
        finally:
            self._tick_lock.release()

        if result.ok and result.value is not None:
            decision = result.value[0]
        else:
            decision = self._error_decision(result, now)
        self._record_telemetry(history[-1] if history else None, decision, now)
        return decision

    def _evaluate(self, samples: Optional[Sequence[BGSample]], now: datetime) -> "Result[Any]":
        try:
            if samples is None:
                samples = self.history.get_history(self.history_minutes, now) if self.history else []
            ctx = self.context(now)
            outcome = self.dose_engine.evaluate(ctx, samples, self.parameters.values())
            if outcome.closed_session is not None:
                self.closed_sessions.append(outcome.closed_session)
                self.worker.submit(outcome.closed_session, now)
            return Result.success((outcome.decision, list(samples)))
        except Exception as exc:
            return Result.from_exception(exc)

    @staticmethod
    def _error_decision(result: "Result[Any]", now: datetime) -> DoseDecision:
        if result.kind is ErrorKind.INPUT:
            logger.warning("Tick withheld, input error: %s", result.message)
            return DoseDecision.safe(f"Insufficient or invalid input: {result.message}", result.kind.value, now)
        if result.kind is ErrorKind.CONFIG:
            logger.warning("Tick withheld, configuration error: %s", result.message)
            return DoseDecision.safe(f"Configuration error: {result.message}", result.kind.value, now)
        logger.error("Tick failed with internal fault: %s", result.message)
        return DoseDecision.safe(f"Internal fault: {result.message}", ErrorKind.COMPUTATION.value, now)

    def _record_telemetry(self, sample: Optional[BGSample], decision: DoseDecision, now: datetime) -> None:
        if self.telemetry is None:
            return
        try:
            self.telemetry.record_tick(TelemetryRecord.from_tick(sample, decision, now))
        except Exception as exc:
            logger.warning("Telemetry record dropped: %s", exc)

    # Parameters

    def set_parameter(self, name: str, value: Any) -> None:
        """Manual edit from the user. Learnable parameters get a dwell lock."""
        now = self.clock.now()
        self.preferences.set(name, value)
        if is_learnable(name):
            self.parameters.register_manual_adjustment(
                name, float(value), now, dwell_hours=float(self.preferences.get("manual_dwell_hours"))
            )

    def run_optimizer(self, now: Optional[datetime] = None) -> List[ParameterAdvice]:
        return self.worker.run_pending(now)

    def close(self) -> None:
        self.worker.stop()
        self.parameters.save()
        self.consolidator.save()
