from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from fcl.api.interfaces import Clock, SystemClock
from fcl.api.models import MealSession, ParameterAdvice
from fcl.core.config import DEFAULT_ENGINE_CONFIG, EngineConfig
from fcl.learning.consolidator import AdviceConsolidator
from fcl.learning.optimizer import MealOptimizer
from fcl.learning.parameter_store import ParameterStateStore

logger = logging.getLogger("fcl")

AdviceSink = Callable[[ParameterAdvice], None]


@dataclass
class OptimizationTask:
    session: MealSession
    submitted_at: datetime


class OptimizationWorker:
    """
    Runs meal optimization off the tick path.

    Closed meals are queued. A run happens at most once per cooldown, takes a
    small batch of the newest meals and drops stale ones that a newer meal
    has superseded. A failing run keeps its tasks queued for the next one.
    """

    def __init__(
        self,
        parameters: ParameterStateStore,
        consolidator: AdviceConsolidator,
        optimizer: Optional[MealOptimizer] = None,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None,
        sink: Optional[AdviceSink] = None,
    ):
        self.parameters = parameters
        self.consolidator = consolidator
        self.config = config or DEFAULT_ENGINE_CONFIG
        self.optimizer = optimizer or MealOptimizer(self.config)
        self.clock = clock or SystemClock()
        self.sink = sink
        self.last_run: Optional[datetime] = None
        self._pending: List[OptimizationTask] = []
        self._queue: "queue.Queue[Optional[OptimizationTask]]" = queue.Queue()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    # Submission

    def submit(self, session: MealSession, now: Optional[datetime] = None) -> bool:
        """Queue a closed meal once. Returns False if it was already scheduled."""
        if session.optimization_scheduled:
            return False
        session.optimization_scheduled = True
        task = OptimizationTask(session, now or self.clock.now())
        if self._thread is not None and self._thread.is_alive():
            self._queue.put(task)
        else:
            with self._lock:
                self._pending.append(task)
        return True

    @property
    def pending(self) -> List[MealSession]:
        with self._lock:
            return [t.session for t in self._pending]

    # Execution

    def _drop_stale(self, now: datetime) -> None:
        if not self._pending:
            return
        newest = max(t.session.start_time for t in self._pending)
        limit = timedelta(minutes=self.config.stale_task_minutes)
        kept = []
        for task in self._pending:
            stale = now - task.session.start_time > limit and task.session.start_time < newest
            if stale:
                logger.warning("Dropping stale optimization task for meal %s", task.session.id)
            else:
                kept.append(task)
        self._pending = kept

    def run_pending(self, now: Optional[datetime] = None) -> List[ParameterAdvice]:
        now = now or self.clock.now()
        with self._lock:
            if self.last_run is not None and now - self.last_run < timedelta(minutes=self.config.worker_cooldown_minutes):
                return []
            self._drop_stale(now)
            if not self._pending:
                return []
            self._pending.sort(key=lambda t: t.session.start_time)
            batch = self._pending[-self.config.worker_batch_size:]
            self.last_run = now

        emitted: List[ParameterAdvice] = []
        try:
            current = self.parameters.values()
            advices: List[ParameterAdvice] = []
            for task in batch:
                advices.extend(self.optimizer.optimize(task.session, current, now))
            if advices:
                emitted = self.consolidator.submit(advices, now)
        except Exception:
            logger.exception("Meal optimization failed; %d meal(s) stay queued", len(batch))
            return []

        with self._lock:
            self._pending = [t for t in self._pending if t not in batch]
        for advice in emitted:
            self._publish(advice)
        return emitted

    def _publish(self, advice: ParameterAdvice) -> None:
        if self.sink is None:
            return
        try:
            self.sink(advice)
        except Exception:
            logger.exception("Advice sink failed for %s", advice.parameter_name)

    # Background thread

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._loop, name="fcl-optimizer", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout)
        self._thread = None

    def _loop(self) -> None:
        while True:
            task = self._queue.get()
            if task is None:
                break
            with self._lock:
                self._pending.append(task)
            self.run_pending()
