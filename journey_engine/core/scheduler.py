"""Background timer sweep that resumes executions whose wake time has passed."""

import threading
from datetime import datetime
from typing import Callable, Optional

from ..models.core import WakeCondition
from .clock import utcnow
from .collaborators import WakeScheduler
from .exceptions import JourneyEngineError
from .logging import get_logger

logger = get_logger(__name__)


class SweepScheduler(WakeScheduler):
    """
    Periodically calls ``ExecutionEngine.process_due_wakeups``.

    The sweep runs every ``interval`` seconds, and earlier when an execution
    suspends with a wake time sooner than the next planned sweep. Wake
    conditions themselves live in the execution rows, so a restart loses
    nothing: the first sweep picks up everything that became due meanwhile.
    """

    def __init__(self, interval: float = 60.0, clock: Callable[[], datetime] = utcnow):
        self._interval = interval
        self._clock = clock
        self._engine = None
        self._next_wake: Optional[datetime] = None
        self._lock = threading.Lock()
        self._nudge = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def bind(self, engine) -> None:
        self._engine = engine

    def schedule_wake(self, execution_id: str, wake_condition: WakeCondition) -> None:
        due = wake_condition.due_at
        if due is None:
            # event waits without a timeout are resumed by the event itself
            return
        with self._lock:
            if self._next_wake is None or due < self._next_wake:
                self._next_wake = due
                self._nudge.set()
        logger.debug(f"Wake for execution {execution_id} scheduled at {due.isoformat()}")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="journey-wake-sweep", daemon=True)
        self._thread.start()
        logger.info(f"Wake scheduler started with interval {self._interval}s")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._nudge.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Wake scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep(self) -> int:
        """Run one sweep now. Returns the number of executions resumed."""
        if self._engine is None:
            logger.warning("Wake scheduler has no engine bound; sweep skipped")
            return 0
        now = self._clock()
        with self._lock:
            if self._next_wake is not None and self._next_wake <= now:
                self._next_wake = None
        try:
            return len(self._engine.process_due_wakeups(now))
        except JourneyEngineError as e:
            logger.error(f"Wake sweep failed: {e.message}")
            return 0

    def _seconds_until_next(self) -> float:
        with self._lock:
            if self._next_wake is None:
                return self._interval
            remaining = (self._next_wake - self._clock()).total_seconds()
        return max(0.0, min(self._interval, remaining))

    def _run(self) -> None:
        while not self._stop.is_set():
            nudged = self._nudge.wait(timeout=self._seconds_until_next())
            self._nudge.clear()
            if self._stop.is_set():
                break
            if nudged and self._seconds_until_next() > 0:
                # an earlier wake was scheduled; wait for it instead
                continue
            self.sweep()
