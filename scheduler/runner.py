# scheduler/runner.py
from __future__ import annotations
import random
import threading
from typing import Any, Callable, Optional

from utils.logging import get_logger

log = get_logger("scheduler")


class PeriodicTask:
    """
    Runs ``fn`` every ``interval_sec`` (± jitter) until stopped. The wait is
    an Event, so ``stop()`` takes effect immediately instead of after the
    current sleep.
    """

    def __init__(self, fn: Callable[[], Any], interval_sec: float, jitter_sec: float = 0.0,
                 run_immediately: bool = True, name: str = "periodic-task"):
        if interval_sec <= 0:
            raise ValueError("interval_sec must be > 0")
        self.fn = fn
        self.interval_sec = float(interval_sec)
        self.jitter_sec = max(0.0, float(jitter_sec))
        self.run_immediately = run_immediately
        self.name = name
        self.runs = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _next_delay(self) -> float:
        if not self.jitter_sec:
            return self.interval_sec
        return max(0.0, self.interval_sec + random.uniform(-self.jitter_sec, self.jitter_sec))

    def _tick(self) -> None:
        try:
            self.fn()
        except Exception:
            log.exception("%s: job failed; will retry next interval", self.name)
        self.runs += 1

    def run_forever(self) -> None:
        """Blocking loop in the calling thread."""
        if self.run_immediately and not self._stop.is_set():
            self._tick()
        while not self._stop.wait(self._next_delay()):
            self._tick()

    def start(self) -> "PeriodicTask":
        if self._thread is not None and self._thread.is_alive():
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name=self.name, daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __enter__(self) -> "PeriodicTask":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()

