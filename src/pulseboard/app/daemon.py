"""Background periodic work: snapshot ticking and metrics flushing."""

from __future__ import annotations

import threading
from typing import Any, Callable

from pulseboard.config.logging import logger
from pulseboard.pipeline.metrics import MetricsAggregator


class PeriodicTask:
    """Run ``func`` every ``interval_seconds`` on a daemon thread until stopped.

    The first call happens one interval after ``start()``. Exceptions raised
    by ``func`` are logged and the loop keeps going.
    """

    def __init__(self, name: str, func: Callable[[], Any], interval_seconds: float) -> None:
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the loop thread; a second call while running is a no-op."""
        if self.running:
            return
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            args=(self._stop,),
            name=self.name,
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Signal the loop to exit and wait for it unless called from inside it."""
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _loop(self, stop: threading.Event) -> None:
        """Call the task until the stop event is set."""
        while not stop.wait(self.interval_seconds):
            try:
                self.func()
            except Exception as exc:
                logger.warning("{} cycle error: {}", self.name, exc)


def start_metrics_flusher(metrics: MetricsAggregator, interval_seconds: float) -> PeriodicTask:
    """Persist latency series every ``interval_seconds``."""
    task = PeriodicTask("pulseboard-metrics-flush", metrics.save, interval_seconds)
    task.start()
    logger.debug("metrics flusher started (every {}s)", interval_seconds)
    return task
