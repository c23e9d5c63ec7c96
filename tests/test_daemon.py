"""Tests for the periodic background task runner."""

from __future__ import annotations

import threading

from pulseboard.app.daemon import PeriodicTask, start_metrics_flusher
from pulseboard.pipeline.metrics import MetricsAggregator, MetricsStore
from tests.helpers import T0, FakeClock


def test_periodic_task_runs_and_survives_errors():
    calls = []
    done = threading.Event()

    def work():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("transient")
        if len(calls) >= 3:
            done.set()

    task = PeriodicTask("test-task", work, 0.01)
    task.start()
    try:
        assert done.wait(5)
    finally:
        task.stop()
    assert not task.running
    assert len(calls) >= 3


def test_start_twice_keeps_one_thread():
    task = PeriodicTask("test-task", lambda: None, 3600)
    task.start()
    first = task._thread
    task.start()
    assert task._thread is first
    task.stop()
    assert not task.running


def test_metrics_flusher_persists(tmp_path):
    path = tmp_path / "metrics.json"
    metrics = MetricsAggregator(store=MetricsStore(path), clock=FakeClock(T0))
    metrics.record_response_latency(900, at=T0)
    flusher = start_metrics_flusher(metrics, 0.01)
    try:
        for _ in range(500):
            if path.exists():
                break
            threading.Event().wait(0.01)
    finally:
        flusher.stop()
    assert path.exists()
