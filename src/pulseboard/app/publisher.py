"""Change-gated snapshot publishing and subscriber fan-out.

Subscribers receive ``full_sync`` envelopes::

    {"type": "full_sync", "payload": {...DashboardState...},
     "timestamp": "2026-02-16T10:02:03.120000+00:00", "sequence": 7}

A tick broadcasts only when the snapshot fingerprint changed, unless
``always_emit()`` holds (demo mode or no readable registry). Ticking runs
only while at least one subscriber is attached, and stops an idle-grace
delay after the last one leaves.
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pulseboard.app.daemon import PeriodicTask
from pulseboard.config.logging import logger
from pulseboard.pipeline.schemas import DashboardState
from pulseboard.sessions.common import utc_now

Envelope = dict[str, Any]
Callback = Callable[[Envelope], None]


class SchedulerState(str, Enum):
    """Lifecycle of the tick loop."""

    stopped = "stopped"
    running = "running"


class Scheduler:
    """Start/stop state machine around a ``PeriodicTask`` with an idle grace."""

    def __init__(self, tick: Callable[[], Any], interval: float, idle_grace: float) -> None:
        self.tick = tick
        self.interval = interval
        self.idle_grace = idle_grace
        self._lock = threading.Lock()
        self._state = SchedulerState.stopped
        self._task: PeriodicTask | None = None
        self._grace_timer: threading.Timer | None = None
        self._generation = 0

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is SchedulerState.running

    def start(self) -> bool:
        """Ensure ticking; cancels a pending idle stop. Returns whether it started."""
        with self._lock:
            self._generation += 1
            self._cancel_grace()
            if self._state is SchedulerState.running:
                return False
            self._task = PeriodicTask("pulseboard-publisher", self.tick, self.interval)
            self._task.start()
            self._state = SchedulerState.running
        logger.info("snapshot polling started (every {}s)", self.interval)
        return True

    def request_stop(self) -> None:
        """Stop after the idle grace unless ``start()`` is called first."""
        with self._lock:
            if self._state is SchedulerState.stopped:
                return
            if self.idle_grace <= 0:
                self._stop_locked()
                return
            self._cancel_grace()
            timer = threading.Timer(self.idle_grace, self._grace_expired, args=(self._generation,))
            timer.daemon = True
            self._grace_timer = timer
            timer.start()

    def stop(self) -> None:
        """Stop immediately."""
        with self._lock:
            self._cancel_grace()
            self._stop_locked()

    def _grace_expired(self, generation: int) -> None:
        with self._lock:
            self._grace_timer = None
            if generation != self._generation:
                return
            self._stop_locked()

    def _cancel_grace(self) -> None:
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None

    def _stop_locked(self) -> None:
        if self._state is SchedulerState.stopped:
            return
        if self._task is not None:
            self._task.stop()
            self._task = None
        self._state = SchedulerState.stopped
        logger.info("snapshot polling stopped (no subscribers)")


@dataclass(eq=False)
class Subscription:
    """Handle returned by ``subscribe``; ``active`` turns false once dropped."""

    callback: Callback
    id: int
    active: bool = field(default=True)


class SnapshotPublisher:
    """Builds snapshots on a cadence and pushes changed ones to subscribers."""

    def __init__(
        self,
        build: Callable[[], DashboardState],
        interval: float = 2.0,
        idle_grace: float = 5.0,
        always_emit: Callable[[], bool] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._build = build
        self._always_emit = always_emit or (lambda: False)
        self._clock = clock
        self._lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._subscribers: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._sequence = itertools.count(1)
        self._latest: DashboardState | None = None
        self._fingerprint: str | None = None
        self.scheduler = Scheduler(self.tick, interval, idle_grace)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def current(self) -> DashboardState | None:
        """Return the latest built snapshot, if any."""
        with self._lock:
            return self._latest

    def refresh(self) -> DashboardState:
        """Build a fresh snapshot and keep it as the latest, without broadcasting."""
        state = self._build()
        with self._lock:
            self._latest = state
        return state

    def snapshot(self) -> DashboardState:
        """Latest snapshot while ticking, otherwise a freshly built one."""
        latest = self.current()
        if latest is not None and self.scheduler.running:
            return latest
        return self.refresh()

    def _envelope(self, state: DashboardState) -> Envelope:
        return {
            "type": "full_sync",
            "payload": state.to_payload(),
            "timestamp": self._clock().isoformat(),
            "sequence": next(self._sequence),
        }

    def tick(self) -> bool:
        """Build once and broadcast if changed. Returns whether it broadcast."""
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("previous tick still running, skipping")
            return False
        try:
            state = self._build()
            fingerprint = state.fingerprint()
            with self._lock:
                self._latest = state
                if fingerprint == self._fingerprint and not self._always_emit():
                    return False
                self._fingerprint = fingerprint
                envelope = self._envelope(state)
                for subscription in list(self._subscribers.values()):
                    self._deliver(subscription, envelope)
                remaining = len(self._subscribers)
            logger.debug("broadcast #{} to {} subscribers", envelope["sequence"], remaining)
            return True
        finally:
            self._tick_lock.release()

    def _deliver(self, subscription: Subscription, envelope: Envelope) -> bool:
        """Call one subscriber; drop it when the callback raises. Lock held."""
        try:
            subscription.callback(envelope)
        except Exception as exc:
            logger.warning("dropping subscriber {}: {}", subscription.id, exc)
            subscription.active = False
            self._subscribers.pop(subscription.id, None)
            return False
        return True

    def subscribe(self, callback: Callback) -> Subscription:
        """Attach a subscriber, send it a snapshot, and start ticking.

        While polling is stopped the snapshot is built fresh, so a client
        arriving after an idle spell never sees the last pre-idle state.
        """
        state = self.snapshot()
        subscription = Subscription(callback=callback, id=next(self._ids))
        with self._lock:
            if self._latest is None or not self.scheduler.running:
                self._latest = state
                # The next tick compares against what this client received.
                self._fingerprint = state.fingerprint()
            self._subscribers[subscription.id] = subscription
            delivered = self._deliver(subscription, self._envelope(self._latest))
            count = len(self._subscribers)
        if delivered:
            logger.info("subscriber {} connected ({} total)", subscription.id, count)
            self.scheduler.start()
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a subscriber; the last one leaving schedules an idle stop."""
        with self._lock:
            subscription.active = False
            self._subscribers.pop(subscription.id, None)
            count = len(self._subscribers)
        logger.info("subscriber {} disconnected ({} remaining)", subscription.id, count)
        if count == 0:
            self.scheduler.request_stop()

    def close(self) -> None:
        """Drop every subscriber and stop ticking now."""
        with self._lock:
            for subscription in self._subscribers.values():
                subscription.active = False
            self._subscribers.clear()
        self.scheduler.stop()
