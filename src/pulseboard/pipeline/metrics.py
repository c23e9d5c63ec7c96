"""Response and completion latency series with JSON persistence.

Two independent bounded series are kept, newest first. Samples outside a
per-series sanity window are rejected at insert time, so parsing artifacts
(negative gaps, replies hours later) never reach the averages.

Persisted shape, compatible with earlier dashboard builds::

    {"responseTimes": [{"ms": 1200, "timestamp": 1771234567890, "source": "KP in #C0AF"}],
     "completionTimes": [...],
     "savedAt": 1771234567999}
"""

from __future__ import annotations

import bisect
import json
import os
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from pulseboard.config.logging import logger
from pulseboard.sessions.common import parse_timestamp, to_epoch_ms, utc_now

DEFAULT_CAPACITY = 200
RESPONSE_MAX_MS = 300_000
COMPLETION_MAX_MS = 600_000
DEFAULT_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class LatencySample:
    """One measured latency."""

    value_ms: int
    timestamp: datetime
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the metrics file and the metrics API."""
        return {
            "ms": self.value_ms,
            "timestamp": to_epoch_ms(self.timestamp),
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> LatencySample | None:
        """Parse a persisted sample; return ``None`` for unusable rows."""
        if not isinstance(payload, dict):
            return None
        try:
            value = int(payload.get("ms"))
        except (TypeError, ValueError):
            return None
        timestamp = parse_timestamp(payload.get("timestamp"))
        if timestamp is None:
            return None
        source = payload.get("source")
        if isinstance(source, dict):
            source = source.get("type")
        return cls(value_ms=value, timestamp=timestamp, source=str(source) if source else None)


def _sort_key(sample: LatencySample) -> float:
    """Ascending key that orders samples newest first."""
    return -sample.timestamp.timestamp()


class LatencySeries:
    """Bounded newest-first latency samples with a sanity window."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, max_ms: int = RESPONSE_MAX_MS) -> None:
        self.capacity = max(1, capacity)
        self.max_ms = max_ms
        self._samples: list[LatencySample] = []

    def __len__(self) -> int:
        return len(self._samples)

    def accepts(self, value_ms: float) -> bool:
        """Return whether a value lies inside the sanity window."""
        return 0 < value_ms <= self.max_ms

    def add(self, sample: LatencySample) -> bool:
        """Insert in timestamp order, evicting the oldest past capacity.

        A sample equal to a stored one is rejected: transcripts re-read after
        a restart measure the same reply again.
        """
        if not self.accepts(sample.value_ms) or sample in self._samples:
            return False
        bisect.insort(self._samples, sample, key=_sort_key)
        del self._samples[self.capacity :]
        return True

    def record(self, value_ms: float, source: str | None, at: datetime) -> bool:
        """Record one measured value taken at ``at``, truncated to the persisted precision."""
        at = at.replace(microsecond=at.microsecond // 1000 * 1000)
        return self.add(LatencySample(value_ms=int(round(value_ms)), timestamp=at, source=source))

    def extend(self, samples: Iterable[LatencySample]) -> int:
        """Merge samples, skipping exact duplicates; return accepted count."""
        return sum(1 for sample in samples if self.add(sample))

    def samples(self) -> list[LatencySample]:
        """Return a newest-first copy of the samples."""
        return list(self._samples)

    def average(self, window: timedelta, now: datetime) -> int:
        """Mean of samples newer than ``now - window``; 0 when none qualify."""
        cutoff = now - window
        recent = [s.value_ms for s in self._samples if s.timestamp > cutoff]
        if not recent:
            return 0
        return int(round(sum(recent) / len(recent)))


class MetricsStore:
    """JSON file holding both latency series between restarts."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> tuple[list[LatencySample], list[LatencySample]]:
        """Return persisted (response, completion) samples; empty on any failure."""
        if not self.path.exists():
            return [], []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("metrics file unreadable, starting empty: {}", exc)
            return [], []
        if not isinstance(payload, dict):
            logger.warning("metrics file has unexpected shape, starting empty: {}", self.path)
            return [], []
        return (
            self._parse_series(payload.get("responseTimes")),
            self._parse_series(payload.get("completionTimes")),
        )

    @staticmethod
    def _parse_series(raw: Any) -> list[LatencySample]:
        """Parse one persisted list, dropping malformed rows."""
        if not isinstance(raw, list):
            return []
        parsed = (LatencySample.from_dict(item) for item in raw)
        return [sample for sample in parsed if sample is not None]

    def save(
        self,
        response: list[LatencySample],
        completion: list[LatencySample],
        saved_at: datetime,
    ) -> None:
        """Write both series atomically via a temp file and ``os.replace``."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "responseTimes": [sample.to_dict() for sample in response],
            "completionTimes": [sample.to_dict() for sample in completion],
            "savedAt": to_epoch_ms(saved_at),
        }
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=True), encoding="utf-8")
        os.replace(tmp, self.path)


class MetricsAggregator:
    """Owns the response and completion series and their persistence."""

    def __init__(
        self,
        *,
        capacity: int = DEFAULT_CAPACITY,
        response_max_ms: int = RESPONSE_MAX_MS,
        completion_max_ms: int = COMPLETION_MAX_MS,
        window: timedelta = DEFAULT_WINDOW,
        store: MetricsStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.window = window
        self.store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._response = LatencySeries(capacity, response_max_ms)
        self._completion = LatencySeries(capacity, completion_max_ms)

    def record_response_latency(
        self, value_ms: float, source: str | None = None, at: datetime | None = None
    ) -> bool:
        """Record time from an incoming message to the first reply."""
        with self._lock:
            return self._response.record(value_ms, source, at or self._clock())

    def record_completion_latency(
        self, value_ms: float, source: str | None = None, at: datetime | None = None
    ) -> bool:
        """Record time from an incoming message to a final reply."""
        with self._lock:
            return self._completion.record(value_ms, source, at or self._clock())

    def average_response_latency(self, window: timedelta | None = None) -> int:
        """Average response latency over the trailing window."""
        with self._lock:
            span = self.window if window is None else window
            return self._response.average(span, self._clock())

    def average_completion_latency(self, window: timedelta | None = None) -> int:
        """Average completion latency over the trailing window."""
        with self._lock:
            span = self.window if window is None else window
            return self._completion.average(span, self._clock())

    def response_samples(self) -> list[LatencySample]:
        """Return a newest-first copy of the response series."""
        with self._lock:
            return self._response.samples()

    def completion_samples(self) -> list[LatencySample]:
        """Return a newest-first copy of the completion series."""
        with self._lock:
            return self._completion.samples()

    def load(self) -> int:
        """Merge persisted samples into memory; return how many were accepted."""
        if self.store is None:
            return 0
        response, completion = self.store.load()
        with self._lock:
            loaded = self._response.extend(response) + self._completion.extend(completion)
            counts = (len(self._response), len(self._completion))
        logger.info(
            "loaded {} response and {} completion samples from {}",
            counts[0],
            counts[1],
            self.store.path,
        )
        return loaded

    def save(self) -> bool:
        """Persist both series; failures are logged and reported as ``False``."""
        if self.store is None:
            return False
        with self._lock:
            response = self._response.samples()
            completion = self._completion.samples()
        try:
            self.store.save(response, completion, self._clock())
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("failed to save metrics to {}: {}", self.store.path, exc)
            return False
        return True

    def summary(self, recent: int = 10) -> dict[str, Any]:
        """Return averages, sample counts and the newest samples of each series."""
        now = self._clock()
        with self._lock:
            return {
                "avgResponseTime": self._response.average(self.window, now),
                "avgCompletionTime": self._completion.average(self.window, now),
                "responseSamples": len(self._response),
                "completionSamples": len(self._completion),
                "recentResponseTimes": [
                    s.to_dict() for s in self._response.samples()[:recent]
                ],
                "recentCompletionTimes": [
                    s.to_dict() for s in self._completion.samples()[:recent]
                ],
            }
