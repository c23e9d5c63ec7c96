"""Windowed activity dedup and the retained recent-activity log."""

from __future__ import annotations

import re
import threading
from collections import OrderedDict
from collections.abc import Iterable
from datetime import datetime, timedelta

from pulseboard.pipeline.schemas import ActivityEvent

_WHITESPACE_RE = re.compile(r"\s+")

# How long content keys are remembered relative to the newest event seen.
_KEY_HORIZON = timedelta(hours=24)
_MAX_IDS = 2000


def normalize_description(text: str, prefix_chars: int = 80) -> str:
    """Case-fold, collapse whitespace and truncate to a fixed prefix."""
    return _WHITESPACE_RE.sub(" ", text or "").strip().casefold()[:prefix_chars]


class Deduplicator:
    """Suppress events already seen by id or by content within a time window."""

    def __init__(
        self,
        window: timedelta = timedelta(seconds=30),
        prefix_chars: int = 80,
        max_ids: int = _MAX_IDS,
    ) -> None:
        self.window = window
        self.prefix_chars = prefix_chars
        self.max_ids = max_ids
        self._ids: OrderedDict[str, datetime] = OrderedDict()
        self._keys: dict[tuple[str, str], list[datetime]] = {}
        self._newest: datetime | None = None

    def _key(self, event: ActivityEvent) -> tuple[str, str]:
        return event.type, normalize_description(event.description, self.prefix_chars)

    def is_duplicate(self, event: ActivityEvent) -> bool:
        """Return whether ``event`` repeats one already remembered."""
        if event.id in self._ids:
            return True
        for seen in self._keys.get(self._key(event), ()):
            if abs(event.timestamp - seen) <= self.window:
                return True
        return False

    def remember(self, event: ActivityEvent) -> None:
        """Record ``event`` so later near-identical candidates are suppressed."""
        self._ids[event.id] = event.timestamp
        self._ids.move_to_end(event.id)
        self._keys.setdefault(self._key(event), []).append(event.timestamp)
        if self._newest is None or event.timestamp > self._newest:
            self._newest = event.timestamp
        self._prune()

    def admit(self, event: ActivityEvent) -> bool:
        """Remember and return ``True`` unless the event is a duplicate."""
        if self.is_duplicate(event):
            return False
        self.remember(event)
        return True

    def _prune(self) -> None:
        while len(self._ids) > self.max_ids:
            self._ids.popitem(last=False)
        if self._newest is None:
            return
        cutoff = self._newest - _KEY_HORIZON
        for key in list(self._keys):
            kept = [ts for ts in self._keys[key] if ts >= cutoff]
            if kept:
                self._keys[key] = kept
            else:
                del self._keys[key]


class ActivityLog:
    """Bounded, newest-first store of admitted activity events."""

    def __init__(self, deduplicator: Deduplicator | None = None, limit: int = 50) -> None:
        self.deduplicator = deduplicator or Deduplicator()
        self.limit = max(1, limit)
        self._events: list[ActivityEvent] = []
        self._lock = threading.Lock()

    def admit(self, events: Iterable[ActivityEvent]) -> list[ActivityEvent]:
        """Admit non-duplicate events and return the ones that were new."""
        admitted: list[ActivityEvent] = []
        with self._lock:
            for event in events:
                if self.deduplicator.admit(event):
                    admitted.append(event)
            if admitted:
                merged = self._events + admitted
                merged.sort(key=lambda e: e.timestamp, reverse=True)
                self._events = merged[: self.limit]
        return admitted

    def recent(self, limit: int | None = None) -> list[ActivityEvent]:
        """Return retained events, newest first."""
        with self._lock:
            return list(self._events[: limit or self.limit])

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
