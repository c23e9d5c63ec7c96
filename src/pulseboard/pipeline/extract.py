"""Turn transcript entries into activity events and latency samples.

Each session keeps a ``SessionCursor``. Only entries whose timestamp is
strictly newer than the cursor's high-water mark at the start of a pass are
processed, so re-reading the same tail never re-emits events or re-records
latency. Pending user turns live on the cursor too, which lets a reply that
lands in a later pass still resolve against the message it answers.
"""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from pulseboard.config.logging import logger
from pulseboard.config.settings import ExtractConfig
from pulseboard.pipeline.matchers import (
    DEFAULT_MATCHERS,
    IncomingMatcher,
    extract_source,
    format_source,
    is_noise,
    match_incoming,
)
from pulseboard.pipeline.metrics import MetricsAggregator
from pulseboard.pipeline.schemas import ActivityEvent, Source
from pulseboard.sessions.store import Session, SessionRegistry, TranscriptEntry

DEFAULT_EXTRACT = ExtractConfig(
    description_max_chars=200,
    min_incoming_chars=2,
    min_reply_chars=10,
    completion_min_chars=100,
    partial_marker="...",
    suppress_markers=("NO_REPLY", "HEARTBEAT"),
    noise_markers=("HEARTBEAT", "System:"),
    spawn_tools=("sessions_spawn",),
)


@dataclass
class SessionCursor:
    """Per-session extraction progress and unresolved conversation state."""

    high_water: datetime | None = None
    pending_since: datetime | None = None
    pending_source: Source | None = None
    conversation_start: datetime | None = None

    def clear_pending(self) -> None:
        self.pending_since = None
        self.pending_source = None


@dataclass(frozen=True)
class CompletionPolicy:
    """Decide whether an assistant reply closes the conversation."""

    min_chars: int = 100
    partial_marker: str = "..."

    def is_final(self, text: str) -> bool:
        if len(text) > self.min_chars:
            return True
        return not self.partial_marker or self.partial_marker not in text


def make_event_id(category: str, description: str, timestamp: datetime) -> str:
    """Derive a stable event id from its content and time."""
    digest = hashlib.sha1(
        f"{category}\x00{description}\x00{timestamp.isoformat()}".encode("utf-8")
    ).hexdigest()
    return f"{category}-{digest[:16]}"


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() * 1000))


class EventExtractor:
    """Stateful transcript-to-activity extractor shared by all sessions."""

    def __init__(
        self,
        registry: SessionRegistry,
        metrics: MetricsAggregator,
        config: ExtractConfig | None = None,
        matchers: tuple[IncomingMatcher, ...] = DEFAULT_MATCHERS,
    ) -> None:
        self.registry = registry
        self.metrics = metrics
        self.config = config or DEFAULT_EXTRACT
        self.matchers = matchers
        self.policy = CompletionPolicy(
            min_chars=self.config.completion_min_chars,
            partial_marker=self.config.partial_marker,
        )
        self._cursors: dict[str, SessionCursor] = {}
        self._lock = threading.Lock()

    def cursor(self, session_key: str) -> SessionCursor | None:
        """Return a copy of the cursor for ``session_key``, if one exists."""
        with self._lock:
            found = self._cursors.get(session_key)
            return replace(found) if found is not None else None

    def has_pending(self, session_key: str, now: datetime, timeout_seconds: float) -> bool:
        """Return whether an incoming message is unanswered and still fresh."""
        with self._lock:
            found = self._cursors.get(session_key)
            if found is None or found.pending_since is None:
                return False
            return (now - found.pending_since).total_seconds() < timeout_seconds

    def extract(self, session: Session) -> list[ActivityEvent]:
        """Process new transcript entries of ``session`` and return their events."""
        entries = self.registry.recent_entries(session)
        events: list[ActivityEvent] = []
        with self._lock:
            cursor = self._cursors.setdefault(session.key, SessionCursor())
            start = cursor.high_water
            newest = start
            for entry in entries:
                timestamp = entry.timestamp
                if timestamp is None:
                    continue
                if start is not None and timestamp <= start:
                    continue
                if entry.role == "user":
                    events.extend(self._on_user(session, entry, timestamp, cursor))
                elif entry.role == "assistant":
                    events.extend(self._on_assistant(session, entry, timestamp, cursor))
                if newest is None or timestamp > newest:
                    newest = timestamp
            cursor.high_water = newest
        if events:
            logger.debug("extracted {} events from {}", len(events), session.key)
        return events

    def _truncate(self, text: str) -> str:
        return text.strip()[: self.config.description_max_chars]

    def _on_user(
        self,
        session: Session,
        entry: TranscriptEntry,
        timestamp: datetime,
        cursor: SessionCursor,
    ) -> list[ActivityEvent]:
        text = entry.text
        source = extract_source(session.key, text)
        cursor.pending_since = timestamp
        cursor.pending_source = source
        if cursor.conversation_start is None:
            cursor.conversation_start = timestamp

        incoming = match_incoming(text, self.matchers)
        if incoming is None:
            return []
        if is_noise(incoming.text, self.config.noise_markers, self.config.min_incoming_chars):
            return []
        attributed = source.model_copy(update={"user": incoming.sender})
        description = self._truncate(incoming.text)
        return [
            ActivityEvent(
                id=make_event_id("incoming", description, timestamp),
                type="incoming",
                description=description,
                timestamp=timestamp,
                status="completed",
                source=attributed,
                source_display=format_source(attributed),
            )
        ]

    def _on_assistant(
        self,
        session: Session,
        entry: TranscriptEntry,
        timestamp: datetime,
        cursor: SessionCursor,
    ) -> list[ActivityEvent]:
        events = self._spawn_events(entry, timestamp)
        if cursor.pending_since is None:
            return events

        source = cursor.pending_source
        source_tag = format_source(source)
        response_ms = _elapsed_ms(cursor.pending_since, timestamp)
        self.metrics.record_response_latency(response_ms, source_tag, timestamp)

        text = entry.text.strip()
        if self._is_reportable(text):
            if cursor.conversation_start is not None and self.policy.is_final(text):
                completion_ms = _elapsed_ms(cursor.conversation_start, timestamp)
                self.metrics.record_completion_latency(completion_ms, source_tag, timestamp)
                cursor.conversation_start = None
            description = self._truncate(text)
            events.append(
                ActivityEvent(
                    id=make_event_id("message", description, timestamp),
                    type="message",
                    description=description,
                    timestamp=timestamp,
                    status="completed",
                    duration=response_ms if response_ms > 0 else None,
                    source=source,
                    source_display=source_tag,
                )
            )
        cursor.clear_pending()
        return events

    def _is_reportable(self, text: str) -> bool:
        if len(text) <= self.config.min_reply_chars:
            return False
        return not any(marker in text for marker in self.config.suppress_markers)

    def _spawn_events(self, entry: TranscriptEntry, timestamp: datetime) -> list[ActivityEvent]:
        events: list[ActivityEvent] = []
        for block in entry.tool_uses():
            if str(block.get("name") or "") not in self.config.spawn_tools:
                continue
            payload: Any = block.get("input") or block.get("arguments") or {}
            if not isinstance(payload, dict):
                payload = {}
            label = str(payload.get("label") or payload.get("task") or "sub-agent").strip()
            description = self._truncate(f"Spawned sub-agent: {label}")
            events.append(
                ActivityEvent(
                    id=str(block.get("id") or make_event_id("subagent", description, timestamp)),
                    type="subagent",
                    description=description,
                    timestamp=timestamp,
                    status="running",
                    source=Source(type="subagent"),
                    source_display="Sub-agent",
                )
            )
        return events
