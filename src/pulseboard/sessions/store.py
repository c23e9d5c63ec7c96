"""Read-only access to the agent runtime's session registry and transcripts.

The registry is a JSON object mapping session key to a record such as::

    {"agent:main:slack:channel:C0AF:user:U01": {
        "sessionId": "8d1c...", "updatedAt": 1771234567890,
        "sessionFile": "/root/.openclaw/agents/main/sessions/8d1c....jsonl",
        "label": "...", "model": "claude-opus-4-5"}}

Transcripts are append-only JSONL files of turn records. Nothing here
raises on missing or malformed data; callers get empty results instead.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pulseboard.sessions.common import (
    parse_timestamp,
    read_json_object,
    tail_lines,
)

_DM_KEY_RE = re.compile(r":(?:dm|direct):|:(?:channel:)?D[A-Z0-9]{6,}(?::|$)")


class SessionKind(str, Enum):
    """Session categories the dashboard distinguishes."""

    primary = "primary"
    direct = "direct"
    scheduled = "scheduled"
    subagent = "subagent"


def classify_session_kind(key: str) -> SessionKind:
    """Derive the session kind from its registry key."""
    if "subagent:" in key:
        return SessionKind.subagent
    if "cron:" in key:
        return SessionKind.scheduled
    if _DM_KEY_RE.search(key):
        return SessionKind.direct
    return SessionKind.primary


@dataclass(frozen=True)
class Session:
    """One registry entry, normalized."""

    key: str
    session_id: str
    kind: SessionKind
    created_at: datetime | None = None
    updated_at: datetime | None = None
    transcript_path: Path | None = None
    model: str | None = None
    label: str | None = None
    task: str | None = None

    @property
    def is_thread(self) -> bool:
        """Return whether the session is a thread off a channel session."""
        return "thread" in self.key

    @property
    def is_cron_run(self) -> bool:
        """Return whether this is one execution of a cron job."""
        return self.kind is SessionKind.scheduled and ":run:" in self.key

    @property
    def cron_id(self) -> str:
        """Return the cron job id (``agent:main:cron:<id>[:run:<run>]``)."""
        parts = self.key.split(":")
        if len(parts) > 3 and parts[3]:
            return parts[3]
        return self.session_id


@dataclass(frozen=True)
class TranscriptEntry:
    """One parsed transcript line."""

    role: str
    content: Any
    timestamp: datetime | None

    @property
    def text(self) -> str:
        """Flatten the entry content into plain text from ``text`` blocks."""
        if isinstance(self.content, str):
            return self.content
        if not isinstance(self.content, list):
            return ""
        parts: list[str] = []
        for block in self.content:
            if isinstance(block, dict) and block.get("type") == "text":
                value = str(block.get("text") or "")
                if value:
                    parts.append(value)
        return "\n".join(parts)

    def tool_uses(self) -> list[dict[str, Any]]:
        """Return ``tool_use`` / ``toolCall`` blocks carried by the entry."""
        if not isinstance(self.content, list):
            return []
        return [
            block
            for block in self.content
            if isinstance(block, dict) and block.get("type") in ("tool_use", "toolCall")
        ]


def parse_entry(line: str) -> TranscriptEntry | None:
    """Parse one JSONL line; return ``None`` for malformed or shapeless rows."""
    try:
        payload = json.loads(line)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(payload, dict):
        return None
    message = payload.get("message")
    msg = message if isinstance(message, dict) else payload
    role = str(msg.get("role") or "").strip().lower()
    if not role:
        return None
    raw_ts = msg.get("timestamp") or payload.get("timestamp")
    return TranscriptEntry(
        role=role,
        content=msg.get("content"),
        timestamp=parse_timestamp(raw_ts),
    )


def resolve_transcript_path(
    sessions_dir: Path, record: dict[str, Any]
) -> Path | None:
    """Resolve where a registry record's transcript lives on disk."""
    raw = str(record.get("sessionFile") or "").strip()
    if raw:
        candidate = Path(raw).expanduser()
        if candidate.is_absolute() and candidate.exists():
            return candidate
        return sessions_dir / candidate.name
    session_id = str(record.get("sessionId") or "").strip()
    if session_id:
        return sessions_dir / f"{session_id}.jsonl"
    return None


def _optional_text(value: Any) -> str | None:
    """Return stripped text or ``None`` for empty values."""
    text = str(value or "").strip()
    return text or None


def read_sessions(registry_path: Path, sessions_dir: Path | None = None) -> list[Session]:
    """Read all registry records as ``Session`` objects (empty on failure)."""
    payload = read_json_object(registry_path)
    if not payload:
        return []
    base = sessions_dir or registry_path.parent
    sessions: list[Session] = []
    for key, record in payload.items():
        if not isinstance(record, dict):
            continue
        key = str(key)
        updated = parse_timestamp(record.get("updatedAt"))
        sessions.append(
            Session(
                key=key,
                session_id=str(record.get("sessionId") or key),
                kind=classify_session_kind(key),
                created_at=parse_timestamp(record.get("createdAt")) or updated,
                updated_at=updated,
                transcript_path=resolve_transcript_path(base, record),
                model=_optional_text(record.get("model")),
                label=_optional_text(record.get("label") or record.get("displayName")),
                task=_optional_text(record.get("task")),
            )
        )
    return sessions


class SessionRegistry:
    """Registry + transcript reader bound to one sessions directory."""

    def __init__(self, registry_path: Path, sessions_dir: Path | None = None, tail_limit: int = 100) -> None:
        """Store paths and the bounded tail size used for transcript reads."""
        self.registry_path = registry_path
        self.sessions_dir = sessions_dir or registry_path.parent
        self.tail_limit = tail_limit

    def available(self) -> bool:
        """Return whether the registry file can currently be read."""
        return read_json_object(self.registry_path) is not None

    def sessions(self) -> list[Session]:
        """Return sessions sorted by last update, most recent first."""
        sessions = read_sessions(self.registry_path, self.sessions_dir)
        return sorted(
            sessions,
            key=lambda s: s.updated_at.timestamp() if s.updated_at else 0.0,
            reverse=True,
        )

    def recent_entries(self, session: Session) -> list[TranscriptEntry]:
        """Return parsed entries from the tail of a session transcript."""
        if session.transcript_path is None:
            return []
        entries: list[TranscriptEntry] = []
        for line in tail_lines(session.transcript_path, self.tail_limit):
            entry = parse_entry(line)
            if entry is not None:
                entries.append(entry)
        return entries
