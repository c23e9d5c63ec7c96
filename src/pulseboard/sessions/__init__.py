"""Session registry and transcript reading."""

from pulseboard.sessions.store import (
    Session,
    SessionKind,
    SessionRegistry,
    TranscriptEntry,
    classify_session_kind,
    parse_entry,
    read_sessions,
)

__all__ = [
    "Session",
    "SessionKind",
    "SessionRegistry",
    "TranscriptEntry",
    "classify_session_kind",
    "parse_entry",
    "read_sessions",
]
