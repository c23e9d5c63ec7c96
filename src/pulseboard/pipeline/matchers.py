"""Heuristic text matchers for incoming chat messages and their sources.

Incoming user turns arrive wrapped in channel envelopes written by the agent
runtime, for example::

    System: [2026-02-16 10:02] Slack message in #ops from KP: deploy is red
    [Slack #ops +2m Mon 2026-02-16 10:02 UTC] KP: deploy is red [slack message id: 17...]
    [Slack KP +3m Mon 2026-02-16 10:02 UTC] deploy is red

``DEFAULT_MATCHERS`` tries one strategy per shape, in order; the first
strategy returning a result wins. The sender-after-header shape only applies
to channel headers (``#name``) so a colon inside a DM body is not mistaken
for a sender separator.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from pulseboard.pipeline.schemas import Source

_CHANNELS = r"Slack|Telegram|Discord|WhatsApp|Signal"
_TRAILING_TAG = rf"\[(?i:{_CHANNELS})\b[^\]]*\]"

_METADATA_PATTERNS = (
    re.compile(_TRAILING_TAG),
    re.compile(r"\[(?:message[_ ]id|msg[_ ]id|id):[^\]]*\]", re.IGNORECASE),
    re.compile(r"<#[A-Z0-9]+(?:\|[^>]*)?>"),
    re.compile(r"<@[A-Z0-9]+(?:\|[^>]*)?>"),
)
_WHITESPACE_RE = re.compile(r"\s+")

_CHANNEL_KEY_RE = re.compile(r"channel:([A-Z0-9]+)")
_USER_KEY_RE = re.compile(r"user:([A-Z0-9]+)")
_SLACK_USER_TEXT_RE = re.compile(r"\[Slack\s+([A-Za-z0-9_]+)\s+")
_CHANNEL_REF_RE = re.compile(r"<#([A-Z0-9]+)(?:\|[^>]*)?>")


@dataclass(frozen=True)
class IncomingMessage:
    """Sender and message text recovered from a user turn."""

    sender: str
    text: str
    matcher: str


class IncomingMatcher(Protocol):
    """One extraction strategy."""

    name: str

    def match(self, text: str) -> IncomingMessage | None:
        """Return the extracted message or ``None`` when the shape differs."""


def strip_metadata(text: str) -> str:
    """Remove message ids, channel/user refs and trailing channel tags."""
    cleaned = text
    for pattern in _METADATA_PATTERNS:
        cleaned = pattern.sub(" ", cleaned)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


class RegexMatcher:
    """Matcher backed by a regex with ``sender`` and ``text`` groups."""

    def __init__(self, name: str, pattern: re.Pattern[str]) -> None:
        self.name = name
        self.pattern = pattern

    def match(self, text: str) -> IncomingMessage | None:
        found = self.pattern.search(text or "")
        if not found:
            return None
        sender = _WHITESPACE_RE.sub(" ", found.group("sender")).strip()
        body = strip_metadata(found.group("text"))
        if not sender or not body:
            return None
        return IncomingMessage(sender=sender, text=body, matcher=self.name)


SYSTEM_ENVELOPE = RegexMatcher(
    "system_envelope",
    re.compile(
        r"System:\s*(?:\[[^\]]*\]\s*)?[^\n]*?\bfrom\s+(?P<sender>[^:\n]{1,60}?):\s*(?P<text>.+)",
        re.DOTALL,
    ),
)

BRACKET_SENDER = RegexMatcher(
    "bracket_sender",
    re.compile(
        rf"\[(?:{_CHANNELS})[^\]]*#[^\]]*\]\s*(?P<sender>[A-Za-z][A-Za-z0-9_.\- ]{{0,39}}?):\s*"
        rf"(?P<text>.+?)(?=\s*{_TRAILING_TAG}|$)",
        re.DOTALL,
    ),
)

BRACKET_INLINE = RegexMatcher(
    "bracket_inline",
    re.compile(
        rf"^\s*\[(?:{_CHANNELS})\s+(?P<sender>[A-Za-z0-9_.\-]+)\s+[^\]]*\]\s*(?P<text>.+)",
        re.DOTALL,
    ),
)

DEFAULT_MATCHERS: tuple[IncomingMatcher, ...] = (
    SYSTEM_ENVELOPE,
    BRACKET_SENDER,
    BRACKET_INLINE,
)


def match_incoming(
    text: str, matchers: tuple[IncomingMatcher, ...] = DEFAULT_MATCHERS
) -> IncomingMessage | None:
    """Run matchers in order and return the first result."""
    for matcher in matchers:
        result = matcher.match(text)
        if result is not None:
            return result
    return None


def is_noise(text: str, markers: tuple[str, ...], min_chars: int) -> bool:
    """Return whether extracted text is heartbeat/system noise or too short."""
    if len(text.strip()) < min_chars:
        return True
    return any(marker in text for marker in markers)


def extract_source(session_key: str | None, text: str | None = None) -> Source:
    """Derive source attribution from a session key and message text.

    Keys look like ``agent:main:slack:channel:<CHANNEL>:user:<USER>``,
    ``agent:main:cron:<ID>`` or ``agent:main:subagent:<ID>``.
    """
    source_type = "unknown"
    channel: str | None = None
    user: str | None = None
    key = session_key or ""

    if "slack:channel" in key:
        source_type = "slack"
        channel_match = _CHANNEL_KEY_RE.search(key)
        if channel_match:
            channel = channel_match.group(1)
        user_match = _USER_KEY_RE.search(key)
        if user_match:
            user = user_match.group(1)
    elif "cron:" in key:
        source_type = "cron"
    elif "subagent:" in key:
        source_type = "subagent"

    if text:
        user_match = _SLACK_USER_TEXT_RE.search(text)
        if user_match:
            user = user_match.group(1)
            source_type = "slack"
        ref_match = _CHANNEL_REF_RE.search(text)
        if ref_match:
            channel = ref_match.group(1)

    channel_type = None
    if channel:
        channel_type = "dm" if channel.startswith("D") else "channel"

    return Source(type=source_type, channel=channel, channel_type=channel_type, user=user)


def format_source(source: Source | None) -> str | None:
    """Render a short human label such as ``KP in #C0AF`` or ``Cron``."""
    if source is None:
        return None
    if source.type == "cron":
        return "Cron"
    if source.type == "subagent":
        return "Sub-agent"
    parts: list[str] = []
    if source.user:
        parts.append(source.user)
    if source.channel:
        parts.append("DM" if source.channel_type == "dm" else f"#{source.channel}")
    return " in ".join(parts) if parts else None
