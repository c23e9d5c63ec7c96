"""Tests for incoming-message matchers, noise filtering and source attribution."""

from __future__ import annotations

from pulseboard.pipeline.matchers import (
    BRACKET_INLINE,
    BRACKET_SENDER,
    DEFAULT_MATCHERS,
    SYSTEM_ENVELOPE,
    IncomingMessage,
    extract_source,
    format_source,
    is_noise,
    match_incoming,
    strip_metadata,
)
from pulseboard.pipeline.schemas import Source


def test_system_envelope_shape():
    text = "System: [2026-02-16 10:02] Slack message in #ops from KP: deploy is red"
    found = SYSTEM_ENVELOPE.match(text)
    assert found == IncomingMessage(sender="KP", text="deploy is red", matcher="system_envelope")


def test_bracket_sender_shape_strips_trailing_tag():
    text = "[Slack #ops +2m Mon 2026-02-16 10:02 UTC] KP: deploy is red [slack message id: 1771.22]"
    found = BRACKET_SENDER.match(text)
    assert found is not None
    assert found.sender == "KP"
    assert found.text == "deploy is red"


def test_bracket_inline_shape():
    text = "[Slack KP +3m Mon 2026-02-16 10:02 UTC] can you check the build?"
    found = BRACKET_INLINE.match(text)
    assert found is not None
    assert found.sender == "KP"
    assert found.text == "can you check the build?"


def test_dm_body_colon_is_not_a_sender_separator():
    text = "[Slack KP +1m Mon 2026-02-16 10:02 UTC] meeting moved to 10:30 today"
    assert BRACKET_SENDER.match(text) is None
    found = match_incoming(text)
    assert found is not None
    assert found.matcher == "bracket_inline"
    assert found.text == "meeting moved to 10:30 today"


def test_first_matching_strategy_wins():
    text = "System: Slack message from Ana: [Slack #ops] Bob: hi there"
    found = match_incoming(text, DEFAULT_MATCHERS)
    assert found is not None
    assert found.matcher == "system_envelope"
    assert found.sender == "Ana"


def test_custom_matcher_order():
    text = "[Slack KP +3m Mon 2026-02-16 10:02 UTC] hello"
    assert match_incoming(text, (SYSTEM_ENVELOPE,)) is None
    assert match_incoming(text, (BRACKET_INLINE,)) is not None


def test_plain_text_does_not_match():
    assert match_incoming("just a raw prompt with no envelope") is None
    assert match_incoming("") is None


def test_strip_metadata_removes_ids_and_refs():
    text = "ping <@U01ABC> in <#C0AF|ops> [message_id: 123]   please [slack ts 99]"
    assert strip_metadata(text) == "ping in please"


def test_is_noise():
    markers = ("HEARTBEAT", "System:")
    assert is_noise("HEARTBEAT check", markers, 2)
    assert is_noise("x", markers, 2)
    assert not is_noise("ok", markers, 2)


def test_extract_source_from_channel_key():
    source = extract_source("agent:main:slack:channel:C0AF12:user:U99")
    assert source == Source(type="slack", channel="C0AF12", channel_type="channel", user="U99")
    assert format_source(source) == "U99 in #C0AF12"


def test_extract_source_dm_and_text_overrides():
    source = extract_source(
        "agent:main:slack:channel:D0B1C2D3E4", "[Slack KP +1m] hi <#C777|general>"
    )
    assert source.type == "slack"
    assert source.user == "KP"
    assert source.channel == "C777"
    assert source.channel_type == "channel"

    dm = extract_source("agent:main:slack:channel:D0B1C2D3E4:user:U1")
    assert dm.channel_type == "dm"
    assert format_source(dm) == "U1 in DM"


def test_extract_source_kinds():
    assert extract_source("agent:main:cron:nightly").type == "cron"
    assert extract_source("agent:main:subagent:x").type == "subagent"
    assert extract_source(None).type == "unknown"
    assert format_source(Source(type="cron")) == "Cron"
    assert format_source(Source(type="subagent")) == "Sub-agent"
    assert format_source(Source()) is None
    assert format_source(None) is None
