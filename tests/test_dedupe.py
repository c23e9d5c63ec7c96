"""Tests for the windowed deduplicator and the activity log."""

from __future__ import annotations

from datetime import timedelta

from pulseboard.pipeline.dedupe import ActivityLog, Deduplicator, normalize_description
from pulseboard.pipeline.extract import make_event_id
from pulseboard.pipeline.schemas import ActivityEvent
from tests.helpers import T0


def _event(description: str, seconds: float = 0, kind: str = "incoming") -> ActivityEvent:
    at = T0 + timedelta(seconds=seconds)
    return ActivityEvent(
        id=make_event_id(kind, description, at),
        type=kind,
        description=description,
        timestamp=at,
    )


def test_normalize_description():
    assert normalize_description("  Deploy   IS\nred ") == "deploy is red"
    assert len(normalize_description("x" * 500)) == 80


def test_same_content_within_window_is_duplicate():
    dedupe = Deduplicator()
    assert dedupe.admit(_event("deploy is red", 0)) is True
    assert dedupe.admit(_event("Deploy  is red", 5)) is False


def test_same_content_outside_window_is_kept():
    dedupe = Deduplicator()
    assert dedupe.admit(_event("deploy is red", 0)) is True
    assert dedupe.admit(_event("deploy is red", 600)) is True


def test_different_category_is_not_duplicate():
    dedupe = Deduplicator()
    assert dedupe.admit(_event("deploy is red", 0, kind="incoming")) is True
    assert dedupe.admit(_event("deploy is red", 1, kind="message")) is True


def test_same_id_is_duplicate_regardless_of_time():
    dedupe = Deduplicator()
    first = _event("status check", 0)
    dedupe.remember(first)
    replay = first.model_copy(update={"timestamp": T0 + timedelta(hours=2)})
    assert dedupe.is_duplicate(replay) is True


def test_prefix_only_comparison():
    dedupe = Deduplicator(prefix_chars=10)
    assert dedupe.admit(_event("0123456789 first tail", 0)) is True
    assert dedupe.admit(_event("0123456789 other tail", 3)) is False


def test_id_memory_is_bounded():
    dedupe = Deduplicator(max_ids=3)
    events = [_event(f"message number {i}", i * 100) for i in range(5)]
    for event in events:
        dedupe.remember(event)
    assert len(dedupe._ids) == 3
    assert events[0].id not in dedupe._ids


def test_activity_log_admits_and_orders():
    log = ActivityLog(Deduplicator(), limit=3)
    admitted = log.admit([_event("a", 10), _event("b", 20), _event("a", 12)])
    assert [e.description for e in admitted] == ["a", "b"]
    log.admit([_event("c", 5), _event("d", 30)])
    assert [e.description for e in log.recent()] == ["d", "b", "a"]
    assert len(log) == 3


def test_activity_log_readmission_is_noop():
    log = ActivityLog(limit=10)
    events = [_event("hello there", 0)]
    assert len(log.admit(events)) == 1
    assert log.admit(events) == []
    assert len(log.recent()) == 1
