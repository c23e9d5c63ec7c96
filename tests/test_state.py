"""Tests for status derivation and full dashboard snapshot assembly."""

from __future__ import annotations

from datetime import timedelta

import pytest

from pulseboard.app.api import build_runtime
from pulseboard.pipeline.state import derive_status, pick_primary_session
from pulseboard.sessions.store import Session, SessionKind
from tests.helpers import (
    T0,
    FakeClock,
    assistant_turn,
    epoch_ms,
    make_config,
    user_turn,
    write_registry,
    write_transcript,
)

MAIN_KEY = "agent:main:slack:channel:C0AF12345"
DM_KEY = "agent:main:slack:channel:D0B1C2D3E4:user:U07"


def _at(seconds: float):
    return T0 + timedelta(seconds=seconds)


@pytest.mark.parametrize(
    ("elapsed", "expected"),
    [(0, "active"), (45, "thinking"), (300, "idle")],
)
def test_derive_status_with_custom_thresholds(elapsed, expected):
    status = derive_status(_at(0), _at(elapsed), active_after=30, thinking_after=60)
    assert status == expected


def test_derive_status_defaults_and_pending():
    assert derive_status(_at(0), _at(9)) == "active"
    assert derive_status(_at(0), _at(10)) == "thinking"
    assert derive_status(_at(0), _at(60)) == "idle"
    assert derive_status(_at(0), _at(600), pending=True) == "active"
    assert derive_status(None, _at(0)) == "idle"


def test_pick_primary_skips_threads_and_other_kinds():
    thread = Session(key=MAIN_KEY + ":thread:1", session_id="t", kind=SessionKind.primary)
    main = Session(key=MAIN_KEY, session_id="m", kind=SessionKind.primary)
    sub = Session(key="agent:main:subagent:x", session_id="s", kind=SessionKind.subagent)
    assert pick_primary_session([sub, thread, main]) is main
    assert pick_primary_session([sub]) is sub
    assert pick_primary_session([]) is None


def test_missing_registry_builds_sparse_state(tmp_config, clock):
    runtime = build_runtime(tmp_config, load_metrics=False, clock=clock)
    state = runtime.builder.build()
    assert state.assistant.status == "offline"
    assert state.assistant.session_key == "main"
    assert state.assistant.model == "claude-opus-4-5"
    assert state.sub_agents == []
    assert state.cron_jobs == []
    assert state.recent_activity == []
    assert state.stats.total_tasks_24h == 0
    assert state.last_updated == clock.now


@pytest.fixture
def populated(sessions_dir):
    """Registry with a channel session, a DM, cron jobs and sub-agents."""
    clock = FakeClock(_at(100))
    write_registry(
        sessions_dir,
        {
            MAIN_KEY: {
                "sessionId": "s-main",
                "updatedAt": epoch_ms(_at(95)),
                "createdAt": epoch_ms(T0 - timedelta(days=2)),
                "model": "claude-sonnet",
            },
            DM_KEY: {"sessionId": "s-dm", "updatedAt": epoch_ms(_at(50))},
            "agent:main:cron:nightly": {
                "sessionId": "c-base",
                "label": "Nightly report",
                "updatedAt": epoch_ms(T0 - timedelta(hours=5)),
            },
            "agent:main:cron:nightly:run:r2": {
                "sessionId": "c-run2",
                "label": "Nightly report",
                "updatedAt": epoch_ms(_at(40)),
            },
            "agent:main:cron:nightly:run:r1": {
                "sessionId": "c-run1",
                "label": "Nightly report",
                "updatedAt": epoch_ms(T0 - timedelta(hours=20)),
            },
            "agent:main:cron:weekly": {
                "sessionId": "c-weekly",
                "label": "Weekly digest",
                "updatedAt": epoch_ms(T0 - timedelta(days=3)),
            },
            "agent:main:subagent:a1": {
                "sessionId": "sa-1",
                "label": "researcher",
                "task": "find the flaky test",
                "createdAt": epoch_ms(_at(10)),
                "updatedAt": epoch_ms(_at(90)),
            },
            "agent:main:subagent:a2": {
                "sessionId": "sa-2",
                "label": "writer",
                "updatedAt": epoch_ms(T0 - timedelta(hours=1)),
            },
        },
    )
    write_transcript(
        sessions_dir,
        "s-main",
        [
            user_turn("[Slack #ops +1m] KP: please rerun the nightly report", _at(60)),
            assistant_turn("Rerunning the nightly report now, will post results.", _at(62)),
        ],
    )
    write_transcript(
        sessions_dir,
        "s-dm",
        [user_turn("[Slack Ana +1m Mon] can you summarize yesterday?", _at(20))],
    )
    runtime = build_runtime(make_config(sessions_dir), load_metrics=False, clock=clock)
    return runtime, clock


def test_build_assistant_block(populated):
    runtime, _ = populated
    state = runtime.builder.build()
    assistant = state.assistant
    assert assistant.status == "active"
    assert assistant.session_key == "s-main"
    assert assistant.model == "claude-sonnet"
    assert assistant.current_task == "please rerun the nightly report"
    assert assistant.last_activity == _at(95)
    # earliest start is the weekly cron base, which has no createdAt
    assert assistant.uptime == int(timedelta(days=3, seconds=100).total_seconds())


def test_uptime_capped_at_thirty_days(populated):
    runtime, clock = populated
    clock.advance(timedelta(days=60).total_seconds())
    assert runtime.builder.build().assistant.uptime == 30 * 86400


def test_build_sub_agents_and_cron_jobs(populated):
    runtime, _ = populated
    state = runtime.builder.build()

    agents = {a.session_key: a for a in state.sub_agents}
    assert agents["sa-1"].status == "running"
    assert agents["sa-1"].completed_at is None
    assert agents["sa-1"].task == "find the flaky test"
    assert agents["sa-2"].status == "completed"
    assert agents["sa-2"].completed_at == T0 - timedelta(hours=1)

    jobs = {j.id: j for j in state.cron_jobs}
    assert set(jobs) == {"nightly", "weekly"}
    assert jobs["nightly"].last_run == _at(40)
    assert jobs["nightly"].status == "running"
    assert jobs["weekly"].status == "completed"
    assert jobs["weekly"].name == "Weekly digest"

    assert state.stats.active_sub_agents == 1
    assert state.stats.active_cron_jobs == 1
    assert state.stats.total_tasks_24h == 7


def test_build_activity_merges_sources(populated):
    runtime, _ = populated
    state = runtime.builder.build()
    activity = state.recent_activity
    timestamps = [event.timestamp for event in activity]
    assert timestamps == sorted(timestamps, reverse=True)
    kinds = {event.type for event in activity}
    assert {"incoming", "message", "cron", "subagent"} <= kinds
    assert len({event.id for event in activity}) == len(activity)
    dm_incoming = [e for e in activity if e.type == "incoming" and e.source_display == "Ana in DM"]
    assert len(dm_incoming) == 1


def test_rebuild_is_stable_and_latency_averaged(populated):
    runtime, _ = populated
    first = runtime.builder.build()
    second = runtime.builder.build()
    assert first.fingerprint() == second.fingerprint()
    assert second.stats.avg_response_time == 2000
    assert second.stats.avg_completion_time == 2000


def test_pending_message_keeps_status_active(populated, sessions_dir):
    runtime, clock = populated
    write_transcript(
        sessions_dir,
        "s-main",
        [user_turn("[Slack #ops +1m] KP: are you there?", _at(96))],
    )
    clock.advance(100)
    state = runtime.builder.build()
    assert state.assistant.status == "active"
    clock.advance(400)
    assert runtime.builder.build().assistant.status == "idle"


def test_restart_does_not_double_count_latency(populated, sessions_dir):
    runtime, clock = populated
    runtime.builder.build()
    assert runtime.metrics.save() is True

    restarted = build_runtime(make_config(sessions_dir), clock=clock)
    assert len(restarted.metrics.response_samples()) == 1
    state = restarted.builder.build()
    assert len(restarted.metrics.response_samples()) == 1
    assert len(restarted.metrics.completion_samples()) == 1
    assert state.stats.avg_response_time == 2000
