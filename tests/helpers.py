"""Shared test utilities for configs, session registries and transcripts."""

from __future__ import annotations

import io
import json
from contextlib import redirect_stdout
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pulseboard.config.settings import (
    Config,
    DedupeConfig,
    ExtractConfig,
    MetricsConfig,
    PublisherConfig,
    SourceConfig,
    StateConfig,
)

T0 = datetime(2026, 2, 16, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for time-dependent logic."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def make_config(base: Path, **publisher: Any) -> Config:
    """Build a deterministic Config object rooted at ``base`` for tests."""
    return Config(
        sources=SourceConfig(
            sessions_dir=base,
            registry_path=base / "sessions.json",
            tail_lines=100,
            max_direct_sessions=5,
        ),
        extract=ExtractConfig(
            description_max_chars=200,
            min_incoming_chars=2,
            min_reply_chars=10,
            completion_min_chars=100,
            partial_marker="...",
            suppress_markers=("NO_REPLY", "HEARTBEAT"),
            noise_markers=("HEARTBEAT", "System:"),
            spawn_tools=("sessions_spawn",),
        ),
        metrics=MetricsConfig(
            metrics_path=base / ".pulseboard-metrics.json",
            capacity=200,
            window_hours=24,
            response_max_ms=300_000,
            completion_max_ms=600_000,
            flush_interval_seconds=60,
        ),
        dedupe=DedupeConfig(window_seconds=30, prefix_chars=80),
        state=StateConfig(
            active_seconds=10.0,
            thinking_seconds=60.0,
            pending_timeout_seconds=300.0,
            liveness_seconds=120.0,
            activity_limit=50,
            max_sub_agents=15,
            max_cron_jobs=20,
            default_model="claude-opus-4-5",
        ),
        publisher=PublisherConfig(
            interval_seconds=publisher.get("interval_seconds", 2.0),
            idle_grace_seconds=publisher.get("idle_grace_seconds", 5.0),
            demo_mode=publisher.get("demo_mode", False),
        ),
        server_host="127.0.0.1",
        server_port=3034,
    )


def epoch_ms(moment: datetime) -> int:
    """Return epoch milliseconds, the registry's ``updatedAt`` format."""
    return int(moment.timestamp() * 1000)


def write_registry(sessions_dir: Path, records: dict[str, dict[str, Any]]) -> Path:
    """Write ``sessions.json`` mapping session key to record."""
    sessions_dir.mkdir(parents=True, exist_ok=True)
    path = sessions_dir / "sessions.json"
    path.write_text(json.dumps(records), encoding="utf-8")
    return path


def user_turn(text: str, at: datetime) -> dict[str, Any]:
    """Wrapped user transcript record."""
    return {
        "type": "message",
        "message": {"role": "user", "content": text, "timestamp": at.isoformat()},
    }


def assistant_turn(
    text: str, at: datetime, tool_uses: list[dict[str, Any]] | None = None
) -> dict[str, Any]:
    """Wrapped assistant transcript record with text and optional tool calls."""
    content: list[dict[str, Any]] = []
    if text:
        content.append({"type": "text", "text": text})
    content.extend(tool_uses or [])
    return {
        "type": "message",
        "message": {"role": "assistant", "content": content, "timestamp": at.isoformat()},
    }


def write_transcript(sessions_dir: Path, session_id: str, records: list[Any]) -> Path:
    """Write a JSONL transcript; plain strings are written verbatim."""
    sessions_dir.mkdir(parents=True, exist_ok=True)
    path = sessions_dir / f"{session_id}.jsonl"
    lines = [item if isinstance(item, str) else json.dumps(item) for item in records]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def append_transcript(path: Path, records: list[Any]) -> None:
    """Append records to an existing transcript."""
    with path.open("a", encoding="utf-8") as handle:
        for item in records:
            handle.write((item if isinstance(item, str) else json.dumps(item)) + "\n")


def write_test_config(tmp_path: Path, **sections: dict[str, Any]) -> Path:
    """Write a test config.toml pointing the sessions dir to ``tmp_path``.

    Usage::

        write_test_config(tmp_path, server={"port": 4000})
    """
    all_sections: dict[str, dict[str, Any]] = {
        "sources": {"sessions_dir": str(tmp_path)},
    }
    for name, payload in sections.items():
        if isinstance(payload, dict):
            all_sections.setdefault(name, {}).update(payload)

    lines: list[str] = []
    for section_name, fields in all_sections.items():
        lines.append(f"[{section_name}]")
        for key, value in fields.items():
            if isinstance(value, bool):
                lines.append(f"{key} = {'true' if value else 'false'}")
            elif isinstance(value, (int, float)):
                lines.append(f"{key} = {value}")
            elif isinstance(value, (list, tuple)):
                items = ", ".join(f'"{item}"' for item in value)
                lines.append(f"{key} = [{items}]")
            else:
                lines.append(f'{key} = "{value}"')
        lines.append("")

    config_path = tmp_path / "test_config.toml"
    config_path.write_text("\n".join(lines), encoding="utf-8")
    return config_path


def run_cli(args: list[str]) -> tuple[int, str]:
    """Run CLI command and return ``(exit_code, stdout_text)``."""
    from pulseboard.app import cli

    out = io.StringIO()
    with redirect_stdout(out):
        code = cli.main(args)
    return code, out.getvalue()


def run_cli_json(args: list[str]) -> tuple[int, dict]:
    """Run CLI command and parse stdout JSON payload."""
    code, output = run_cli(args)
    return code, json.loads(output)
