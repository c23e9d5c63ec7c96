"""Shared session helpers for timestamps, JSON loading, and bounded tail reads."""

from __future__ import annotations

import json
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

_TAIL_BLOCK_BYTES = 8192


def parse_timestamp(value: Any) -> datetime | None:
    """Parse many timestamp shapes into a timezone-aware UTC datetime."""
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        timestamp = float(value)
        if abs(timestamp) > 1e10:
            timestamp /= 1000.0
        try:
            parsed = datetime.fromtimestamp(timestamp, tz=timezone.utc)
        except (ValueError, OSError, OverflowError):
            return None
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_epoch_ms(value: datetime) -> int:
    """Convert an aware datetime into integer epoch milliseconds."""
    return int(round(value.timestamp() * 1000))


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(timezone.utc)


def read_json_object(path: Path) -> dict[str, Any] | None:
    """Read a JSON object file; return ``None`` on failures."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _read_tail_bytes(path: Path, limit: int) -> bytes:
    """Read blocks from the end of ``path`` until ``limit`` lines are covered."""
    with path.open("rb") as handle:
        handle.seek(0, os.SEEK_END)
        position = handle.tell()
        chunks: list[bytes] = []
        newlines = 0
        while position > 0 and newlines <= limit:
            step = min(_TAIL_BLOCK_BYTES, position)
            position -= step
            handle.seek(position)
            chunk = handle.read(step)
            chunks.append(chunk)
            newlines += chunk.count(b"\n")
    return b"".join(reversed(chunks))


def tail_lines(
    path: Path, limit: int, *, attempts: int = 2, retry_delay: float = 0.05
) -> list[str]:
    """Return the last ``limit`` non-empty lines of a text file.

    Missing files return an empty list. Transient read errors are retried
    ``attempts`` times before giving up with an empty list.
    """
    if limit <= 0:
        return []
    for attempt in range(max(attempts, 1)):
        try:
            if not path.is_file():
                return []
            raw = _read_tail_bytes(path, limit)
        except OSError:
            if attempt + 1 < attempts:
                time.sleep(retry_delay)
            continue
        text = raw.decode("utf-8", errors="replace")
        lines = [line for line in text.splitlines() if line.strip()]
        return lines[-limit:]
    return []


if __name__ == "__main__":
    """Run a real-path smoke test for timestamp parsing and tail reads."""
    assert parse_timestamp("2026-02-19T10:00:00+00:00") is not None
    assert parse_timestamp(1_706_000_000_000) is not None
    assert parse_timestamp("not-a-date") is None

    with TemporaryDirectory() as tmp_dir:
        sample = Path(tmp_dir) / "sample.jsonl"
        sample.write_text(
            "".join(f'{{"n":{i}}}\n' for i in range(500)), encoding="utf-8"
        )
        rows = tail_lines(sample, 3)
        assert rows == ['{"n":497}', '{"n":498}', '{"n":499}']
        assert tail_lines(Path(tmp_dir) / "missing.jsonl", 10) == []
