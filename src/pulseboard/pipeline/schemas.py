"""Pydantic models for the dashboard snapshot and its parts.

Every model is frozen and serializes with camelCase keys, which is the
shape browser clients consume.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ActivityType = Literal["task", "message", "subagent", "system", "cron", "incoming"]
ActivityStatus = Literal[
    "success", "error", "pending", "info", "completed", "in_progress", "running"
]
AssistantStatusName = Literal["active", "idle", "thinking", "offline"]

# Fields that change on every build and must not defeat change-gating.
VOLATILE_FIELDS: dict[str, Any] = {
    "last_updated": True,
    "assistant": {"uptime"},
}


class _Frozen(BaseModel):
    """Base for immutable camelCase models."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Source(_Frozen):
    """Where an incoming message or task came from."""

    type: Literal["slack", "cron", "subagent", "unknown"] = "unknown"
    channel: str | None = None
    channel_type: Literal["dm", "channel"] | None = None
    user: str | None = None


class ActivityEvent(_Frozen):
    """One user-facing activity feed entry."""

    id: str
    type: ActivityType
    description: str
    timestamp: datetime
    status: ActivityStatus = "completed"
    duration: int | None = Field(default=None, description="Milliseconds.")
    cron_name: str | None = None
    source: Source | None = None
    source_display: str | None = None


class SubAgentView(_Frozen):
    """Display projection of a sub-agent session."""

    session_key: str
    label: str
    status: Literal["running", "completed", "failed", "idle"]
    task: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    model: str | None = None
    source: Source | None = None
    source_display: str | None = None


class CronJobView(_Frozen):
    """Display projection of a scheduled job."""

    id: str
    name: str
    last_run: datetime | None = None
    status: Literal["running", "completed", "error", "scheduled"]
    result: str | None = None
    session_key: str | None = None


class AssistantStatus(_Frozen):
    """Headline status of the primary assistant session."""

    status: AssistantStatusName
    current_task: str | None = None
    model: str
    session_key: str
    uptime: int = Field(default=0, description="Seconds.")
    last_activity: datetime | None = None


class Stats(_Frozen):
    """Counters and latency averages shown above the feed."""

    total_tasks_24h: int = Field(default=0, alias="totalTasks24h")
    active_sub_agents: int = 0
    active_cron_jobs: int = 0
    avg_response_time: int = Field(default=0, description="Milliseconds.")
    avg_completion_time: int = Field(default=0, description="Milliseconds.")


class DashboardState(_Frozen):
    """Complete snapshot published to every client."""

    assistant: AssistantStatus
    cron_jobs: list[CronJobView] = Field(default_factory=list)
    sub_agents: list[SubAgentView] = Field(default_factory=list)
    recent_activity: list[ActivityEvent] = Field(default_factory=list)
    stats: Stats = Field(default_factory=Stats)
    last_updated: datetime

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON-ready camelCase payload."""
        return self.model_dump(mode="json", by_alias=True)

    def fingerprint(self) -> str:
        """Return a canonical serialization that ignores volatile fields."""
        data = self.model_dump(mode="json", by_alias=True, exclude=VOLATILE_FIELDS)
        return json.dumps(data, sort_keys=True, separators=(",", ":"))


if __name__ == "__main__":
    from datetime import timezone

    now = datetime.now(timezone.utc)
    state = DashboardState(
        assistant=AssistantStatus(status="idle", model="m", session_key="main"),
        last_updated=now,
    )
    payload = state.to_payload()
    assert "recentActivity" in payload and "lastUpdated" in payload
    assert "lastUpdated" not in state.fingerprint()
    print("schemas: self-test passed")
