"""Assemble the complete dashboard snapshot from sessions, events and metrics."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from pulseboard.config.settings import StateConfig
from pulseboard.pipeline.dedupe import ActivityLog
from pulseboard.pipeline.extract import EventExtractor
from pulseboard.pipeline.matchers import extract_source, format_source
from pulseboard.pipeline.metrics import MetricsAggregator
from pulseboard.pipeline.schemas import (
    ActivityEvent,
    AssistantStatus,
    AssistantStatusName,
    CronJobView,
    DashboardState,
    Source,
    Stats,
    SubAgentView,
)
from pulseboard.sessions.common import utc_now
from pulseboard.sessions.store import Session, SessionKind, SessionRegistry

DEFAULT_STATE = StateConfig(
    active_seconds=10.0,
    thinking_seconds=60.0,
    pending_timeout_seconds=300.0,
    liveness_seconds=120.0,
    activity_limit=50,
    max_sub_agents=15,
    max_cron_jobs=20,
    default_model="claude-opus-4-5",
)

MAX_UPTIME = timedelta(days=30)
CURRENT_TASK_CHARS = 150
CRON_RUN_EVENTS = 10
SUB_AGENT_EVENTS = 5
TASK_WINDOW = timedelta(hours=24)


def derive_status(
    last_activity: datetime | None,
    now: datetime,
    active_after: float = 10.0,
    thinking_after: float = 60.0,
    pending: bool = False,
) -> AssistantStatusName:
    """Map time since the last activity to ``active``, ``thinking`` or ``idle``."""
    if pending:
        return "active"
    if last_activity is None:
        return "idle"
    elapsed = (now - last_activity).total_seconds()
    if elapsed < active_after:
        return "active"
    if elapsed < thinking_after:
        return "thinking"
    return "idle"


def pick_primary_session(sessions: list[Session]) -> Session | None:
    """Most recent non-thread primary session, else the most recent of any kind."""
    for session in sessions:
        if session.kind is SessionKind.primary and not session.is_thread:
            return session
    return sessions[0] if sessions else None


def _updated(session: Session) -> datetime | None:
    return session.updated_at or session.created_at


class StateBuilder:
    """Builds one ``DashboardState`` per call; safe to call repeatedly."""

    def __init__(
        self,
        registry: SessionRegistry,
        extractor: EventExtractor,
        metrics: MetricsAggregator,
        activity_log: ActivityLog,
        config: StateConfig | None = None,
        max_direct_sessions: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.extractor = extractor
        self.metrics = metrics
        self.activity_log = activity_log
        self.config = config or DEFAULT_STATE
        self.max_direct_sessions = max_direct_sessions
        self._clock = clock

    def _is_live(self, moment: datetime | None, now: datetime) -> bool:
        if moment is None:
            return False
        return (now - moment).total_seconds() < self.config.liveness_seconds

    def build(self) -> DashboardState:
        """Read sessions, extract new events and return a fresh snapshot."""
        now = self._clock()
        sessions = self.registry.sessions()
        primary = pick_primary_session(sessions)

        scanned: list[Session] = [primary] if primary is not None else []
        direct = [s for s in sessions if s.kind is SessionKind.direct]
        scanned.extend(s for s in direct[: self.max_direct_sessions] if s is not primary)
        for session in scanned:
            self.activity_log.admit(self.extractor.extract(session))

        sub_agents = self._sub_agents(sessions, now)
        cron_jobs = self._cron_jobs(sessions, now)
        activity = self._activity(sessions, now)

        stats = Stats(
            total_tasks_24h=sum(
                1 for s in sessions if s.updated_at is not None and s.updated_at > now - TASK_WINDOW
            ),
            active_sub_agents=sum(1 for agent in sub_agents if agent.status == "running"),
            active_cron_jobs=sum(1 for job in cron_jobs if job.status == "running"),
            avg_response_time=self.metrics.average_response_latency(),
            avg_completion_time=self.metrics.average_completion_latency(),
        )
        return DashboardState(
            assistant=self._assistant(primary, sessions, now),
            cron_jobs=cron_jobs,
            sub_agents=sub_agents,
            recent_activity=activity,
            stats=stats,
            last_updated=now,
        )

    def _assistant(
        self, primary: Session | None, sessions: list[Session], now: datetime
    ) -> AssistantStatus:
        if primary is None:
            return AssistantStatus(
                status="offline",
                model=self.config.default_model,
                session_key="main",
            )
        pending = self.extractor.has_pending(
            primary.key, now, self.config.pending_timeout_seconds
        )
        last_activity = _updated(primary)
        status = derive_status(
            last_activity,
            now,
            self.config.active_seconds,
            self.config.thinking_seconds,
            pending=pending,
        )
        current_task = None
        for event in self.activity_log.recent():
            if event.type == "incoming":
                current_task = event.description[:CURRENT_TASK_CHARS]
                break
        return AssistantStatus(
            status=status,
            current_task=current_task,
            model=primary.model or self.config.default_model,
            session_key=primary.session_id,
            uptime=self._uptime(sessions, now),
            last_activity=last_activity,
        )

    @staticmethod
    def _uptime(sessions: list[Session], now: datetime) -> int:
        starts = [s.created_at or s.updated_at for s in sessions]
        starts = [moment for moment in starts if moment is not None]
        if not starts:
            return 0
        elapsed = max(timedelta(0), now - min(starts))
        return int(min(elapsed, MAX_UPTIME).total_seconds())

    def _sub_agents(self, sessions: list[Session], now: datetime) -> list[SubAgentView]:
        views: list[SubAgentView] = []
        agents = [s for s in sessions if s.kind is SessionKind.subagent]
        for session in agents[: self.config.max_sub_agents]:
            running = self._is_live(session.updated_at, now)
            source = extract_source(session.key, session.task)
            views.append(
                SubAgentView(
                    session_key=session.session_id,
                    label=session.label or "Sub-agent",
                    status="running" if running else "completed",
                    task=session.task or session.label,
                    started_at=session.created_at or session.updated_at or now,
                    completed_at=None if running else session.updated_at,
                    model=session.model,
                    source=source,
                    source_display=format_source(source),
                )
            )
        return views

    def _cron_jobs(self, sessions: list[Session], now: datetime) -> list[CronJobView]:
        runs = [s for s in sessions if s.is_cron_run]
        bases = [
            s for s in sessions if s.kind is SessionKind.scheduled and not s.is_cron_run
        ]
        latest_run: dict[str, Session] = {}
        for run in runs:
            latest_run.setdefault(run.cron_id, run)

        views: list[CronJobView] = []
        seen: set[str] = set()
        for base in bases:
            if base.cron_id in seen:
                continue
            seen.add(base.cron_id)
            run = latest_run.get(base.cron_id)
            last_run = _updated(run) if run is not None else base.updated_at
            if self._is_live(last_run, now):
                status = "running"
            elif last_run is not None:
                status = "completed"
            else:
                status = "scheduled"
            views.append(
                CronJobView(
                    id=base.cron_id,
                    name=base.label or "Cron Job",
                    last_run=last_run,
                    status=status,
                    result="Completed" if status == "completed" else None,
                    session_key=base.key,
                )
            )
            if len(views) >= self.config.max_cron_jobs:
                break
        return views

    def _activity(self, sessions: list[Session], now: datetime) -> list[ActivityEvent]:
        derived: list[ActivityEvent] = []
        runs = [s for s in sessions if s.is_cron_run]
        for run in runs[:CRON_RUN_EVENTS]:
            name = run.label or "Cron job"
            derived.append(
                ActivityEvent(
                    id=f"cron-{run.session_id}",
                    type="cron",
                    description=name,
                    timestamp=_updated(run) or now,
                    status="completed",
                    cron_name=name,
                    source=Source(type="cron"),
                    source_display="Cron",
                )
            )
        agents = [s for s in sessions if s.kind is SessionKind.subagent]
        for agent in agents[:SUB_AGENT_EVENTS]:
            source = extract_source(agent.key, agent.task)
            derived.append(
                ActivityEvent(
                    id=f"subagent-{agent.session_id}",
                    type="subagent",
                    description=agent.label or "Sub-agent task",
                    timestamp=_updated(agent) or now,
                    status="running" if self._is_live(agent.updated_at, now) else "completed",
                    source=source,
                    source_display=format_source(source) or "Sub-agent",
                )
            )

        merged = sorted(
            [*self.activity_log.recent(), *derived],
            key=lambda event: event.timestamp,
            reverse=True,
        )
        seen: set[str] = set()
        activity: list[ActivityEvent] = []
        for event in merged:
            if event.id in seen:
                continue
            seen.add(event.id)
            activity.append(event)
            if len(activity) >= self.config.activity_limit:
                break
        return activity
