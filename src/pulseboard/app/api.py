"""Shared API logic for CLI and HTTP endpoints.

``build_runtime`` wires the pipeline once (registry, metrics, extractor,
activity log, state builder, publisher) so the argparse CLI and the HTTP
handlers read the same objects.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pulseboard import __version__
from pulseboard.app.publisher import SnapshotPublisher
from pulseboard.config.settings import Config, get_config, get_config_sources
from pulseboard.pipeline.dedupe import ActivityLog, Deduplicator
from pulseboard.pipeline.extract import EventExtractor
from pulseboard.pipeline.metrics import MetricsAggregator, MetricsStore
from pulseboard.pipeline.state import StateBuilder
from pulseboard.sessions.common import utc_now
from pulseboard.sessions.store import SessionRegistry


@dataclass
class Runtime:
    """Every long-lived pipeline object for one process."""

    config: Config
    registry: SessionRegistry
    metrics: MetricsAggregator
    extractor: EventExtractor
    activity: ActivityLog
    builder: StateBuilder
    publisher: SnapshotPublisher


def build_runtime(
    config: Config | None = None,
    *,
    load_metrics: bool = True,
    clock: Callable[[], datetime] = utc_now,
) -> Runtime:
    """Wire the pipeline from config, optionally loading persisted metrics."""
    cfg = config or get_config()
    registry = SessionRegistry(
        cfg.sources.registry_path,
        cfg.sources.sessions_dir,
        tail_limit=cfg.sources.tail_lines,
    )
    metrics = MetricsAggregator(
        capacity=cfg.metrics.capacity,
        response_max_ms=cfg.metrics.response_max_ms,
        completion_max_ms=cfg.metrics.completion_max_ms,
        window=timedelta(hours=cfg.metrics.window_hours),
        store=MetricsStore(cfg.metrics.metrics_path),
        clock=clock,
    )
    if load_metrics:
        metrics.load()
    extractor = EventExtractor(registry, metrics, cfg.extract)
    activity = ActivityLog(
        Deduplicator(
            window=timedelta(seconds=cfg.dedupe.window_seconds),
            prefix_chars=cfg.dedupe.prefix_chars,
        ),
        limit=cfg.state.activity_limit,
    )
    builder = StateBuilder(
        registry,
        extractor,
        metrics,
        activity,
        cfg.state,
        max_direct_sessions=cfg.sources.max_direct_sessions,
        clock=clock,
    )

    def _always_emit() -> bool:
        """Broadcast every tick in demo mode or while the registry is unreadable."""
        return cfg.publisher.demo_mode or not registry.available()

    return Runtime(
        config=cfg,
        registry=registry,
        metrics=metrics,
        extractor=extractor,
        activity=activity,
        builder=builder,
        publisher=SnapshotPublisher(
            builder.build,
            interval=cfg.publisher.interval_seconds,
            idle_grace=cfg.publisher.idle_grace_seconds,
            always_emit=_always_emit,
            clock=clock,
        ),
    )


def api_health() -> dict[str, Any]:
    """Return health check payload."""
    return {
        "status": "ok",
        "timestamp": utc_now().isoformat(),
        "version": __version__,
    }


def api_status(runtime: Runtime) -> dict[str, Any]:
    """Return the current dashboard snapshot as camelCase JSON."""
    return runtime.publisher.snapshot().to_payload()


def api_refresh(runtime: Runtime) -> dict[str, Any]:
    """Rebuild the snapshot now, regardless of the tick cadence."""
    return runtime.publisher.refresh().to_payload()


def api_metrics(runtime: Runtime) -> dict[str, Any]:
    """Return latency averages and the newest samples."""
    return runtime.metrics.summary()


def api_config() -> dict[str, Any]:
    """Return effective config plus the TOML layers it came from."""
    return {
        "config": get_config().public_dict(),
        "sources": get_config_sources(),
    }
