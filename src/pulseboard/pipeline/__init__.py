"""Transcript-to-snapshot pipeline exports."""

from pulseboard.pipeline.dedupe import ActivityLog, Deduplicator
from pulseboard.pipeline.extract import CompletionPolicy, EventExtractor, SessionCursor
from pulseboard.pipeline.metrics import LatencySample, MetricsAggregator, MetricsStore
from pulseboard.pipeline.schemas import ActivityEvent, DashboardState, Source
from pulseboard.pipeline.state import StateBuilder, derive_status

__all__ = [
    "ActivityEvent",
    "ActivityLog",
    "CompletionPolicy",
    "DashboardState",
    "Deduplicator",
    "EventExtractor",
    "LatencySample",
    "MetricsAggregator",
    "MetricsStore",
    "SessionCursor",
    "Source",
    "StateBuilder",
    "derive_status",
]
