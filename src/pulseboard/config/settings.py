"""Central config loading from layered TOML files.

Layers (low to high priority):
1. pulseboard/config/default.toml
2. ~/.pulseboard/config.toml
3. PULSEBOARD_CONFIG env path (optional explicit override)

``OPENCLAW_SESSIONS_DIR`` overrides the sessions directory after all layers.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

PACKAGE_DIR = Path(__file__).parent
DEFAULT_CONFIG_PATH = PACKAGE_DIR / "default.toml"
USER_CONFIG_PATH = Path.home() / ".pulseboard" / "config.toml"
DEFAULT_SESSIONS_DIR = Path.home() / ".openclaw" / "agents" / "main" / "sessions"
METRICS_FILE_NAME = ".pulseboard-metrics.json"

_LAST_CONFIG_SOURCES: list[dict[str, str]] = []


@dataclass(frozen=True)
class SourceConfig:
    """Where the session registry and transcripts live."""

    sessions_dir: Path
    registry_path: Path
    tail_lines: int
    max_direct_sessions: int


@dataclass(frozen=True)
class ExtractConfig:
    """Heuristics used when turning transcript lines into activity."""

    description_max_chars: int
    min_incoming_chars: int
    min_reply_chars: int
    completion_min_chars: int
    partial_marker: str
    suppress_markers: tuple[str, ...]
    noise_markers: tuple[str, ...]
    spawn_tools: tuple[str, ...]


@dataclass(frozen=True)
class MetricsConfig:
    """Latency series sizing, sanity bounds and persistence."""

    metrics_path: Path
    capacity: int
    window_hours: int
    response_max_ms: int
    completion_max_ms: int
    flush_interval_seconds: int


@dataclass(frozen=True)
class DedupeConfig:
    """Sliding-window activity dedup settings."""

    window_seconds: int
    prefix_chars: int


@dataclass(frozen=True)
class StateConfig:
    """Status thresholds and list bounds for the dashboard snapshot."""

    active_seconds: float
    thinking_seconds: float
    pending_timeout_seconds: float
    liveness_seconds: float
    activity_limit: int
    max_sub_agents: int
    max_cron_jobs: int
    default_model: str


@dataclass(frozen=True)
class PublisherConfig:
    """Tick cadence and idle shutdown grace for the snapshot publisher."""

    interval_seconds: float
    idle_grace_seconds: float
    demo_mode: bool


def load_toml_file(path: Path | None) -> dict[str, Any]:
    """Load TOML file into a dict; return empty dict on failures."""
    if not path or not path.exists():
        return {}
    try:
        with path.open("rb") as handle:
            payload = tomllib.load(handle)
    except Exception:
        return {}
    return payload if isinstance(payload, dict) else {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge dict values with override precedence."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _expand(value: Any, default: Path) -> Path:
    """Expand user path with fallback to default path."""
    if value in (None, ""):
        return default
    try:
        return Path(str(value)).expanduser()
    except (TypeError, OSError, ValueError):
        return default


def _to_non_empty_string(value: Any) -> str:
    """Convert value to stripped string, defaulting to empty string."""
    if value is None:
        return ""
    return str(value).strip()


def _to_int(value: Any, default: int, minimum: int = 1) -> int:
    """Convert value to bounded integer with fallback default."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, parsed)


def _to_float(value: Any, default: float, minimum: float, maximum: float) -> float:
    """Convert value to bounded float with fallback default."""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, min(maximum, parsed))


def _to_bool(value: Any, default: bool) -> bool:
    """Convert TOML/env values to bool with common truthy strings."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _to_string_tuple(value: Any) -> tuple[str, ...]:
    """Normalize a TOML list/string into a tuple of non-empty strings."""
    if isinstance(value, list):
        return tuple(str(item).strip() for item in value if str(item).strip())
    if isinstance(value, str):
        parts = [item.strip() for item in value.split(",")]
        return tuple(item for item in parts if item)
    return ()


def _section(toml_data: dict[str, Any], name: str) -> dict[str, Any]:
    """Return one TOML table, or an empty dict when missing or malformed."""
    value = toml_data.get(name, {})
    return value if isinstance(value, dict) else {}


def get_user_config_path() -> Path:
    """Return canonical user config path."""
    return USER_CONFIG_PATH


def _load_layers() -> tuple[dict[str, Any], list[dict[str, str]]]:
    """Load and merge all configuration layers in precedence order."""
    merged: dict[str, Any] = {}
    sources: list[dict[str, str]] = []

    layers: list[tuple[str, Path]] = [
        ("package_default", DEFAULT_CONFIG_PATH),
        ("user", USER_CONFIG_PATH),
    ]

    explicit = os.getenv("PULSEBOARD_CONFIG")
    if explicit:
        layers.append(("explicit", Path(explicit).expanduser()))

    for source_name, path in layers:
        payload = load_toml_file(path)
        if payload:
            merged = _deep_merge(merged, payload)
            sources.append({"source": source_name, "path": str(path)})

    return merged, sources


def get_config_sources() -> list[dict[str, str]]:
    """Return last-computed config source list."""
    return [dict(item) for item in _LAST_CONFIG_SOURCES]


@dataclass(frozen=True)
class Config:
    """Effective runtime configuration from TOML layers and environment."""

    sources: SourceConfig
    extract: ExtractConfig
    metrics: MetricsConfig
    dedupe: DedupeConfig
    state: StateConfig
    publisher: PublisherConfig

    server_host: str
    server_port: int

    @property
    def sessions_dir(self) -> Path:
        """Shortcut to the sessions directory."""
        return self.sources.sessions_dir

    @property
    def metrics_path(self) -> Path:
        """Shortcut to the metrics persistence file."""
        return self.metrics.metrics_path

    def public_dict(self) -> dict[str, Any]:
        """Return serialized config for CLI visibility."""
        return {
            "sessions_dir": str(self.sources.sessions_dir),
            "registry_path": str(self.sources.registry_path),
            "tail_lines": self.sources.tail_lines,
            "max_direct_sessions": self.sources.max_direct_sessions,
            "extract": {
                "description_max_chars": self.extract.description_max_chars,
                "min_incoming_chars": self.extract.min_incoming_chars,
                "min_reply_chars": self.extract.min_reply_chars,
                "completion_min_chars": self.extract.completion_min_chars,
                "partial_marker": self.extract.partial_marker,
                "suppress_markers": list(self.extract.suppress_markers),
                "noise_markers": list(self.extract.noise_markers),
                "spawn_tools": list(self.extract.spawn_tools),
            },
            "metrics": {
                "metrics_path": str(self.metrics.metrics_path),
                "capacity": self.metrics.capacity,
                "window_hours": self.metrics.window_hours,
                "response_max_ms": self.metrics.response_max_ms,
                "completion_max_ms": self.metrics.completion_max_ms,
                "flush_interval_seconds": self.metrics.flush_interval_seconds,
            },
            "dedupe": {
                "window_seconds": self.dedupe.window_seconds,
                "prefix_chars": self.dedupe.prefix_chars,
            },
            "state": {
                "active_seconds": self.state.active_seconds,
                "thinking_seconds": self.state.thinking_seconds,
                "pending_timeout_seconds": self.state.pending_timeout_seconds,
                "liveness_seconds": self.state.liveness_seconds,
                "activity_limit": self.state.activity_limit,
                "max_sub_agents": self.state.max_sub_agents,
                "max_cron_jobs": self.state.max_cron_jobs,
                "default_model": self.state.default_model,
            },
            "publisher": {
                "interval_seconds": self.publisher.interval_seconds,
                "idle_grace_seconds": self.publisher.idle_grace_seconds,
                "demo_mode": self.publisher.demo_mode,
            },
            "server_host": self.server_host,
            "server_port": self.server_port,
        }


def _build_sources(raw: dict[str, Any]) -> SourceConfig:
    """Build source paths, letting OPENCLAW_SESSIONS_DIR win over TOML."""
    env_dir = _to_non_empty_string(os.environ.get("OPENCLAW_SESSIONS_DIR"))
    sessions_dir = _expand(env_dir or raw.get("sessions_dir"), DEFAULT_SESSIONS_DIR)
    registry_name = _to_non_empty_string(raw.get("registry_file")) or "sessions.json"
    registry_path = Path(registry_name).expanduser()
    if not registry_path.is_absolute():
        registry_path = sessions_dir / registry_path
    return SourceConfig(
        sessions_dir=sessions_dir,
        registry_path=registry_path,
        tail_lines=_to_int(raw.get("tail_lines"), 100, minimum=1),
        max_direct_sessions=_to_int(raw.get("max_direct_sessions"), 5, minimum=0),
    )


def _build_extract(raw: dict[str, Any]) -> ExtractConfig:
    """Build extraction heuristics from TOML payload."""
    return ExtractConfig(
        description_max_chars=_to_int(raw.get("description_max_chars"), 200, minimum=20),
        min_incoming_chars=_to_int(raw.get("min_incoming_chars"), 2, minimum=1),
        min_reply_chars=_to_int(raw.get("min_reply_chars"), 10, minimum=0),
        completion_min_chars=_to_int(raw.get("completion_min_chars"), 100, minimum=0),
        partial_marker=str(raw.get("partial_marker", "...")),
        suppress_markers=_to_string_tuple(raw.get("suppress_markers"))
        or ("NO_REPLY", "HEARTBEAT"),
        noise_markers=_to_string_tuple(raw.get("noise_markers"))
        or ("HEARTBEAT", "System:"),
        spawn_tools=_to_string_tuple(raw.get("spawn_tools")),
    )


def _build_metrics(raw: dict[str, Any], sessions_dir: Path) -> MetricsConfig:
    """Build metrics config; the default file sits next to the transcripts."""
    return MetricsConfig(
        metrics_path=_expand(raw.get("file"), sessions_dir / METRICS_FILE_NAME),
        capacity=_to_int(raw.get("capacity"), 200, minimum=1),
        window_hours=_to_int(raw.get("window_hours"), 24, minimum=1),
        response_max_ms=_to_int(raw.get("response_max_ms"), 300_000, minimum=1),
        completion_max_ms=_to_int(raw.get("completion_max_ms"), 600_000, minimum=1),
        flush_interval_seconds=_to_int(
            raw.get("flush_interval_seconds"), 60, minimum=5
        ),
    )


def _build_state(raw: dict[str, Any]) -> StateConfig:
    """Build status thresholds and list bounds."""
    return StateConfig(
        active_seconds=_to_float(raw.get("active_seconds"), 10.0, 0.0, 3600.0),
        thinking_seconds=_to_float(raw.get("thinking_seconds"), 60.0, 0.0, 3600.0),
        pending_timeout_seconds=_to_float(
            raw.get("pending_timeout_seconds"), 300.0, 0.0, 86400.0
        ),
        liveness_seconds=_to_float(raw.get("liveness_seconds"), 120.0, 1.0, 86400.0),
        activity_limit=_to_int(raw.get("activity_limit"), 50, minimum=1),
        max_sub_agents=_to_int(raw.get("max_sub_agents"), 15, minimum=1),
        max_cron_jobs=_to_int(raw.get("max_cron_jobs"), 20, minimum=1),
        default_model=_to_non_empty_string(raw.get("default_model"))
        or "claude-opus-4-5",
    )


@lru_cache(maxsize=1)
def load_config() -> Config:
    """Load effective config from TOML layers plus environment overrides."""
    load_dotenv()
    toml_data, sources = _load_layers()

    global _LAST_CONFIG_SOURCES
    _LAST_CONFIG_SOURCES = sources

    source_cfg = _build_sources(_section(toml_data, "sources"))
    dedupe = _section(toml_data, "dedupe")
    publisher = _section(toml_data, "publisher")
    server = _section(toml_data, "server")

    port = _to_int(os.environ.get("PULSEBOARD_PORT") or server.get("port"), 3034)
    if port > 65535:
        port = 3034

    return Config(
        sources=source_cfg,
        extract=_build_extract(_section(toml_data, "extract")),
        metrics=_build_metrics(_section(toml_data, "metrics"), source_cfg.sessions_dir),
        dedupe=DedupeConfig(
            window_seconds=_to_int(dedupe.get("window_seconds"), 30, minimum=1),
            prefix_chars=_to_int(dedupe.get("prefix_chars"), 80, minimum=8),
        ),
        state=_build_state(_section(toml_data, "state")),
        publisher=PublisherConfig(
            interval_seconds=_to_float(
                publisher.get("interval_seconds"), 2.0, 0.1, 60.0
            ),
            idle_grace_seconds=_to_float(
                publisher.get("idle_grace_seconds"), 5.0, 0.0, 300.0
            ),
            demo_mode=_to_bool(
                os.environ.get("PULSEBOARD_DEMO_MODE", publisher.get("demo_mode")),
                False,
            ),
        ),
        server_host=_to_non_empty_string(server.get("host")) or "127.0.0.1",
        server_port=port,
    )


def get_config() -> Config:
    """Return cached effective configuration."""
    return load_config()


def reload_config() -> Config:
    """Clear config cache and return reloaded configuration."""
    load_config.cache_clear()
    return load_config()


if __name__ == "__main__":
    """Run a real-path config smoke test."""
    cfg = load_config()
    assert cfg.sessions_dir
    assert cfg.sources.registry_path.name
    assert cfg.metrics.capacity >= 1
    assert cfg.state.thinking_seconds >= cfg.state.active_seconds
    payload = cfg.public_dict()
    assert "publisher" in payload
    print(
        f"""\
Config loaded: \
sessions_dir={cfg.sessions_dir}, \
port={cfg.server_port}, \
interval={cfg.publisher.interval_seconds}s"""
    )
