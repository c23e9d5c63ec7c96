"""Command-line interface for the Pulseboard dashboard backend.

``serve`` runs the HTTP/SSE server with the snapshot publisher and metrics
flusher in one process. ``status`` and ``metrics`` build a one-off view from
the local session files without needing a running server.
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from dataclasses import replace
from typing import Any

from pulseboard import __version__
from pulseboard.app.api import api_config, api_metrics, api_status, build_runtime
from pulseboard.app.daemon import start_metrics_flusher
from pulseboard.app.dashboard import create_dashboard_server
from pulseboard.config.logging import configure_logging, logger
from pulseboard.config.settings import get_config


def _emit(message: object = "", *, file: Any | None = None) -> None:
    """Write one CLI output line to stdout or a provided file-like target."""
    target = file if file is not None else sys.stdout
    target.write(f"{message}\n")


def _emit_structured(*, title: str, payload: dict[str, Any], as_json: bool) -> None:
    """Emit a dict payload either as JSON or as key/value lines."""
    if as_json:
        _emit(json.dumps(payload, indent=2, ensure_ascii=True))
        return
    _emit(title)
    for key, value in payload.items():
        _emit(f"- {key}: {value}")


def _hoist_global_json_flag(raw: list[str]) -> list[str]:
    """Allow ``--json`` before or after subcommands by normalizing argv order."""
    if "--json" not in raw:
        return raw
    return ["--json"] + [item for item in raw if item != "--json"]


def _format_ms(value: int) -> str:
    """Render milliseconds compactly (``850ms``, ``2.4s``)."""
    if value <= 0:
        return "-"
    if value < 1000:
        return f"{value}ms"
    return f"{value / 1000:.1f}s"


def _cmd_status(args: argparse.Namespace) -> int:
    """Build one snapshot from local session files and print it."""
    runtime = build_runtime()
    payload = api_status(runtime)
    if args.json:
        _emit(json.dumps(payload, indent=2, ensure_ascii=True))
        return 0
    assistant = payload["assistant"]
    stats = payload["stats"]
    _emit_structured(
        title="Assistant:",
        payload={
            "status": assistant["status"],
            "model": assistant["model"],
            "session": assistant["sessionKey"],
            "current_task": assistant.get("currentTask") or "-",
            "uptime_seconds": assistant["uptime"],
        },
        as_json=False,
    )
    _emit_structured(
        title="Stats:",
        payload={
            "tasks_24h": stats["totalTasks24h"],
            "active_sub_agents": stats["activeSubAgents"],
            "active_cron_jobs": stats["activeCronJobs"],
            "avg_response": _format_ms(stats["avgResponseTime"]),
            "avg_completion": _format_ms(stats["avgCompletionTime"]),
        },
        as_json=False,
    )
    activity = payload["recentActivity"][: args.limit]
    _emit(f"Recent activity ({len(activity)}):")
    for event in activity:
        origin = f" [{event['sourceDisplay']}]" if event.get("sourceDisplay") else ""
        _emit(f"- {event['timestamp']} {event['type']}{origin}: {event['description'][:100]}")
    return 0


def _cmd_metrics(args: argparse.Namespace) -> int:
    """Print latency averages and sample counts from the metrics file."""
    runtime = build_runtime()
    summary = api_metrics(runtime)
    if args.json:
        _emit(json.dumps(summary, indent=2, ensure_ascii=True))
        return 0
    _emit_structured(
        title="Latency:",
        payload={
            "avg_response": _format_ms(summary["avgResponseTime"]),
            "avg_completion": _format_ms(summary["avgCompletionTime"]),
            "response_samples": summary["responseSamples"],
            "completion_samples": summary["completionSamples"],
            "metrics_file": runtime.config.metrics_path,
        },
        as_json=False,
    )
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    """Print the effective configuration and its source layers."""
    payload = api_config()
    if args.json:
        _emit(json.dumps(payload, indent=2, ensure_ascii=True))
        return 0
    _emit_structured(title="Effective config:", payload=payload["config"], as_json=False)
    _emit("Loaded from:")
    for layer in payload["sources"]:
        _emit(f"- {layer['source']}: {layer['path']}")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    """Run the dashboard server until SIGINT/SIGTERM, then flush metrics."""
    config = get_config()
    if args.demo:
        config = replace(config, publisher=replace(config.publisher, demo_mode=True))

    runtime = build_runtime(config)
    try:
        httpd = create_dashboard_server(runtime, host=args.host, port=args.port)
    except OSError as exc:
        logger.error("cannot bind dashboard server: {}", exc)
        return 1

    if not runtime.registry.available():
        logger.warning(
            "session registry not readable at {}; publishing sparse snapshots",
            runtime.registry.registry_path,
        )
    flusher = start_metrics_flusher(runtime.metrics, config.metrics.flush_interval_seconds)

    def _shutdown(signum: int, frame: Any) -> None:
        """Handle graceful shutdown on SIGTERM/SIGINT."""
        logger.info("received signal {}, shutting down", signum)
        threading.Thread(target=httpd.shutdown, name="pulseboard-shutdown", daemon=True).start()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        httpd.serve_forever()
    finally:
        runtime.publisher.close()
        flusher.stop()
        runtime.metrics.save()
        httpd.server_close()
        logger.info("metrics saved to {}", runtime.config.metrics_path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Construct the canonical Pulseboard command-line parser."""
    _F = argparse.RawDescriptionHelpFormatter  # noqa: N806
    parser = argparse.ArgumentParser(
        prog="pulseboard",
        formatter_class=_F,
        description="Pulseboard -- live status dashboard backend for an AI assistant.\n"
        "Reads agent session transcripts, derives activity and latency\n"
        "metrics, and streams snapshots to browser clients.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit structured JSON instead of human-readable text (status, metrics, config).",
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser(
        "serve",
        formatter_class=_F,
        help="Run the HTTP + event-stream server",
        description="Serve /health, /api/status, /api/metrics and /api/stream.\n"
        "Snapshots are rebuilt every publisher interval while clients are connected.",
    )
    serve.add_argument("--host", help="Bind address (default from config).")
    serve.add_argument("--port", type=int, help="Bind port (default from config).")
    serve.add_argument(
        "--demo",
        action="store_true",
        help="Broadcast every tick even when nothing changed.",
    )
    serve.set_defaults(func=_cmd_serve)

    status = sub.add_parser(
        "status",
        help="Build one dashboard snapshot and print it",
        description="Read local session files once and print the dashboard snapshot.",
    )
    status.add_argument(
        "--limit",
        type=int,
        default=10,
        help="Recent activity rows to print in text mode (default: 10).",
    )
    status.set_defaults(func=_cmd_status)

    metrics = sub.add_parser(
        "metrics",
        help="Print response/completion latency averages",
        description="Print latency averages and sample counts from the metrics file.",
    )
    metrics.set_defaults(func=_cmd_metrics)

    config = sub.add_parser(
        "config",
        help="Print the effective configuration",
        description="Print merged TOML config and the layers it was loaded from.",
    )
    config.set_defaults(func=_cmd_config)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entrypoint for CLI invocation with global flags and dispatch."""
    configure_logging()
    parser = build_parser()
    raw = list(sys.argv[1:] if argv is None else argv)
    args = parser.parse_args(_hoist_global_json_flag(raw))

    if not getattr(args, "command", None):
        parser.print_help()
        return 0

    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))


if __name__ == "__main__":
    raise SystemExit(main())
