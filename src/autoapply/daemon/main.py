"""Daemon entrypoint for the AutoApply runtime.

Three modes:
  * default: run the apply-service loop and serve the HTTP app with uvicorn
  * ``--no-app``: run the apply-service loop headless until SIGINT/SIGTERM
  * ``--once``: claim and process a single queue entry, print the result, exit
"""

from __future__ import annotations

import argparse
import json
import signal
from threading import Event
from typing import Any

from src.autoapply.core.log import get_logger
from src.autoapply.runtime.service import get_runtime_service

log = get_logger(__name__)

MIN_TICK_SEC = 0.05
DEFAULT_STATUS_EVERY_SEC = 300.0


def _install_signal_handlers(stop_event: Event) -> None:
    def _handler(signum, _frame) -> None:  # type: ignore[no-untyped-def]
        log.info("Received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _serve_app(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("app.main:app", host=host, port=port, reload=False)


def _log_service_status(status: dict[str, Any]) -> None:
    log.info(
        "Apply service running=%s ticks=%s last_tick_at=%s last_error=%s",
        status.get("running"),
        status.get("tick_count"),
        status.get("last_tick_at"),
        status.get("last_error"),
    )


def _wait_headless(stop_event: Event, *, tick_sec: float, status_every_sec: float) -> None:
    runtime = get_runtime_service()
    waited = 0.0
    while not stop_event.wait(timeout=tick_sec):
        waited += tick_sec
        if waited >= status_every_sec:
            waited = 0.0
            _log_service_status(runtime.service_status().get("service") or {})


def run_daemon(
    *,
    with_app: bool = True,
    host: str = "127.0.0.1",
    port: int = 8000,
    tick_sec: float = 0.5,
    status_every_sec: float = DEFAULT_STATUS_EVERY_SEC,
    stop_event: Event | None = None,
) -> int:
    runtime = get_runtime_service()
    started = runtime.start(start_service_if_enabled=True, source="daemon")
    log.info("AutoApply daemon started (app=%s, service_started=%s)", with_app, started.get("service_started"))

    try:
        if with_app:
            _serve_app(host, port)
        else:
            event = stop_event or Event()
            if stop_event is None:
                _install_signal_handlers(event)
            _wait_headless(event, tick_sec=max(MIN_TICK_SEC, tick_sec), status_every_sec=status_every_sec)
    finally:
        runtime.stop(source="daemon")
        log.info("AutoApply daemon stopped")
    return 0


def run_once() -> int:
    """Process one queue entry, the way the cron trigger does. Exit 1 when nothing could run."""
    out = get_runtime_service().process_queue_once()
    print(json.dumps(out, indent=2, default=str))
    if not out.get("ok") and not out.get("processed"):
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the AutoApply daemon (discovery API and application queue loop).")
    parser.add_argument("--host", default="127.0.0.1", help="Bind host for the HTTP app.")
    parser.add_argument("--port", type=int, default=8000, help="Bind port for the HTTP app.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--no-app", action="store_true", help="Run only the application queue loop.")
    mode.add_argument("--once", action="store_true", help="Process a single queue entry and exit.")
    parser.add_argument("--tick-sec", type=float, default=0.5, help="Headless wait granularity.")
    parser.add_argument(
        "--status-every-sec",
        type=float,
        default=DEFAULT_STATUS_EVERY_SEC,
        help="How often headless mode logs the apply service status.",
    )
    args = parser.parse_args(argv)

    if args.once:
        return run_once()
    return run_daemon(
        with_app=not args.no_app,
        host=args.host,
        port=args.port,
        tick_sec=max(MIN_TICK_SEC, float(args.tick_sec)),
        status_every_sec=max(float(args.tick_sec), float(args.status_every_sec)),
    )


if __name__ == "__main__":
    raise SystemExit(main())
