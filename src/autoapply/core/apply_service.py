"""Background loop that drives the application queue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from threading import Event, RLock, Thread
from typing import Any

from .application_queue import ApplicationQueue
from .auto_apply_worker import AutoApplyWorker
from .config_loader import get_apply_service_config, get_discovery_config
from .db import iso, utc_now
from .log import get_logger
from .session_registry import DEFAULT_SESSION_MAX_AGE_SEC, SessionRegistry

log = get_logger(__name__)


@dataclass(slots=True)
class ApplyServiceSettings:
    enabled: bool = False
    max_per_tick: int = 1
    session_max_age_sec: int = DEFAULT_SESSION_MAX_AGE_SEC


def load_apply_service_settings(config: dict[str, Any] | None = None) -> ApplyServiceSettings:
    service = get_apply_service_config(config)
    discovery = get_discovery_config(config)
    max_per_tick = service.get("max_per_tick", 1)
    max_age = discovery.get("session_max_age_sec", DEFAULT_SESSION_MAX_AGE_SEC)
    return ApplyServiceSettings(
        enabled=bool(service.get("enabled", False)),
        max_per_tick=int(max_per_tick) if isinstance(max_per_tick, int) and max_per_tick > 0 else 1,
        session_max_age_sec=int(max_age) if isinstance(max_age, int) and max_age > 0 else DEFAULT_SESSION_MAX_AGE_SEC,
    )


class ApplyService:
    """Single-process queue driver.

    Each tick runs the stuck-entry watchdog, processes up to `max_per_tick`
    entries when an executor is wired in, then does housekeeping.
    """

    def __init__(
        self,
        *,
        queue: ApplicationQueue,
        registry: SessionRegistry,
        worker: AutoApplyWorker | None = None,
        settings: ApplyServiceSettings | None = None,
    ) -> None:
        self._queue = queue
        self._registry = registry
        self._worker = worker
        self._settings = settings or load_apply_service_settings()
        self._lock = RLock()
        self._tick_lock = RLock()
        self._stop_event = Event()
        self._loop_thread: Thread | None = None
        self._tick_count = 0
        self._last_tick_at: str | None = None
        self._last_error: str | None = None

    @property
    def settings(self) -> ApplyServiceSettings:
        return self._settings

    def start(self) -> dict[str, Any]:
        with self._lock:
            if self._loop_thread is not None and self._loop_thread.is_alive():
                return {"ok": True, "running": True, "already_running": True}
            self._stop_event.clear()
            self._loop_thread = Thread(target=self._run_loop, daemon=True, name="autoapply-apply-service")
            self._loop_thread.start()
        log.info("Apply service started (poll every %ss)", self._queue.settings.poll_interval_sec)
        return {"ok": True, "running": True, "already_running": False}

    def stop(self) -> dict[str, Any]:
        with self._lock:
            thread = self._loop_thread
            self._stop_event.set()
        if thread is not None and thread.is_alive():
            thread.join(timeout=2.0)
        with self._lock:
            self._loop_thread = None
        log.info("Apply service stopped")
        return {"ok": True, "running": False}

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:
                with self._lock:
                    self._last_error = str(exc)
                log.exception("Apply service tick failed")
            self._stop_event.wait(timeout=max(1, self._queue.settings.poll_interval_sec))

    def process_once(self, *, now: datetime | None = None) -> dict[str, Any]:
        """Process a single queue entry, as the cron trigger does."""
        if self._worker is None:
            return {"ok": False, "processed": 0, "error": "No application executor configured."}
        with self._tick_lock:
            return self._worker.process_next(now=now)

    def tick(self, *, now: datetime | None = None) -> dict[str, Any]:
        with self._tick_lock:
            watchdog = self._queue.recover_stuck(now=now)
            processed: list[dict[str, Any]] = []
            if self._worker is not None:
                for _ in range(self._settings.max_per_tick):
                    out = self._worker.process_next(now=now)
                    if not out.get("processed"):
                        break
                    processed.append(out)
            sweep = self._queue.sweep_older_than(now=now)
            evicted = self._registry.cleanup(self._settings.session_max_age_sec)

        with self._lock:
            self._tick_count += 1
            self._last_tick_at = iso(now or utc_now())
            self._last_error = None
        return {
            "ok": True,
            "watchdog": watchdog,
            "processed": processed,
            "housekeeping": {"sweep": sweep, "sessions_evicted": evicted},
        }

    def status(self) -> dict[str, Any]:
        with self._lock:
            running = self._loop_thread is not None and self._loop_thread.is_alive()
            return {
                "ok": True,
                "service": {
                    "running": running,
                    "enabled_in_config": self._settings.enabled,
                    "executor_configured": self._worker is not None,
                    "poll_interval_sec": self._queue.settings.poll_interval_sec,
                    "max_per_tick": self._settings.max_per_tick,
                    "tick_count": self._tick_count,
                    "last_tick_at": self._last_tick_at,
                    "last_error": self._last_error,
                },
            }
