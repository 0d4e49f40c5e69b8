"""Per-provider serialized call lanes for rate-limited HTTP APIs."""

from __future__ import annotations

from dataclasses import dataclass, field
from random import uniform
from threading import Lock
from time import monotonic, sleep
from typing import Any, Callable

from .log import get_logger

log = get_logger(__name__)


@dataclass
class _Lane:
    call_lock: Lock = field(default_factory=Lock)
    stats_lock: Lock = field(default_factory=Lock)
    waiting: int = 0
    calls_total: int = 0
    calls_success: int = 0
    calls_failed: int = 0
    retries_total: int = 0
    last_error: str | None = None
    last_finished_mono: float | None = None

    def snapshot(self, group: str) -> dict[str, Any]:
        with self.stats_lock:
            return {
                "group": group,
                "waiting": self.waiting,
                "calls_total": self.calls_total,
                "calls_success": self.calls_success,
                "calls_failed": self.calls_failed,
                "retries_total": self.retries_total,
                "last_error": self.last_error,
            }

    def _finish(self, *, error: str | None) -> None:
        with self.stats_lock:
            if error is None:
                self.calls_success += 1
            else:
                self.calls_failed += 1
            self.last_error = error
            self.last_finished_mono = monotonic()


_LANES: dict[str, _Lane] = {}
_LANES_LOCK = Lock()


def _nonnegative(value: Any) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    return parsed if parsed > 0 else 0.0


def _lane(group: str) -> _Lane:
    with _LANES_LOCK:
        lane = _LANES.get(group)
        if lane is None:
            lane = _Lane()
            _LANES[group] = lane
        return lane


def provider_queue_stats(group: str) -> dict[str, Any]:
    return _lane(group).snapshot(group)


def reset_provider_queues() -> None:
    with _LANES_LOCK:
        _LANES.clear()


def execute_provider_call(
    *,
    group: str,
    fn: Callable[[], Any],
    min_interval_sec: float = 0.0,
    jitter_sec: float = 0.0,
    max_retries: int = 0,
    retry_backoff_sec: float = 0.0,
    is_retryable: Callable[[Exception], bool] | None = None,
) -> dict[str, Any]:
    """Run `fn` alone in its provider lane, spaced at least `min_interval_sec` from the last call.

    Exceptions from `fn` are retried (doubling `retry_backoff_sec`) while
    `is_retryable` agrees, then reported as `{"ok": False, "error": ...}`.
    """
    lane = _lane(group)
    started = monotonic()
    with lane.stats_lock:
        lane.waiting += 1

    with lane.call_lock:
        with lane.stats_lock:
            lane.waiting = max(0, lane.waiting - 1)
            lane.calls_total += 1
            last_finished = lane.last_finished_mono

        min_interval = _nonnegative(min_interval_sec)
        if last_finished is not None and min_interval > 0:
            remaining = min_interval - (monotonic() - last_finished)
            if remaining > 0:
                sleep(remaining)
        jitter = _nonnegative(jitter_sec)
        if jitter > 0:
            sleep(uniform(0.0, jitter))
        wait_sec = max(0.0, monotonic() - started)

        attempt = 0
        while True:
            try:
                value = fn()
            except Exception as exc:
                retry = attempt < max(0, int(max_retries))
                if retry and is_retryable is not None:
                    retry = bool(is_retryable(exc))
                if not retry:
                    lane._finish(error=str(exc))
                    log.warning("Provider %s call failed after %d attempt(s): %s", group, attempt + 1, exc)
                    return {
                        "ok": False,
                        "error": str(exc),
                        "queue": {"group": group, "wait_sec": wait_sec, "attempt": attempt + 1},
                    }
                with lane.stats_lock:
                    lane.retries_total += 1
                delay = _nonnegative(retry_backoff_sec)
                if delay > 0:
                    sleep(delay * (2**attempt))
                attempt += 1
                continue
            lane._finish(error=None)
            return {
                "ok": True,
                "value": value,
                "queue": {"group": group, "wait_sec": wait_sec, "attempt": attempt + 1},
            }
