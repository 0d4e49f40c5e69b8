"""In-memory registry of discovery sessions and their results."""

from __future__ import annotations

from threading import RLock
from time import time
from typing import Any, Callable

from .log import get_logger

log = get_logger(__name__)

DEFAULT_SESSION_MAX_AGE_SEC = 30 * 60
SESSION_STATUSES = ("searching", "analyzing", "complete", "failed")


class SessionRegistry:
    """Progress and result maps keyed by session id.

    `clock` returns epoch seconds; entries untouched for longer than the
    max age are dropped by `cleanup`.
    """

    def __init__(self, *, clock: Callable[[], float] = time) -> None:
        self._clock = clock
        self._lock = RLock()
        self._progress: dict[str, dict[str, Any]] = {}
        self._results: dict[str, dict[str, Any]] = {}

    def set_progress(self, session_id: str, progress: dict[str, Any]) -> dict[str, Any]:
        status = progress.get("status")
        if status not in SESSION_STATUSES:
            raise ValueError(f"invalid session status: {status}")
        now = self._clock()
        with self._lock:
            previous = self._progress.get(session_id)
            entry = dict(progress)
            entry["session_id"] = session_id
            entry["created_at"] = previous["created_at"] if previous else now
            entry["updated_at"] = now
            self._progress[session_id] = entry
            return dict(entry)

    def get_progress(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._progress.get(session_id)
            return dict(entry) if entry is not None else None

    def set_results(self, session_id: str, jobs: list[dict[str, Any]], *, completed: bool) -> None:
        with self._lock:
            self._results[session_id] = {"jobs": list(jobs), "completed": bool(completed)}

    def get_results(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._results.get(session_id)
            return {"jobs": list(entry["jobs"]), "completed": entry["completed"]} if entry else None

    def has(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._progress

    def delete(self, session_id: str) -> bool:
        with self._lock:
            self._results.pop(session_id, None)
            return self._progress.pop(session_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._progress)

    def cleanup(self, max_age_sec: float = DEFAULT_SESSION_MAX_AGE_SEC) -> int:
        """Evict sessions whose last update is older than `max_age_sec`."""
        now = self._clock()
        removed: list[str] = []
        with self._lock:
            for session_id, entry in list(self._progress.items()):
                last_update = entry.get("updated_at") or entry.get("created_at") or 0.0
                if now - last_update > max_age_sec:
                    del self._progress[session_id]
                    self._results.pop(session_id, None)
                    removed.append(session_id)
            # Results without progress cannot be polled; drop them too.
            for session_id in [sid for sid in self._results if sid not in self._progress]:
                del self._results[session_id]
        for session_id in removed:
            log.info("Evicted discovery session %s", session_id)
        return len(removed)

    def list_sessions(self) -> list[dict[str, Any]]:
        now = self._clock()
        with self._lock:
            return [
                {
                    "session_id": session_id,
                    "status": entry["status"],
                    "age_sec": int(now - entry["created_at"]),
                }
                for session_id, entry in self._progress.items()
            ]
