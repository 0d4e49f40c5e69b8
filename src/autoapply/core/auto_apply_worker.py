"""Drives one queue entry through an external application executor."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from importlib import import_module
from typing import Any

from .application_queue import ApplicationQueue
from .job_types import ApplyResult
from .log import get_logger
from .user_profiles import missing_apply_fields

log = get_logger(__name__)

REDIRECT_SKIP_REASON = "External application site - manual application required"

_PLATFORM_MARKERS = (
    ("linkedin", ("linkedin.com",)),
    ("indeed", ("indeed.com",)),
    ("greenhouse", ("greenhouse.io",)),
    ("lever", ("lever.co",)),
)

_PROFILE_FIELD_LABELS = {
    "first_name": "firstName",
    "last_name": "lastName",
    "email": "email",
    "phone": "phone",
    "resume_text": "resumeText",
}


def detect_platform(url: str) -> str:
    low = (url or "").lower()
    for platform, markers in _PLATFORM_MARKERS:
        if any(marker in low for marker in markers):
            return platform
    return "other"


class ApplicationExecutor(ABC):
    """Boundary to whatever actually submits the application (browser automation, API, ...)."""

    @abstractmethod
    def create_session(self) -> str:
        """Open an executor session and return its id."""

    @abstractmethod
    def apply(self, session_id: str, job: dict[str, Any], profile: dict[str, Any]) -> ApplyResult:
        """Submit one application. Report failure through the result, not by raising."""

    @abstractmethod
    def close_session(self, session_id: str) -> None:
        """Release the session. Called exactly once per opened session."""


def load_executor(path: str) -> ApplicationExecutor:
    """Instantiate an executor from a `package.module:ClassName` path."""
    module_name, sep, class_name = (path or "").partition(":")
    if not sep or not module_name.strip() or not class_name.strip():
        raise ValueError(f"Executor path must look like 'module:ClassName', got {path!r}.")
    module = import_module(module_name.strip())
    cls = getattr(module, class_name.strip(), None)
    if not isinstance(cls, type) or not issubclass(cls, ApplicationExecutor):
        raise ValueError(f"{path!r} is not an ApplicationExecutor subclass.")
    return cls()


class AutoApplyWorker:
    def __init__(self, queue: ApplicationQueue, executor: ApplicationExecutor) -> None:
        self._queue = queue
        self._executor = executor

    def process_next(self, *, now: datetime | None = None) -> dict[str, Any]:
        """Claim the next eligible entry and run one application attempt for it."""
        picked = self._queue.claim_next(now=now)
        if picked is None:
            return {"ok": True, "processed": 0, "message": "No pending jobs"}

        entry = picked["queue_entry"]
        if picked.get("job") is None:
            # Already claimed; fail it now rather than leave it for the watchdog.
            log.warning("Queue entry %s has no job record", entry["queue_id"])
            self._queue.mark_failed(queue_id=entry["queue_id"], error="Job record not found", now=now)
            return {"ok": False, "processed": 1, "queue_id": entry["queue_id"], "error": "Job record not found"}

        job = picked["job"]
        profile = picked.get("profile") or {}
        queue_id = entry["queue_id"]
        log.info("Processing %s: %s at %s for user %s", queue_id, job["job_title"], job["company"], entry["user_id"])

        missing = [_PROFILE_FIELD_LABELS[key] for key in missing_apply_fields(profile)]
        if missing:
            error = f"Missing required fields: {', '.join(missing)}"
            self._queue.mark_failed(queue_id=queue_id, error=error, now=now)
            return {"ok": False, "processed": 1, "queue_id": queue_id, "error": "Missing profile fields", "missing_fields": missing}

        try:
            session_id = self._executor.create_session()
        except Exception as exc:
            log.error("Browser session creation failed for %s: %s", queue_id, exc)
            self._queue.mark_failed(queue_id=queue_id, error=f"Browser session failed: {exc}", now=now)
            return {"ok": False, "processed": 1, "queue_id": queue_id, "error": "Failed to create browser session"}

        try:
            self._queue.attach_browser_session(queue_id=queue_id, browser_session_id=session_id, now=now)
            application = {
                "job_id": job["job_id"],
                "title": job["job_title"],
                "company": job["company"],
                "apply_url": job["apply_link"],
                "platform": detect_platform(job["apply_link"]),
                "cover_letter": job.get("cover_letter"),
            }
            try:
                result = self._executor.apply(session_id, application, profile)
            except Exception as exc:
                log.error("Executor raised while applying %s: %s", queue_id, exc)
                result = ApplyResult(success=False, error=f"Application error: {exc}")
            return self._record_outcome(queue_id, job, result, now)
        finally:
            try:
                self._executor.close_session(session_id)
            except Exception as exc:
                log.warning("Error closing executor session %s: %s", session_id, exc)

    def _record_outcome(
        self,
        queue_id: str,
        job: dict[str, Any],
        result: ApplyResult,
        now: datetime | None,
    ) -> dict[str, Any]:
        log.info("Application result for %s: %s", queue_id, "SUCCESS" if result.success else "FAILED")
        if result.success:
            self._queue.mark_completed(queue_id=queue_id, result=result.to_dict(), now=now)
            return {
                "ok": True,
                "processed": 1,
                "queue_id": queue_id,
                "job_id": job["job_id"],
                "job_title": job["job_title"],
                "company": job["company"],
                "method": result.method,
                "duration_ms": result.duration_ms,
            }
        if result.method == "redirect":
            self._queue.mark_skipped(queue_id=queue_id, reason=REDIRECT_SKIP_REASON, now=now)
        else:
            self._queue.mark_failed(queue_id=queue_id, error=result.error or "Application failed", now=now)
        return {
            "ok": False,
            "processed": 1,
            "queue_id": queue_id,
            "job_id": job["job_id"],
            "error": result.error,
            "method": result.method,
        }
