"""Shared runtime ownership facade for daemon/app entrypoints."""

from __future__ import annotations

from datetime import datetime
from threading import RLock, Thread
from time import time
from typing import Any, Callable
from uuid import uuid4

from src.autoapply.core.application_queue import ApplicationQueue
from src.autoapply.core.applications import ApplicationHistory
from src.autoapply.core.apply_service import ApplyService
from src.autoapply.core.auto_apply_worker import ApplicationExecutor, AutoApplyWorker, load_executor
from src.autoapply.core.config_loader import get_executor_path
from src.autoapply.core.db import Database
from src.autoapply.core.discovery_agent import JobDiscoveryAgent, get_discovery_settings
from src.autoapply.core.job_store import JobStore
from src.autoapply.core.job_types import DiscoveredJob, DiscoveryProgress, format_salary
from src.autoapply.core.log import get_logger
from src.autoapply.core.session_registry import SessionRegistry
from src.autoapply.core.user_profiles import UserProfileStore

log = get_logger(__name__)

MIN_RESUME_CHARS = 100

_SESSION_STATUS_BY_AGENT_STATUS = {
    "searching": "searching",
    "analyzing": "analyzing",
    "generating": "analyzing",
    "complete": "complete",
    "error": "failed",
    "idle": "failed",
}


def session_status_for(progress: DiscoveryProgress) -> str:
    return _SESSION_STATUS_BY_AGENT_STATUS.get(progress.status, "analyzing")


def discovered_job_view(discovered: DiscoveredJob) -> dict[str, Any]:
    """Flatten a discovered posting and its analysis for API consumers."""
    job = discovered.job
    result = discovered.match_result
    return {
        "id": job.get("job_id"),
        "job_title": job.get("title"),
        "company": job.get("employer"),
        "location": job.get("location"),
        "salary": format_salary(
            salary_min=job.get("salary_min"),
            salary_max=job.get("salary_max"),
            period=job.get("salary_period"),
        ),
        "job_type": job.get("employment_type"),
        "remote": bool(job.get("remote")),
        "description": job.get("description") or "",
        "apply_link": job.get("apply_link") or "",
        "source": job.get("source") or "jsearch",
        "match_score": discovered.match_score,
        "match_analysis": result.get("summary"),
        "matched_skills": result.get("matched_skills") or [],
        "missing_skills": result.get("missing_skills") or [],
        "cover_letter": discovered.cover_letter or None,
        "employer_logo": job.get("employer_logo"),
    }


def _executor_from_config() -> ApplicationExecutor | None:
    path = get_executor_path()
    if not path:
        return None
    try:
        return load_executor(path)
    except (ImportError, ValueError) as exc:
        log.error("Could not load application executor %r: %s", path, exc)
        return None


class RuntimeService:
    """Single authority for runtime lifecycle + app-facing operations."""

    def __init__(
        self,
        *,
        database: Database | None = None,
        executor: ApplicationExecutor | None = None,
        agent_factory: Callable[..., JobDiscoveryAgent] = JobDiscoveryAgent,
        clock: Callable[[], float] = time,
    ) -> None:
        self._db = database or Database()
        self.jobs = JobStore(self._db)
        self.queue = ApplicationQueue(self._db)
        self.applications = ApplicationHistory(self._db)
        self.profiles = UserProfileStore(self._db)
        self.registry = SessionRegistry(clock=clock)
        resolved_executor = executor if executor is not None else _executor_from_config()
        worker = AutoApplyWorker(self.queue, resolved_executor) if resolved_executor is not None else None
        self.apply_service = ApplyService(queue=self.queue, registry=self.registry, worker=worker)
        self._agent_factory = agent_factory
        self._agents: dict[str, JobDiscoveryAgent] = {}
        self._discovery_threads: dict[str, Thread] = {}
        self._lock = RLock()
        self._started = False
        self._last_start_source: str | None = None
        self._last_stop_source: str | None = None

    def start(self, *, start_service_if_enabled: bool = True, source: str = "runtime") -> dict[str, Any]:
        with self._lock:
            already_started = self._started
            self._started = True
            self._last_start_source = source

        service_started = False
        if start_service_if_enabled and self.apply_service.settings.enabled:
            out = self.apply_service.start()
            service_started = bool(out.get("ok")) and not out.get("already_running")
        return {
            "ok": True,
            "source": "runtime_service",
            "already_started": already_started,
            "started": True,
            "start_source": source,
            "service_started": service_started,
        }

    def stop(self, *, source: str = "runtime") -> dict[str, Any]:
        service_stopped = bool(self.apply_service.stop().get("ok"))
        with self._lock:
            self._started = False
            self._last_stop_source = source
            agents = list(self._agents.values())
        for agent in agents:
            agent.stop()
        return {"ok": True, "source": "runtime_service", "stopped": True, "stop_source": source, "service_stopped": service_stopped}

    def health(self) -> dict[str, Any]:
        with self._lock:
            runtime = {
                "started": self._started,
                "last_start_source": self._last_start_source,
                "last_stop_source": self._last_stop_source,
                "active_discoveries": len(self._agents),
            }
        return {
            "ok": True,
            "source": "runtime_service",
            "runtime": runtime,
            "apply_service": self.apply_service.status().get("service"),
            "database": str(self._db.db_path),
        }

    # Discovery

    def start_discovery(
        self,
        *,
        resume_text: str,
        user_id: str | None = None,
        overrides: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Kick off a background discovery run and return its session id immediately."""
        if not isinstance(resume_text, str) or len(resume_text) < MIN_RESUME_CHARS:
            return {"ok": False, "error": f"Resume text is required and must be at least {MIN_RESUME_CHARS} characters"}
        try:
            config = get_discovery_settings(**(overrides or {}))
        except (TypeError, ValueError) as exc:
            return {"ok": False, "error": f"Invalid discovery config: {exc}"}

        session_id = f"discovery_{int(time() * 1000)}_{uuid4().hex[:8]}"
        self.registry.set_progress(
            session_id,
            {
                "status": "searching",
                "current_phase": "Starting job search...",
                "jobs_found": 0,
                "jobs_analyzed": 0,
                "jobs_qualified": 0,
                "average_match_score": 0,
                "error": None,
            },
        )
        self.registry.set_results(session_id, [], completed=False)

        agent = self._agent_factory(resume_text, config)
        agent.on_progress(lambda progress: self._mirror_progress(session_id, progress))
        thread = Thread(
            target=self._run_discovery,
            args=(session_id, agent, user_id),
            daemon=True,
            name=f"autoapply-{session_id}",
        )
        with self._lock:
            self._agents[session_id] = agent
            self._discovery_threads[session_id] = thread
        thread.start()
        log.info("Started discovery session %s", session_id)
        return {"ok": True, "session_id": session_id, "config": config.to_dict()}

    def _mirror_progress(self, session_id: str, progress: DiscoveryProgress) -> None:
        self.registry.set_progress(
            session_id,
            {
                "status": session_status_for(progress),
                "current_phase": progress.current_phase,
                "jobs_found": progress.jobs_found,
                "jobs_analyzed": progress.jobs_analyzed,
                "jobs_qualified": progress.jobs_qualified,
                "average_match_score": progress.average_match_score or 0,
                "error": progress.error if progress.status != "idle" else progress.current_phase,
            },
        )

    def _run_discovery(self, session_id: str, agent: JobDiscoveryAgent, user_id: str | None) -> None:
        try:
            self._collect_discovery(session_id, agent, user_id)
        finally:
            with self._lock:
                self._agents.pop(session_id, None)
                self._discovery_threads.pop(session_id, None)

    def _collect_discovery(self, session_id: str, agent: JobDiscoveryAgent, user_id: str | None) -> None:
        try:
            discovered = agent.discover()
        except Exception as exc:
            # The agent already published the error state through its progress callback.
            log.error("Discovery session %s failed: %s", session_id, exc)
            self.registry.set_results(session_id, [], completed=True)
            return

        if user_id and not agent.cancelled:
            for item in discovered:
                out = self.jobs.upsert_discovered(
                    user_id=user_id,
                    external_job_id=str(item.job.get("job_id") or ""),
                    attributes=item.to_job_attributes(),
                )
                if not out.get("ok"):
                    log.warning("Could not save discovered job %r: %s", item.job.get("job_id"), out.get("error"))
        self.registry.set_results(session_id, [discovered_job_view(item) for item in discovered], completed=True)

    def discovery_status(self, *, session_id: str) -> dict[str, Any]:
        progress = self.registry.get_progress(session_id)
        if progress is None:
            return {"ok": False, "error": "Session not found"}
        out: dict[str, Any] = {"ok": True, "progress": progress}
        results = self.registry.get_results(session_id)
        if progress["status"] == "complete" and results and results["completed"]:
            jobs = results["jobs"]
            out["data"] = {
                "jobs": jobs,
                "stats": {
                    "total_found": progress.get("jobs_found", 0),
                    "qualified": len(jobs),
                    "average_match_score": progress.get("average_match_score", 0),
                },
            }
        return out

    def stop_discovery(self, *, session_id: str) -> dict[str, Any]:
        with self._lock:
            agent = self._agents.get(session_id)
        if agent is None:
            return {"ok": False, "error": "No running discovery for this session"}
        agent.stop()
        return {"ok": True, "session_id": session_id}

    def wait_for_discovery(self, *, session_id: str, timeout_sec: float | None = None) -> bool:
        with self._lock:
            thread = self._discovery_threads.get(session_id)
        if thread is None:
            return True
        thread.join(timeout=timeout_sec)
        return not thread.is_alive()

    def list_discovery_sessions(self) -> dict[str, Any]:
        return {"ok": True, "sessions": self.registry.list_sessions()}

    # Jobs

    def list_jobs(self, *, user_id: str, status: str | None = None) -> dict[str, Any]:
        return {"ok": True, "jobs": self.jobs.list_jobs(user_id=user_id, status=status)}

    def get_job(self, *, job_record_id: str) -> dict[str, Any]:
        job = self.jobs.get_job(job_record_id)
        if job is None:
            return {"ok": False, "error": "Job record not found"}
        return {"ok": True, "job": job}

    def job_stats(self, *, user_id: str) -> dict[str, Any]:
        return {"ok": True, "stats": self.jobs.job_stats(user_id=user_id)}

    def approve_jobs(self, *, job_record_ids: list[str]) -> dict[str, Any]:
        return self.jobs.approve(job_record_ids)

    def reject_jobs(self, *, job_record_ids: list[str]) -> dict[str, Any]:
        return self.jobs.reject(job_record_ids)

    def retry_job(self, *, job_record_id: str) -> dict[str, Any]:
        return self.jobs.retry_failed_job(job_record_id=job_record_id)

    def list_approved_jobs(self, *, user_id: str) -> dict[str, Any]:
        return {"ok": True, "jobs": self.jobs.list_approved(user_id=user_id)}

    def high_match_jobs(self, *, user_id: str, min_score: int | None = None) -> dict[str, Any]:
        if min_score is None:
            jobs = self.jobs.high_match_jobs(user_id=user_id)
        else:
            jobs = self.jobs.high_match_jobs(user_id=user_id, min_score=min_score)
        return {"ok": True, "jobs": jobs}

    def update_job_status(self, *, job_record_id: str, status: str, error: str | None = None) -> dict[str, Any]:
        return self.jobs.transition_status(job_record_id=job_record_id, status=status, error=error)

    def batch_update_job_statuses(self, *, updates: list[dict[str, Any]]) -> dict[str, Any]:
        results = self.jobs.batch_update_statuses(updates)
        return {
            "ok": True,
            "updated_count": sum(1 for item in results if item["ok"]),
            "results": results,
        }

    def claim_job_for_apply(self, *, job_record_id: str) -> dict[str, Any]:
        out = self.jobs.mark_job_as_applying(job_record_id=job_record_id)
        if not out["ok"]:
            return {"ok": False, "error": "Job is not approved or was already claimed"}
        return out

    def update_cover_letter(self, *, job_record_id: str, cover_letter: str) -> dict[str, Any]:
        return self.jobs.update_cover_letter(job_record_id=job_record_id, cover_letter=cover_letter)

    def remove_job(self, *, job_record_id: str) -> dict[str, Any]:
        return self.jobs.remove_job(job_record_id=job_record_id)

    def auto_apply_status(self, *, user_id: str) -> dict[str, Any]:
        """Pipeline counts plus the entry being worked on, for the auto-apply dashboard."""
        return {
            "ok": True,
            "stats": self.jobs.auto_apply_stats(user_id=user_id),
            "queue": self.queue.queue_stats(user_id=user_id),
            "current": self.queue.currently_processing(user_id=user_id),
            "service": self.apply_service.status().get("service"),
        }

    # Queue

    def queue_jobs(self, *, user_id: str, job_record_ids: list[str]) -> dict[str, Any]:
        return self.queue.queue_for_application(user_id=user_id, job_record_ids=job_record_ids)

    def queue_stats(self, *, user_id: str) -> dict[str, Any]:
        return {"ok": True, "stats": self.queue.queue_stats(user_id=user_id)}

    def list_queue(self, *, user_id: str, status: str | None = None) -> dict[str, Any]:
        return {"ok": True, "entries": self.queue.list_user_queue(user_id=user_id, status=status)}

    def cancel_queue_entry(self, *, queue_id: str) -> dict[str, Any]:
        return self.queue.cancel(queue_id=queue_id)

    def current_queue_entry(self, *, user_id: str) -> dict[str, Any]:
        return {"ok": True, "entry": self.queue.currently_processing(user_id=user_id)}

    def process_queue_once(self, *, now: datetime | None = None) -> dict[str, Any]:
        return self.apply_service.process_once(now=now)

    # External executor boundary: a worker outside this process claims entries
    # and reports each outcome back through these calls.

    def claim_queue_entry(self, *, now: datetime | None = None) -> dict[str, Any]:
        picked = self.queue.claim_next(now=now)
        if picked is None:
            return {"ok": True, "claimed": False}
        return {"ok": True, "claimed": True, **picked}

    def start_queue_entry(
        self,
        *,
        queue_id: str,
        browser_session_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        return self.queue.mark_in_progress(queue_id=queue_id, browser_session_id=browser_session_id, now=now)

    def attach_queue_session(self, *, queue_id: str, browser_session_id: str, now: datetime | None = None) -> dict[str, Any]:
        return self.queue.attach_browser_session(queue_id=queue_id, browser_session_id=browser_session_id, now=now)

    def complete_queue_entry(
        self,
        *,
        queue_id: str,
        result: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        payload = {**(result or {}), "success": True}
        return self.queue.mark_completed(queue_id=queue_id, result=payload, now=now)

    def fail_queue_entry(self, *, queue_id: str, error: str, now: datetime | None = None) -> dict[str, Any]:
        if not error.strip():
            return {"ok": False, "error": "Failure reason is required"}
        return self.queue.mark_failed(queue_id=queue_id, error=error.strip(), now=now)

    def skip_queue_entry(self, *, queue_id: str, reason: str, now: datetime | None = None) -> dict[str, Any]:
        if not reason.strip():
            return {"ok": False, "error": "Skip reason is required"}
        return self.queue.mark_skipped(queue_id=queue_id, reason=reason.strip(), now=now)

    # Applications

    def list_applications(self, *, user_id: str, status: str | None = None, limit: int | None = None) -> dict[str, Any]:
        return {"ok": True, "applications": self.applications.list_applications(user_id=user_id, status=status, limit=limit)}

    def application_stats(self, *, user_id: str) -> dict[str, Any]:
        return {"ok": True, "stats": self.applications.application_stats(user_id=user_id)}

    def record_application(self, **kwargs: Any) -> dict[str, Any]:
        return self.applications.record_application(**kwargs)

    def update_application_status(self, *, application_id: str, status: str, notes: str | None = None) -> dict[str, Any]:
        return self.applications.update_status(application_id=application_id, status=status, notes=notes)

    # Profiles

    def upsert_profile(self, *, user_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return self.profiles.upsert_profile(user_id=user_id, fields=fields)

    def get_profile(self, *, user_id: str) -> dict[str, Any]:
        profile = self.profiles.get_profile(user_id)
        if profile is None:
            return {"ok": False, "error": "Profile not found"}
        return {"ok": True, "profile": profile}

    # Apply service

    def service_status(self) -> dict[str, Any]:
        return self.apply_service.status()

    def service_start(self) -> dict[str, Any]:
        return self.apply_service.start()

    def service_stop(self) -> dict[str, Any]:
        return self.apply_service.stop()


_RUNTIME_SERVICE: RuntimeService | None = None
_RUNTIME_LOCK = RLock()


def get_runtime_service() -> RuntimeService:
    global _RUNTIME_SERVICE
    with _RUNTIME_LOCK:
        if _RUNTIME_SERVICE is None:
            _RUNTIME_SERVICE = RuntimeService()
        return _RUNTIME_SERVICE
