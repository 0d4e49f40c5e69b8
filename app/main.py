"""HTTP surface for discovery, the review pipeline and the application queue."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.autoapply.core.config_loader import get_cron_secret
from src.autoapply.runtime.service import get_runtime_service

app = FastAPI(title="AutoApply")


class DiscoveryStartRequest(BaseModel):
    resume_text: str
    user_id: str | None = None
    search_queries: list[str] | None = None
    location: str | None = None
    remote_only: bool | None = None
    min_match_score: int | None = None
    max_jobs_to_analyze: int | None = None
    generate_cover_letters: bool | None = None


class JobIdsRequest(BaseModel):
    job_record_ids: list[str] = Field(default_factory=list)


class QueueRequest(BaseModel):
    user_id: str
    job_record_ids: list[str] = Field(default_factory=list)


class ApplicationRequest(BaseModel):
    user_id: str
    job_id: str
    job_title: str
    company: str
    apply_link: str = ""
    location: str | None = None
    source: str = "manual"
    application_method: str = "manual"
    job_record_id: str | None = None
    cover_letter_used: str | None = None
    match_score: int | None = None


class ApplicationStatusRequest(BaseModel):
    status: str
    notes: str | None = None


class JobStatusRequest(BaseModel):
    status: str
    error: str | None = None


class JobStatusUpdate(BaseModel):
    job_record_id: str
    status: str
    error: str | None = None


class BatchJobStatusRequest(BaseModel):
    updates: list[JobStatusUpdate] = Field(default_factory=list)


class CoverLetterRequest(BaseModel):
    cover_letter: str


class QueueStartRequest(BaseModel):
    browser_session_id: str | None = None


class QueueSessionRequest(BaseModel):
    browser_session_id: str


class QueueCompleteRequest(BaseModel):
    method: str | None = None
    confirmation_text: str | None = None
    screenshot_url: str | None = None
    duration_ms: int | None = None


class QueueFailRequest(BaseModel):
    error: str


class QueueSkipRequest(BaseModel):
    reason: str


class ProfileRequest(BaseModel):
    fields: dict[str, Any] = Field(default_factory=dict)


def _soft(out: dict[str, Any]) -> dict[str, Any] | JSONResponse:
    """Map soft store failures onto 404 (missing record) or 400 (anything else)."""
    if out.get("ok"):
        return out
    error = str(out.get("error") or "Request failed")
    status_code = 404 if "not found" in error.lower() else 400
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error})


def _authorized(authorization: str | None) -> bool:
    secret = get_cron_secret()
    return not secret or authorization == f"Bearer {secret}"


def _unauthorized() -> JSONResponse:
    return JSONResponse(status_code=401, content={"ok": False, "error": "Unauthorized"})


@app.on_event("startup")
def _init_runtime_client() -> None:
    # The daemon owns the apply loop; the app only ensures the runtime exists.
    get_runtime_service().start(start_service_if_enabled=False, source="app")


@app.get("/health")
def health() -> dict:
    return get_runtime_service().health()


# Discovery


@app.post("/api/discovery/start")
def discovery_start(req: DiscoveryStartRequest):
    overrides = req.model_dump(exclude={"resume_text", "user_id"}, exclude_none=True)
    return _soft(
        get_runtime_service().start_discovery(
            resume_text=req.resume_text,
            user_id=req.user_id,
            overrides=overrides,
        )
    )


@app.get("/api/discovery/status")
def discovery_status(session_id: str = ""):
    if not session_id:
        return JSONResponse(status_code=400, content={"ok": False, "error": "Session ID required"})
    return _soft(get_runtime_service().discovery_status(session_id=session_id))


@app.post("/api/discovery/{session_id}/stop")
def discovery_stop(session_id: str):
    return _soft(get_runtime_service().stop_discovery(session_id=session_id))


@app.get("/api/discovery/sessions")
def discovery_sessions() -> dict:
    return get_runtime_service().list_discovery_sessions()


# Jobs


@app.get("/api/jobs")
def list_jobs(user_id: str, status: str | None = None) -> dict:
    return get_runtime_service().list_jobs(user_id=user_id, status=status)


@app.get("/api/jobs/stats")
def job_stats(user_id: str) -> dict:
    return get_runtime_service().job_stats(user_id=user_id)


@app.get("/api/jobs/approved")
def approved_jobs(user_id: str) -> dict:
    return get_runtime_service().list_approved_jobs(user_id=user_id)


@app.get("/api/jobs/high-match")
def high_match_jobs(user_id: str, min_score: int | None = None) -> dict:
    safe_score = max(0, min(100, int(min_score))) if min_score is not None else None
    return get_runtime_service().high_match_jobs(user_id=user_id, min_score=safe_score)


@app.post("/api/jobs/status")
def batch_update_job_statuses(req: BatchJobStatusRequest):
    if not req.updates:
        return JSONResponse(status_code=400, content={"ok": False, "error": "No status updates provided"})
    return get_runtime_service().batch_update_job_statuses(updates=[item.model_dump() for item in req.updates])


@app.get("/api/jobs/{job_record_id}")
def get_job(job_record_id: str):
    return _soft(get_runtime_service().get_job(job_record_id=job_record_id))


@app.delete("/api/jobs/{job_record_id}")
def remove_job(job_record_id: str):
    return _soft(get_runtime_service().remove_job(job_record_id=job_record_id))


@app.post("/api/jobs/{job_record_id}/status")
def update_job_status(job_record_id: str, req: JobStatusRequest):
    return _soft(
        get_runtime_service().update_job_status(
            job_record_id=job_record_id,
            status=req.status,
            error=req.error,
        )
    )


@app.put("/api/jobs/{job_record_id}/cover-letter")
def update_cover_letter(job_record_id: str, req: CoverLetterRequest):
    return _soft(get_runtime_service().update_cover_letter(job_record_id=job_record_id, cover_letter=req.cover_letter))


@app.post("/api/jobs/{job_record_id}/applying")
def claim_job_for_apply(job_record_id: str):
    return _soft(get_runtime_service().claim_job_for_apply(job_record_id=job_record_id))


@app.post("/api/jobs/approve")
def approve_jobs(req: JobIdsRequest):
    return _soft(get_runtime_service().approve_jobs(job_record_ids=req.job_record_ids))


@app.post("/api/jobs/reject")
def reject_jobs(req: JobIdsRequest):
    return _soft(get_runtime_service().reject_jobs(job_record_ids=req.job_record_ids))


@app.post("/api/jobs/{job_record_id}/retry")
def retry_job(job_record_id: str):
    return _soft(get_runtime_service().retry_job(job_record_id=job_record_id))


# Queue


@app.post("/api/queue")
def queue_jobs(req: QueueRequest):
    if not req.job_record_ids:
        return JSONResponse(status_code=400, content={"ok": False, "error": "No job record ids provided"})
    return _soft(get_runtime_service().queue_jobs(user_id=req.user_id, job_record_ids=req.job_record_ids))


@app.get("/api/queue")
def list_queue(user_id: str, status: str | None = None) -> dict:
    return get_runtime_service().list_queue(user_id=user_id, status=status)


@app.get("/api/queue/stats")
def queue_stats(user_id: str) -> dict:
    return get_runtime_service().queue_stats(user_id=user_id)


@app.get("/api/queue/current")
def current_queue_entry(user_id: str) -> dict:
    return get_runtime_service().current_queue_entry(user_id=user_id)


@app.delete("/api/queue/{queue_id}")
def cancel_queue_entry(queue_id: str):
    return _soft(get_runtime_service().cancel_queue_entry(queue_id=queue_id))


@app.get("/api/auto-apply/status")
def auto_apply_status(user_id: str) -> dict:
    return get_runtime_service().auto_apply_status(user_id=user_id)


# Executor callbacks (guarded by the cron secret when one is configured)


@app.post("/api/queue/claim")
def claim_queue_entry(authorization: str | None = Header(default=None)):
    if not _authorized(authorization):
        return _unauthorized()
    return get_runtime_service().claim_queue_entry()


@app.post("/api/queue/{queue_id}/start")
def start_queue_entry(
    queue_id: str,
    req: QueueStartRequest | None = None,
    authorization: str | None = Header(default=None),
):
    if not _authorized(authorization):
        return _unauthorized()
    session_id = req.browser_session_id if req is not None else None
    return _soft(get_runtime_service().start_queue_entry(queue_id=queue_id, browser_session_id=session_id))


@app.post("/api/queue/{queue_id}/session")
def attach_queue_session(queue_id: str, req: QueueSessionRequest, authorization: str | None = Header(default=None)):
    if not _authorized(authorization):
        return _unauthorized()
    return _soft(get_runtime_service().attach_queue_session(queue_id=queue_id, browser_session_id=req.browser_session_id))


@app.post("/api/queue/{queue_id}/complete")
def complete_queue_entry(queue_id: str, req: QueueCompleteRequest, authorization: str | None = Header(default=None)):
    if not _authorized(authorization):
        return _unauthorized()
    result = req.model_dump(exclude_none=True)
    return _soft(get_runtime_service().complete_queue_entry(queue_id=queue_id, result=result))


@app.post("/api/queue/{queue_id}/fail")
def fail_queue_entry(queue_id: str, req: QueueFailRequest, authorization: str | None = Header(default=None)):
    if not _authorized(authorization):
        return _unauthorized()
    return _soft(get_runtime_service().fail_queue_entry(queue_id=queue_id, error=req.error))


@app.post("/api/queue/{queue_id}/skip")
def skip_queue_entry(queue_id: str, req: QueueSkipRequest, authorization: str | None = Header(default=None)):
    if not _authorized(authorization):
        return _unauthorized()
    return _soft(get_runtime_service().skip_queue_entry(queue_id=queue_id, reason=req.reason))


# Applications


@app.get("/api/applications")
def list_applications(user_id: str, status: str | None = None, limit: int | None = None) -> dict:
    safe_limit = max(1, min(500, int(limit))) if limit is not None else None
    return get_runtime_service().list_applications(user_id=user_id, status=status, limit=safe_limit)


@app.get("/api/applications/stats")
def application_stats(user_id: str) -> dict:
    return get_runtime_service().application_stats(user_id=user_id)


@app.post("/api/applications")
def record_application(req: ApplicationRequest):
    return _soft(get_runtime_service().record_application(**req.model_dump()))


@app.post("/api/applications/{application_id}/status")
def update_application_status(application_id: str, req: ApplicationStatusRequest):
    return _soft(
        get_runtime_service().update_application_status(
            application_id=application_id,
            status=req.status,
            notes=req.notes,
        )
    )


# Profiles


@app.get("/api/profiles/{user_id}")
def get_profile(user_id: str):
    return _soft(get_runtime_service().get_profile(user_id=user_id))


@app.put("/api/profiles/{user_id}")
def upsert_profile(user_id: str, req: ProfileRequest):
    return _soft(get_runtime_service().upsert_profile(user_id=user_id, fields=req.fields))


# Apply service


@app.get("/api/service/status")
def service_status() -> dict:
    return get_runtime_service().service_status()


@app.post("/api/service/start")
def service_start() -> dict:
    return get_runtime_service().service_start()


@app.post("/api/service/stop")
def service_stop() -> dict:
    return get_runtime_service().service_stop()


@app.post("/api/cron/apply")
def cron_apply(authorization: str | None = Header(default=None)):
    if not _authorized(authorization):
        return _unauthorized()
    out = get_runtime_service().process_queue_once()
    if not out.get("ok") and not out.get("processed"):
        return JSONResponse(status_code=503, content=out)
    return out
