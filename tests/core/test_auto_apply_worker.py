from datetime import timedelta

import pytest

from src.autoapply.core.application_queue import ApplicationQueue, QueueSettings
from src.autoapply.core.applications import ApplicationHistory
from src.autoapply.core.auto_apply_worker import (
    REDIRECT_SKIP_REASON,
    ApplicationExecutor,
    AutoApplyWorker,
    detect_platform,
    load_executor,
)
from src.autoapply.core.job_store import JobStore
from src.autoapply.core.job_types import ApplyResult
from src.autoapply.core.user_profiles import UserProfileStore

FULL_PROFILE = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "email": "ada@example.com",
    "phone": "555-0100",
    "resume_text": "Analytical engine programmer",
}


class _FakeExecutor(ApplicationExecutor):
    def __init__(self, result=None, *, fail_session: bool = False, raise_on_apply: bool = False) -> None:
        self.result = result or ApplyResult(success=True, method="easy_apply", duration_ms=900)
        self.fail_session = fail_session
        self.raise_on_apply = raise_on_apply
        self.applied: list[dict] = []
        self.closed: list[str] = []

    def create_session(self) -> str:
        if self.fail_session:
            raise RuntimeError("browser pool exhausted")
        return "sess_1"

    def apply(self, session_id, job, profile):
        if self.raise_on_apply:
            raise RuntimeError("page crashed")
        self.applied.append({"session_id": session_id, "job": job, "profile": profile})
        return self.result

    def close_session(self, session_id) -> None:
        self.closed.append(session_id)


@pytest.fixture()
def queue(db) -> ApplicationQueue:
    return ApplicationQueue(db, settings=QueueSettings())


def _setup(db, queue, make_job, now, *, profile=FULL_PROFILE) -> tuple[str, str]:
    if profile is not None:
        UserProfileStore(db).upsert_profile(user_id="user_1", fields=profile, now=now)
    job_id = make_job()
    out = queue.queue_for_application(user_id="user_1", job_record_ids=[job_id], now=now)
    return job_id, out["queued_ids"][0]


def test_detect_platform():
    assert detect_platform("https://www.linkedin.com/jobs/view/1") == "linkedin"
    assert detect_platform("https://boards.greenhouse.io/acme/jobs/1") == "greenhouse"
    assert detect_platform("https://jobs.lever.co/acme/1") == "lever"
    assert detect_platform("https://www.indeed.com/viewjob?jk=1") == "indeed"
    assert detect_platform("https://careers.acme.example") == "other"


def test_load_executor_validates_path():
    with pytest.raises(ValueError):
        load_executor("no_colon_here")
    with pytest.raises(ValueError):
        load_executor("src.autoapply.core.job_types:ApplyResult")
    with pytest.raises(ImportError):
        load_executor("definitely_missing_module_xyz:Executor")


def test_process_next_with_empty_queue(queue, now):
    out = AutoApplyWorker(queue, _FakeExecutor()).process_next(now=now)
    assert out == {"ok": True, "processed": 0, "message": "No pending jobs"}


def test_claimed_entry_without_job_record_is_failed(db, queue, make_job, now, monkeypatch):
    _, queue_id = _setup(db, queue, make_job, now)
    claimed = queue.claim_next(now=now)
    claimed["job"] = None
    monkeypatch.setattr(queue, "claim_next", lambda **_kwargs: claimed)
    executor = _FakeExecutor()

    out = AutoApplyWorker(queue, executor).process_next(now=now)

    assert out == {"ok": False, "processed": 1, "queue_id": queue_id, "error": "Job record not found"}
    assert executor.applied == []
    entry = queue.get_entry(queue_id)
    assert entry["status"] == "pending"
    assert entry["attempts"] == 1
    assert entry["result"]["error"] == "Job record not found"


def test_successful_application(db, queue, make_job, now):
    job_id, queue_id = _setup(db, queue, make_job, now)
    executor = _FakeExecutor()

    out = AutoApplyWorker(queue, executor).process_next(now=now)

    assert out["ok"] is True
    assert out["processed"] == 1
    assert out["method"] == "easy_apply"
    assert executor.applied[0]["job"]["platform"] == "greenhouse"
    assert executor.applied[0]["profile"]["first_name"] == "Ada"
    assert executor.closed == ["sess_1"]
    entry = queue.get_entry(queue_id)
    assert entry["status"] == "completed"
    assert entry["browser_session_id"] == "sess_1"
    assert JobStore(db).get_job(job_id)["status"] == "applied"
    assert ApplicationHistory(db).list_applications(user_id="user_1")[0]["application_method"] == "easy_apply"


def test_missing_profile_fields_fail_the_attempt(db, queue, make_job, now):
    _, queue_id = _setup(db, queue, make_job, now, profile={"first_name": "Ada", "email": "ada@example.com"})
    executor = _FakeExecutor()

    out = AutoApplyWorker(queue, executor).process_next(now=now)

    assert out["ok"] is False
    assert out["missing_fields"] == ["lastName", "phone", "resumeText"]
    assert executor.applied == []
    assert executor.closed == []
    entry = queue.get_entry(queue_id)
    assert entry["status"] == "pending"
    assert entry["attempts"] == 1
    assert entry["result"]["error"] == "Missing required fields: lastName, phone, resumeText"


def test_session_failure_marks_failed(db, queue, make_job, now):
    job_id, queue_id = _setup(db, queue, make_job, now)
    out = AutoApplyWorker(queue, _FakeExecutor(fail_session=True)).process_next(now=now)

    assert out["error"] == "Failed to create browser session"
    assert queue.get_entry(queue_id)["attempts"] == 1
    assert JobStore(db).get_job(job_id)["last_attempt_error"] == "Browser session failed: browser pool exhausted"


def test_redirect_result_skips_entry(db, queue, make_job, now):
    job_id, queue_id = _setup(db, queue, make_job, now)
    executor = _FakeExecutor(ApplyResult(success=False, method="redirect", error="external site"))

    out = AutoApplyWorker(queue, executor).process_next(now=now)

    assert out["ok"] is False
    assert queue.get_entry(queue_id)["status"] == "skipped"
    job = JobStore(db).get_job(job_id)
    assert job["status"] == "discovered"
    assert job["last_attempt_error"] == REDIRECT_SKIP_REASON
    assert executor.closed == ["sess_1"]


def test_apply_exception_counts_as_failed_attempt(db, queue, make_job, now):
    _, queue_id = _setup(db, queue, make_job, now)
    executor = _FakeExecutor(raise_on_apply=True)

    out = AutoApplyWorker(queue, executor).process_next(now=now)

    assert out["error"] == "Application error: page crashed"
    assert executor.closed == ["sess_1"]
    entry = queue.get_entry(queue_id)
    assert entry["status"] == "pending"
    assert entry["next_attempt_after"] is not None


def test_worker_respects_backoff_window(db, queue, make_job, now):
    _, queue_id = _setup(db, queue, make_job, now)
    worker = AutoApplyWorker(queue, _FakeExecutor(ApplyResult(success=False, method="form", error="captcha")))
    worker.process_next(now=now)

    assert worker.process_next(now=now + timedelta(seconds=30))["processed"] == 0
    out = worker.process_next(now=now + timedelta(minutes=2))
    assert out["processed"] == 1
    assert queue.get_entry(queue_id)["attempts"] == 2
