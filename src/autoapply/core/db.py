"""SQLite connection handling and schema for the job, queue, and history tables."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

from .config_loader import get_database_config, get_database_path

DEFAULT_BUSY_TIMEOUT_MS = 5000

JOB_STATUSES = ("discovered", "saved", "pending", "approved", "rejected", "applying", "applied", "failed")
QUEUE_STATUSES = ("pending", "in_progress", "completed", "failed", "skipped")
QUEUE_TERMINAL_STATUSES = ("completed", "failed", "skipped")
APPLICATION_STATUSES = (
    "applied",
    "viewed",
    "screening",
    "interviewing",
    "offer",
    "rejected",
    "withdrawn",
    "no_response",
)
APPLICATION_METHODS = ("auto", "manual", "easy_apply")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def iso(dt: datetime) -> str:
    # Fixed-width timestamps keep lexicographic and chronological order identical.
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(UTC)
    except ValueError:
        return None


def resolve_now(now: datetime | None) -> datetime:
    return now.astimezone(UTC) if isinstance(now, datetime) else utc_now()


def dumps_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def as_list(value: Any) -> list[Any]:
    """A lone string is one item, not a sequence of characters."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return list(value)


def loads_json(value: str | None, default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _in_list(values: tuple[str, ...]) -> str:
    return ", ".join(f"'{v}'" for v in values)


SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS jobs (
    job_record_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    job_id TEXT NOT NULL,
    job_title TEXT NOT NULL,
    company TEXT NOT NULL,
    location TEXT,
    salary TEXT,
    job_type TEXT,
    remote INTEGER CHECK (remote IS NULL OR remote IN (0, 1)),
    description TEXT,
    requirements_json TEXT,
    apply_link TEXT NOT NULL DEFAULT '',
    source TEXT NOT NULL DEFAULT 'unknown',
    match_score INTEGER NOT NULL DEFAULT 0 CHECK (match_score BETWEEN 0 AND 100),
    match_analysis TEXT,
    matched_skills_json TEXT,
    missing_skills_json TEXT,
    cover_letter TEXT,
    status TEXT NOT NULL DEFAULT 'discovered' CHECK (status IN ({_in_list(JOB_STATUSES)})),
    application_attempts INTEGER NOT NULL DEFAULT 0,
    last_attempt_error TEXT,
    applied_at TEXT,
    discovered_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS application_queue (
    queue_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    job_record_id TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ({_in_list(QUEUE_STATUSES)})),
    attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
    max_attempts INTEGER NOT NULL DEFAULT 3 CHECK (max_attempts >= 1),
    last_attempt_at TEXT,
    next_attempt_after TEXT,
    browser_session_id TEXT,
    result_json TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    FOREIGN KEY(job_record_id) REFERENCES jobs(job_record_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS applications (
    application_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    job_record_id TEXT,
    job_id TEXT NOT NULL,
    job_title TEXT NOT NULL,
    company TEXT NOT NULL,
    location TEXT,
    apply_link TEXT NOT NULL DEFAULT '',
    source TEXT NOT NULL DEFAULT 'unknown',
    applied_at TEXT NOT NULL,
    application_method TEXT NOT NULL CHECK (application_method IN ({_in_list(APPLICATION_METHODS)})),
    cover_letter_used TEXT,
    resume_version_used TEXT,
    status TEXT NOT NULL DEFAULT 'applied' CHECK (status IN ({_in_list(APPLICATION_STATUSES)})),
    last_status_update TEXT,
    notes TEXT,
    interview_dates_json TEXT,
    match_score INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(job_record_id) REFERENCES jobs(job_record_id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS user_profiles (
    user_id TEXT PRIMARY KEY,
    first_name TEXT,
    last_name TEXT,
    email TEXT,
    phone TEXT,
    city TEXT,
    state TEXT,
    country TEXT,
    zip_code TEXT,
    linkedin_url TEXT,
    portfolio_url TEXT,
    github_url TEXT,
    authorized_to_work INTEGER NOT NULL DEFAULT 1,
    requires_sponsorship INTEGER NOT NULL DEFAULT 0,
    resume_text TEXT,
    skills_json TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_user ON jobs(user_id);
CREATE INDEX IF NOT EXISTS idx_jobs_user_status ON jobs(user_id, status);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_match_score ON jobs(match_score);
CREATE INDEX IF NOT EXISTS idx_jobs_user_external ON jobs(user_id, job_id);

CREATE INDEX IF NOT EXISTS idx_application_queue_user ON application_queue(user_id);
CREATE INDEX IF NOT EXISTS idx_application_queue_status ON application_queue(status);
CREATE INDEX IF NOT EXISTS idx_application_queue_user_status ON application_queue(user_id, status);
CREATE INDEX IF NOT EXISTS idx_application_queue_pending_oldest ON application_queue(status, created_at);
CREATE INDEX IF NOT EXISTS idx_application_queue_next_attempt ON application_queue(status, next_attempt_after);

CREATE INDEX IF NOT EXISTS idx_applications_user ON applications(user_id);
CREATE INDEX IF NOT EXISTS idx_applications_user_status ON applications(user_id, status);
CREATE INDEX IF NOT EXISTS idx_applications_company ON applications(company);
CREATE INDEX IF NOT EXISTS idx_applications_applied_at ON applications(applied_at);
"""


class Database:
    """Owns the SQLite file location and hands out short-lived connections."""

    def __init__(self, db_path: str | Path | None = None, *, busy_timeout_ms: int | None = None) -> None:
        if db_path is None:
            self._db_path = get_database_path()
        else:
            self._db_path = Path(db_path).resolve()
        if busy_timeout_ms is None:
            raw = get_database_config().get("busy_timeout_ms", DEFAULT_BUSY_TIMEOUT_MS)
            busy_timeout_ms = int(raw) if isinstance(raw, int) and raw > 0 else DEFAULT_BUSY_TIMEOUT_MS
        self._busy_timeout_ms = busy_timeout_ms if busy_timeout_ms > 0 else DEFAULT_BUSY_TIMEOUT_MS
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=self._busy_timeout_ms / 1000.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute(f"PRAGMA busy_timeout = {self._busy_timeout_ms:d};")
        return conn

    @contextmanager
    def connect(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection wrapped in one transaction.

        `write=True` takes the write lock up front (BEGIN IMMEDIATE) so a
        read-then-write sequence inside the block cannot interleave with
        another writer.
        """
        conn = self._open()
        try:
            if write:
                conn.execute("BEGIN IMMEDIATE;")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        conn = self._open()
        try:
            conn.execute("PRAGMA journal_mode = WAL;")
            conn.executescript(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()
