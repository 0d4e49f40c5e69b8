"""Durable retry-capable queue of "apply to this job" work items."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from .applications import insert_application
from .config_loader import get_application_queue_config
from .db import QUEUE_STATUSES, QUEUE_TERMINAL_STATUSES, Database, dumps_json, iso, loads_json, resolve_now
from .job_store import fetch_job
from .log import get_logger
from .user_profiles import fetch_profile

log = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_MINUTES = (1, 5, 15)
DEFAULT_STUCK_AFTER_SEC = 15 * 60
DEFAULT_CLEANUP_AFTER_DAYS = 7
DEFAULT_POLL_INTERVAL_SEC = 60
DEFAULT_CLAIM_RETRIES = 5


@dataclass(slots=True)
class QueueSettings:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_minutes: tuple[int, ...] = DEFAULT_BACKOFF_MINUTES
    stuck_after_sec: int = DEFAULT_STUCK_AFTER_SEC
    cleanup_after_days: int = DEFAULT_CLEANUP_AFTER_DAYS
    poll_interval_sec: int = DEFAULT_POLL_INTERVAL_SEC
    claim_retries: int = DEFAULT_CLAIM_RETRIES


def _positive_int(value: Any, default: int) -> int:
    return int(value) if isinstance(value, int) and not isinstance(value, bool) and value > 0 else default


def get_queue_settings(config: dict[str, Any] | None = None) -> QueueSettings:
    queue = get_application_queue_config(config)
    backoff = queue.get("backoff_minutes")
    if isinstance(backoff, list) and backoff and all(isinstance(v, int) and v > 0 for v in backoff):
        backoff_minutes = tuple(int(v) for v in backoff)
    else:
        backoff_minutes = DEFAULT_BACKOFF_MINUTES
    return QueueSettings(
        max_attempts=_positive_int(queue.get("max_attempts"), DEFAULT_MAX_ATTEMPTS),
        backoff_minutes=backoff_minutes,
        stuck_after_sec=_positive_int(queue.get("stuck_after_sec"), DEFAULT_STUCK_AFTER_SEC),
        cleanup_after_days=_positive_int(queue.get("cleanup_after_days"), DEFAULT_CLEANUP_AFTER_DAYS),
        poll_interval_sec=_positive_int(queue.get("poll_interval_sec"), DEFAULT_POLL_INTERVAL_SEC),
        claim_retries=_positive_int(queue.get("claim_retries"), DEFAULT_CLAIM_RETRIES),
    )


def compute_backoff_ms(attempts: int, backoff_minutes: tuple[int, ...] = DEFAULT_BACKOFF_MINUTES) -> int:
    """Delay before retry number `attempts`; attempts past the table reuse its last step."""
    index = max(0, min(int(attempts) - 1, len(backoff_minutes) - 1))
    return backoff_minutes[index] * 60 * 1000


def entry_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "queue_id": row["queue_id"],
        "user_id": row["user_id"],
        "job_record_id": row["job_record_id"],
        "status": row["status"],
        "attempts": int(row["attempts"]),
        "max_attempts": int(row["max_attempts"]),
        "last_attempt_at": row["last_attempt_at"],
        "next_attempt_after": row["next_attempt_after"],
        "browser_session_id": row["browser_session_id"],
        "result": loads_json(row["result_json"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "completed_at": row["completed_at"],
    }


def _fetch_entry(conn: sqlite3.Connection, queue_id: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM application_queue WHERE queue_id = ?;", (queue_id,)).fetchone()
    return entry_row_to_dict(row) if row is not None else None


class ApplicationQueue:
    """Queue entries kept in sync with their parent job record.

    Every mutation runs in a single write transaction, so the entry and the
    job record never disagree after a call returns.
    """

    def __init__(self, database: Database | None = None, *, settings: QueueSettings | None = None) -> None:
        self._db = database or Database()
        self._settings = settings or get_queue_settings()

    @property
    def settings(self) -> QueueSettings:
        return self._settings

    def queue_for_application(
        self,
        *,
        user_id: str,
        job_record_ids: list[str],
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now_iso = iso(resolve_now(now))
        queued_ids: list[str] = []
        skipped_ids: list[str] = []

        with self._db.connect(write=True) as conn:
            for job_record_id in job_record_ids:
                job = conn.execute(
                    "SELECT 1 FROM jobs WHERE job_record_id = ? AND user_id = ?;",
                    (job_record_id, user_id),
                ).fetchone()
                if job is None:
                    log.warning("Skipping unknown job %s for user %s", job_record_id, user_id)
                    skipped_ids.append(job_record_id)
                    continue

                existing = conn.execute(
                    """
                    SELECT queue_id, status FROM application_queue
                    WHERE user_id = ? AND job_record_id = ?
                    ORDER BY created_at ASC
                    LIMIT 1;
                    """,
                    (user_id, job_record_id),
                ).fetchone()

                if existing is not None and existing["status"] != "failed":
                    skipped_ids.append(job_record_id)
                    continue

                if existing is not None:
                    queue_id = str(existing["queue_id"])
                    conn.execute(
                        """
                        UPDATE application_queue
                        SET status = 'pending',
                            attempts = 0,
                            last_attempt_at = NULL,
                            next_attempt_after = NULL,
                            browser_session_id = NULL,
                            result_json = NULL,
                            completed_at = NULL,
                            updated_at = ?
                        WHERE queue_id = ?;
                        """,
                        (now_iso, queue_id),
                    )
                    log.info("Recycled failed queue entry %s for job %s", queue_id, job_record_id)
                else:
                    queue_id = f"aq_{uuid4().hex}"
                    conn.execute(
                        """
                        INSERT INTO application_queue(
                            queue_id, user_id, job_record_id, status, attempts, max_attempts,
                            created_at, updated_at
                        )
                        VALUES (?, ?, ?, 'pending', 0, ?, ?, ?);
                        """,
                        (queue_id, user_id, job_record_id, self._settings.max_attempts, now_iso, now_iso),
                    )
                    log.info("Queued job %s as %s", job_record_id, queue_id)

                conn.execute(
                    "UPDATE jobs SET status = 'applying', updated_at = ? WHERE job_record_id = ?;",
                    (now_iso, job_record_id),
                )
                queued_ids.append(queue_id)

        return {
            "ok": True,
            "queued_count": len(queued_ids),
            "queued_ids": queued_ids,
            "skipped_ids": skipped_ids,
        }

    def pick_next(self, *, now: datetime | None = None, include_waiting: bool = True) -> dict[str, Any] | None:
        """Select the next pending entry, or None when there is no pending work.

        Entries with no backoff deadline, or one that has passed, come first.
        Otherwise the oldest pending entry is returned, unless
        `include_waiting` is False, in which case entries still inside
        their backoff window are never returned.
        """
        now_iso = iso(resolve_now(now))
        with self._db.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM application_queue
                WHERE status = 'pending'
                  AND (next_attempt_after IS NULL OR next_attempt_after <= ?)
                ORDER BY next_attempt_after ASC, created_at ASC
                LIMIT 1;
                """,
                (now_iso,),
            ).fetchone()
            if row is None and include_waiting:
                row = conn.execute(
                    """
                    SELECT * FROM application_queue
                    WHERE status = 'pending'
                    ORDER BY created_at ASC
                    LIMIT 1;
                    """
                ).fetchone()
            if row is None:
                return None
            entry = entry_row_to_dict(row)
            return {
                "queue_entry": entry,
                "job": fetch_job(conn, entry["job_record_id"]),
                "profile": fetch_profile(conn, entry["user_id"]),
            }

    def mark_in_progress(
        self,
        *,
        queue_id: str,
        browser_session_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Claim a pending entry. Only one caller can win the claim for a given entry."""
        now_iso = iso(resolve_now(now))
        with self._db.connect(write=True) as conn:
            cursor = conn.execute(
                """
                UPDATE application_queue
                SET status = 'in_progress', browser_session_id = ?, last_attempt_at = ?, updated_at = ?
                WHERE queue_id = ? AND status = 'pending';
                """,
                (browser_session_id, now_iso, now_iso, queue_id),
            )
            if not cursor.rowcount:
                current = conn.execute(
                    "SELECT status FROM application_queue WHERE queue_id = ?;",
                    (queue_id,),
                ).fetchone()
                if current is None:
                    return {"ok": False, "error": "Queue entry not found"}
                return {"ok": False, "error": f"Queue entry is not pending (status={current['status']})"}

            entry = _fetch_entry(conn, queue_id)
            conn.execute(
                "UPDATE jobs SET status = 'applying', updated_at = ? WHERE job_record_id = ?;",
                (now_iso, entry["job_record_id"]),
            )
        log.info("Claimed queue entry %s", queue_id)
        return {"ok": True, "queue_entry": entry}

    def attach_browser_session(
        self,
        *,
        queue_id: str,
        browser_session_id: str,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now_iso = iso(resolve_now(now))
        with self._db.connect(write=True) as conn:
            cursor = conn.execute(
                """
                UPDATE application_queue SET browser_session_id = ?, updated_at = ?
                WHERE queue_id = ? AND status = 'in_progress';
                """,
                (browser_session_id, now_iso, queue_id),
            )
            if not cursor.rowcount:
                return {"ok": False, "error": "Queue entry not found or not in progress"}
        return {"ok": True, "queue_id": queue_id}

    def claim_next(self, *, now: datetime | None = None, max_tries: int | None = None) -> dict[str, Any] | None:
        """Pick and claim in a loop until a claim succeeds or nothing is eligible."""
        tries = max_tries if isinstance(max_tries, int) and max_tries > 0 else self._settings.claim_retries
        for _ in range(tries):
            picked = self.pick_next(now=now, include_waiting=False)
            if picked is None:
                return None
            claim = self.mark_in_progress(queue_id=picked["queue_entry"]["queue_id"], now=now)
            if claim["ok"]:
                picked["queue_entry"] = claim["queue_entry"]
                return picked
            log.debug("Lost claim on %s: %s", picked["queue_entry"]["queue_id"], claim.get("error"))
        return None

    def mark_completed(
        self,
        *,
        queue_id: str,
        result: dict[str, Any],
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now_iso = iso(resolve_now(now))
        with self._db.connect(write=True) as conn:
            entry = _fetch_entry(conn, queue_id)
            if entry is None:
                return {"ok": False, "error": "Queue entry not found"}

            conn.execute(
                """
                UPDATE application_queue
                SET status = 'completed', result_json = ?, completed_at = ?, updated_at = ?
                WHERE queue_id = ?;
                """,
                (dumps_json(result), now_iso, now_iso, queue_id),
            )
            conn.execute(
                "UPDATE jobs SET status = 'applied', applied_at = ?, updated_at = ? WHERE job_record_id = ?;",
                (now_iso, now_iso, entry["job_record_id"]),
            )
            job = fetch_job(conn, entry["job_record_id"])
            application_id = None
            if job is not None:
                application_id = insert_application(
                    conn,
                    user_id=entry["user_id"],
                    job_record_id=job["job_record_id"],
                    job_id=job["job_id"],
                    job_title=job["job_title"],
                    company=job["company"],
                    location=job["location"],
                    apply_link=job["apply_link"],
                    source=job["source"],
                    application_method="easy_apply" if result.get("method") == "easy_apply" else "auto",
                    cover_letter_used=job["cover_letter"],
                    resume_version_used="optimized",
                    match_score=job["match_score"],
                    now_iso=now_iso,
                )
        log.info("Queue entry %s completed (application %s)", queue_id, application_id)
        return {"ok": True, "application_id": application_id}

    def _fail_entry(self, conn: sqlite3.Connection, entry: dict[str, Any], error: str, now: datetime) -> dict[str, Any]:
        now_iso = iso(now)
        attempts = entry["attempts"] + 1
        will_retry = attempts < entry["max_attempts"]
        next_attempt_at = None
        if will_retry:
            backoff_ms = compute_backoff_ms(attempts, self._settings.backoff_minutes)
            next_attempt_at = iso(now + timedelta(milliseconds=backoff_ms))

        conn.execute(
            """
            UPDATE application_queue
            SET status = ?,
                attempts = ?,
                last_attempt_at = ?,
                next_attempt_after = ?,
                result_json = ?,
                completed_at = ?,
                updated_at = ?
            WHERE queue_id = ?;
            """,
            (
                "pending" if will_retry else "failed",
                attempts,
                now_iso,
                next_attempt_at,
                dumps_json({"success": False, "error": error, "duration_ms": 0}),
                None if will_retry else now_iso,
                now_iso,
                entry["queue_id"],
            ),
        )
        conn.execute(
            """
            UPDATE jobs
            SET status = ?,
                last_attempt_error = ?,
                application_attempts = application_attempts + 1,
                updated_at = ?
            WHERE job_record_id = ?;
            """,
            ("applying" if will_retry else "failed", error, now_iso, entry["job_record_id"]),
        )
        if will_retry:
            log.warning("Queue entry %s failed attempt %d, retry after %s: %s", entry["queue_id"], attempts, next_attempt_at, error)
        else:
            log.error("Queue entry %s exhausted %d attempts: %s", entry["queue_id"], attempts, error)
        return {"ok": True, "will_retry": will_retry, "next_attempt_at": next_attempt_at, "attempts": attempts}

    def mark_failed(self, *, queue_id: str, error: str, now: datetime | None = None) -> dict[str, Any]:
        now_dt = resolve_now(now)
        with self._db.connect(write=True) as conn:
            entry = _fetch_entry(conn, queue_id)
            if entry is None:
                return {"ok": False, "error": "Queue entry not found"}
            return self._fail_entry(conn, entry, error, now_dt)

    def mark_skipped(self, *, queue_id: str, reason: str, now: datetime | None = None) -> dict[str, Any]:
        now_iso = iso(resolve_now(now))
        with self._db.connect(write=True) as conn:
            entry = _fetch_entry(conn, queue_id)
            if entry is None:
                return {"ok": False, "error": "Queue entry not found"}
            conn.execute(
                """
                UPDATE application_queue
                SET status = 'skipped', result_json = ?, completed_at = ?, updated_at = ?
                WHERE queue_id = ?;
                """,
                (dumps_json({"success": False, "error": reason}), now_iso, now_iso, queue_id),
            )
            # Back to discovered so the user can reconsider the job.
            conn.execute(
                """
                UPDATE jobs SET status = 'discovered', last_attempt_error = ?, updated_at = ?
                WHERE job_record_id = ?;
                """,
                (reason, now_iso, entry["job_record_id"]),
            )
        log.info("Queue entry %s skipped: %s", queue_id, reason)
        return {"ok": True}

    def cancel(self, *, queue_id: str, now: datetime | None = None) -> dict[str, Any]:
        now_iso = iso(resolve_now(now))
        with self._db.connect(write=True) as conn:
            entry = _fetch_entry(conn, queue_id)
            if entry is None:
                return {"ok": False, "error": "Queue entry not found"}
            if entry["status"] != "pending":
                return {"ok": False, "error": "Can only cancel pending applications"}
            conn.execute("DELETE FROM application_queue WHERE queue_id = ?;", (queue_id,))
            conn.execute(
                "UPDATE jobs SET status = 'approved', updated_at = ? WHERE job_record_id = ?;",
                (now_iso, entry["job_record_id"]),
            )
        log.info("Cancelled queue entry %s", queue_id)
        return {"ok": True}

    def sweep_older_than(self, *, days: int | None = None, now: datetime | None = None) -> dict[str, Any]:
        """Delete terminal entries whose completed_at predates the cutoff."""
        keep_days = days if isinstance(days, int) and days >= 0 else self._settings.cleanup_after_days
        cutoff = iso(resolve_now(now) - timedelta(days=keep_days))
        placeholders = ", ".join("?" for _ in QUEUE_TERMINAL_STATUSES)
        with self._db.connect(write=True) as conn:
            cursor = conn.execute(
                f"""
                DELETE FROM application_queue
                WHERE status IN ({placeholders})
                  AND completed_at IS NOT NULL
                  AND completed_at < ?;
                """,
                (*QUEUE_TERMINAL_STATUSES, cutoff),
            )
            deleted = int(cursor.rowcount or 0)
        if deleted:
            log.info("Swept %d finished queue entries older than %d days", deleted, keep_days)
        return {"ok": True, "deleted_count": deleted}

    def recover_stuck(self, *, stuck_after_sec: int | None = None, now: datetime | None = None) -> dict[str, Any]:
        """Fail in_progress entries whose executor stopped reporting back."""
        threshold = stuck_after_sec if isinstance(stuck_after_sec, int) and stuck_after_sec > 0 else self._settings.stuck_after_sec
        now_dt = resolve_now(now)
        cutoff = iso(now_dt - timedelta(seconds=threshold))
        recovered: list[dict[str, Any]] = []
        with self._db.connect(write=True) as conn:
            rows = conn.execute(
                """
                SELECT * FROM application_queue
                WHERE status = 'in_progress' AND last_attempt_at IS NOT NULL AND last_attempt_at < ?
                ORDER BY last_attempt_at ASC;
                """,
                (cutoff,),
            ).fetchall()
            for row in rows:
                entry = entry_row_to_dict(row)
                out = self._fail_entry(
                    conn,
                    entry,
                    f"Attempt timed out: no result reported within {threshold}s",
                    now_dt,
                )
                recovered.append({"queue_id": entry["queue_id"], "will_retry": out["will_retry"]})
        return {"ok": True, "recovered_count": len(recovered), "recovered": recovered}

    def get_entry(self, queue_id: str) -> dict[str, Any] | None:
        with self._db.connect() as conn:
            return _fetch_entry(conn, queue_id)

    def queue_stats(self, *, user_id: str) -> dict[str, int]:
        stats = {"total": 0, **{status: 0 for status in QUEUE_STATUSES}}
        with self._db.connect() as conn:
            rows = conn.execute("SELECT status FROM application_queue WHERE user_id = ?;", (user_id,)).fetchall()
        for row in rows:
            stats["total"] += 1
            stats[str(row["status"])] += 1
        return stats

    def list_user_queue(self, *, user_id: str, status: str | None = None) -> list[dict[str, Any]]:
        sql = """
            SELECT q.*, j.job_title AS j_title, j.company AS j_company,
                   j.apply_link AS j_apply_link, j.match_score AS j_match_score
            FROM application_queue q
            LEFT JOIN jobs j ON j.job_record_id = q.job_record_id
            WHERE q.user_id = ?
        """
        params: list[Any] = [user_id]
        if status:
            sql += " AND q.status = ?"
            params.append(status)
        sql += " ORDER BY q.created_at DESC, q.queue_id DESC;"
        with self._db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()

        out: list[dict[str, Any]] = []
        for row in rows:
            item = entry_row_to_dict(row)
            item["job"] = (
                {
                    "title": row["j_title"],
                    "company": row["j_company"],
                    "apply_link": row["j_apply_link"],
                    "match_score": row["j_match_score"],
                }
                if row["j_title"] is not None
                else None
            )
            out.append(item)
        return out

    def currently_processing(self, *, user_id: str) -> dict[str, Any] | None:
        items = self.list_user_queue(user_id=user_id, status="in_progress")
        return items[0] if items else None
