"""SQLite-backed store for a user's discovered job records and their status."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any
from uuid import uuid4

from .db import JOB_STATUSES, Database, as_list, dumps_json, iso, loads_json, resolve_now
from .log import get_logger

log = get_logger(__name__)

DEFAULT_HIGH_MATCH_SCORE = 70
_ATTEMPT_COUNTING_STATUSES = {"applying", "failed"}
_REFRESHABLE_FIELDS = {
    "match_score": "match_score",
    "match_analysis": "match_analysis",
    "matched_skills": "matched_skills_json",
    "missing_skills": "missing_skills_json",
    "cover_letter": "cover_letter",
}


def clamp_score(value: Any) -> int:
    try:
        score = round(float(value))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, int(score)))


def job_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "job_record_id": row["job_record_id"],
        "user_id": row["user_id"],
        "job_id": row["job_id"],
        "job_title": row["job_title"],
        "company": row["company"],
        "location": row["location"],
        "salary": row["salary"],
        "job_type": row["job_type"],
        "remote": bool(row["remote"]) if row["remote"] is not None else None,
        "description": row["description"],
        "requirements": loads_json(row["requirements_json"], []),
        "apply_link": row["apply_link"],
        "source": row["source"],
        "match_score": int(row["match_score"]),
        "match_analysis": row["match_analysis"],
        "matched_skills": loads_json(row["matched_skills_json"], []),
        "missing_skills": loads_json(row["missing_skills_json"], []),
        "cover_letter": row["cover_letter"],
        "status": row["status"],
        "application_attempts": int(row["application_attempts"] or 0),
        "last_attempt_error": row["last_attempt_error"],
        "applied_at": row["applied_at"],
        "discovered_at": row["discovered_at"],
        "updated_at": row["updated_at"],
    }


def fetch_job(conn: sqlite3.Connection, job_record_id: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM jobs WHERE job_record_id = ?;", (job_record_id,)).fetchone()
    return job_row_to_dict(row) if row is not None else None


class JobStore:
    """Single source of truth for a user's view of each job posting."""

    def __init__(self, database: Database | None = None) -> None:
        self._db = database or Database()

    @property
    def database(self) -> Database:
        return self._db

    def upsert_discovered(
        self,
        *,
        user_id: str,
        external_job_id: str,
        attributes: dict[str, Any],
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Insert a discovered job, or refresh its AI-derived fields if already tracked.

        Lookup happens before insert; there is no uniqueness constraint on
        `(user_id, job_id)`, so this is the only sanctioned creation path.
        """
        clean_user = str(user_id or "").strip()
        clean_job_id = str(external_job_id or "").strip()
        if not clean_user or not clean_job_id:
            return {"ok": False, "error": "user_id and external_job_id are required."}

        now_iso = iso(resolve_now(now))
        with self._db.connect(write=True) as conn:
            existing = conn.execute(
                "SELECT job_record_id FROM jobs WHERE user_id = ? AND job_id = ? LIMIT 1;",
                (clean_user, clean_job_id),
            ).fetchone()

            if existing is not None:
                record_id = str(existing["job_record_id"])
                sets = ["updated_at = ?"]
                params: list[Any] = [now_iso]
                for key, column in _REFRESHABLE_FIELDS.items():
                    if key not in attributes:
                        continue
                    value = attributes[key]
                    if key == "match_score":
                        value = clamp_score(value)
                    elif column.endswith("_json"):
                        value = dumps_json(as_list(value))
                    sets.append(f"{column} = ?")
                    params.append(value)
                params.append(record_id)
                conn.execute(f"UPDATE jobs SET {', '.join(sets)} WHERE job_record_id = ?;", params)
                log.debug("Refreshed job %s for user %s", record_id, clean_user)
                return {"ok": True, "job_record_id": record_id, "created": False}

            title = str(attributes.get("job_title") or "").strip()
            company = str(attributes.get("company") or "").strip()
            if not title or not company:
                return {"ok": False, "error": "job_title and company are required."}
            status = attributes.get("status") or "discovered"
            if status not in JOB_STATUSES:
                return {"ok": False, "error": f"invalid job status: {status}"}

            remote = attributes.get("remote")
            record_id = f"job_{uuid4().hex}"
            conn.execute(
                """
                INSERT INTO jobs(
                    job_record_id, user_id, job_id, job_title, company, location, salary, job_type,
                    remote, description, requirements_json, apply_link, source, match_score,
                    match_analysis, matched_skills_json, missing_skills_json, cover_letter,
                    status, application_attempts, discovered_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?);
                """,
                (
                    record_id,
                    clean_user,
                    clean_job_id,
                    title,
                    company,
                    attributes.get("location"),
                    attributes.get("salary"),
                    attributes.get("job_type"),
                    None if remote is None else int(bool(remote)),
                    attributes.get("description"),
                    dumps_json(as_list(attributes.get("requirements"))),
                    str(attributes.get("apply_link") or ""),
                    str(attributes.get("source") or "unknown"),
                    clamp_score(attributes.get("match_score", 0)),
                    attributes.get("match_analysis"),
                    dumps_json(as_list(attributes.get("matched_skills"))),
                    dumps_json(as_list(attributes.get("missing_skills"))),
                    attributes.get("cover_letter"),
                    status,
                    now_iso,
                    now_iso,
                ),
            )
        log.info("Discovered job %s (%s @ %s) for user %s", record_id, title, company, clean_user)
        return {"ok": True, "job_record_id": record_id, "created": True}

    def add_discovered_jobs(
        self,
        *,
        user_id: str,
        jobs: list[dict[str, Any]],
        now: datetime | None = None,
    ) -> dict[str, Any]:
        added = 0
        updated = 0
        errors: list[dict[str, Any]] = []
        for job in jobs:
            out = self.upsert_discovered(
                user_id=user_id,
                external_job_id=str(job.get("job_id") or ""),
                attributes=job,
                now=now,
            )
            if not out.get("ok"):
                errors.append({"job_id": job.get("job_id"), "error": out.get("error")})
            elif out.get("created"):
                added += 1
            else:
                updated += 1
        return {"ok": True, "added_count": added, "updated_count": updated, "errors": errors}

    def _batch_set_status(self, job_record_ids: list[str], status: str, now: datetime | None) -> dict[str, Any]:
        now_iso = iso(resolve_now(now))
        updated = 0
        with self._db.connect(write=True) as conn:
            for record_id in job_record_ids:
                cursor = conn.execute(
                    "UPDATE jobs SET status = ?, updated_at = ? WHERE job_record_id = ?;",
                    (status, now_iso, record_id),
                )
                updated += int(cursor.rowcount or 0)
        log.info("Set %d job(s) to %s", updated, status)
        return {"ok": True, "count": len(job_record_ids), "updated_count": updated}

    def approve(self, job_record_ids: list[str], *, now: datetime | None = None) -> dict[str, Any]:
        return self._batch_set_status(job_record_ids, "approved", now)

    def reject(self, job_record_ids: list[str], *, now: datetime | None = None) -> dict[str, Any]:
        return self._batch_set_status(job_record_ids, "rejected", now)

    def transition_status(
        self,
        *,
        job_record_id: str,
        status: str,
        error: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Set the job status; `applied` stamps applied_at, applying/failed bump the attempt count."""
        if status not in JOB_STATUSES:
            return {"ok": False, "error": f"invalid job status: {status}"}

        now_iso = iso(resolve_now(now))
        sets = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status, now_iso]
        if status == "applied":
            sets.append("applied_at = ?")
            params.append(now_iso)
        if error is not None:
            sets.append("last_attempt_error = ?")
            params.append(error)
        if status in _ATTEMPT_COUNTING_STATUSES:
            sets.append("application_attempts = application_attempts + 1")
        params.append(job_record_id)

        with self._db.connect(write=True) as conn:
            cursor = conn.execute(f"UPDATE jobs SET {', '.join(sets)} WHERE job_record_id = ?;", params)
            if not cursor.rowcount:
                return {"ok": False, "error": "Job record not found"}
        return {"ok": True, "job_record_id": job_record_id, "status": status}

    def batch_update_statuses(self, updates: list[dict[str, Any]], *, now: datetime | None = None) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for update in updates:
            record_id = str(update.get("job_record_id") or "")
            status = str(update.get("status") or "")
            error = update.get("error") if status == "failed" and isinstance(update.get("error"), str) else None
            now_iso = iso(resolve_now(now))
            if status not in JOB_STATUSES:
                results.append({"job_record_id": record_id, "ok": False, "error": f"invalid job status: {status}"})
                continue
            sets = ["status = ?", "updated_at = ?"]
            params: list[Any] = [status, now_iso]
            if status == "applied":
                sets.append("applied_at = ?")
                params.append(now_iso)
            if error:
                sets.append("last_attempt_error = ?")
                params.append(error)
            params.append(record_id)
            with self._db.connect(write=True) as conn:
                cursor = conn.execute(f"UPDATE jobs SET {', '.join(sets)} WHERE job_record_id = ?;", params)
            if cursor.rowcount:
                results.append({"job_record_id": record_id, "ok": True})
            else:
                results.append({"job_record_id": record_id, "ok": False, "error": "Job record not found"})
        return results

    def mark_job_as_applying(self, *, job_record_id: str, now: datetime | None = None) -> dict[str, Any]:
        """Claim an approved job for a direct apply; fails if someone else got there first."""
        now_iso = iso(resolve_now(now))
        with self._db.connect(write=True) as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'applying', updated_at = ?, application_attempts = application_attempts + 1
                WHERE job_record_id = ? AND status = 'approved';
                """,
                (now_iso, job_record_id),
            )
            if not cursor.rowcount:
                return {"ok": False, "job": None}
            job = fetch_job(conn, job_record_id)
        return {"ok": True, "job": job}

    def retry_failed_job(self, *, job_record_id: str, now: datetime | None = None) -> dict[str, Any]:
        now_iso = iso(resolve_now(now))
        with self._db.connect(write=True) as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'approved', last_attempt_error = NULL, updated_at = ?
                WHERE job_record_id = ? AND status = 'failed';
                """,
                (now_iso, job_record_id),
            )
            if not cursor.rowcount:
                return {"ok": False, "error": "Job is not in failed status"}
        return {"ok": True, "job_record_id": job_record_id}

    def update_cover_letter(self, *, job_record_id: str, cover_letter: str, now: datetime | None = None) -> dict[str, Any]:
        now_iso = iso(resolve_now(now))
        with self._db.connect(write=True) as conn:
            cursor = conn.execute(
                "UPDATE jobs SET cover_letter = ?, updated_at = ? WHERE job_record_id = ?;",
                (cover_letter, now_iso, job_record_id),
            )
            if not cursor.rowcount:
                return {"ok": False, "error": "Job record not found"}
        return {"ok": True, "job_record_id": job_record_id}

    def remove_job(self, *, job_record_id: str) -> dict[str, Any]:
        with self._db.connect(write=True) as conn:
            cursor = conn.execute("DELETE FROM jobs WHERE job_record_id = ?;", (job_record_id,))
            if not cursor.rowcount:
                return {"ok": False, "error": "Job record not found"}
        return {"ok": True, "job_record_id": job_record_id}

    def get_job(self, job_record_id: str) -> dict[str, Any] | None:
        with self._db.connect() as conn:
            return fetch_job(conn, job_record_id)

    def list_jobs(self, *, user_id: str, status: str | None = None) -> list[dict[str, Any]]:
        with self._db.connect() as conn:
            if status:
                rows = conn.execute(
                    """
                    SELECT * FROM jobs
                    WHERE user_id = ? AND status = ?
                    ORDER BY discovered_at DESC, job_record_id DESC;
                    """,
                    (user_id, status),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE user_id = ? ORDER BY discovered_at DESC, job_record_id DESC;",
                    (user_id,),
                ).fetchall()
        return [job_row_to_dict(row) for row in rows]

    def list_approved(self, *, user_id: str) -> list[dict[str, Any]]:
        return self.list_jobs(user_id=user_id, status="approved")

    def high_match_jobs(self, *, user_id: str, min_score: int = DEFAULT_HIGH_MATCH_SCORE) -> list[dict[str, Any]]:
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE user_id = ? AND match_score >= ? AND status IN ('discovered', 'pending')
                ORDER BY match_score DESC;
                """,
                (user_id, int(min_score)),
            ).fetchall()
        return [job_row_to_dict(row) for row in rows]

    def job_stats(self, *, user_id: str) -> dict[str, Any]:
        stats: dict[str, Any] = {"total": 0, **{status: 0 for status in JOB_STATUSES}, "average_match_score": 0}
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT status, match_score FROM jobs WHERE user_id = ?;",
                (user_id,),
            ).fetchall()
        total_score = 0
        for row in rows:
            stats["total"] += 1
            stats[str(row["status"])] += 1
            total_score += int(row["match_score"])
        if rows:
            stats["average_match_score"] = round(total_score / len(rows))
        return stats

    def auto_apply_stats(self, *, user_id: str) -> dict[str, int]:
        stats = self.job_stats(user_id=user_id)
        return {key: int(stats[key]) for key in ("approved", "applying", "applied", "failed")}
