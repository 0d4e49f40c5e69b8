"""Application history: one snapshot record per job actually applied to."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from .db import (
    APPLICATION_METHODS,
    APPLICATION_STATUSES,
    Database,
    dumps_json,
    iso,
    loads_json,
    resolve_now,
)
from .log import get_logger

log = get_logger(__name__)

DEFAULT_RECENT_DAYS = 30
_RESPONDED_STATUSES = ("viewed", "screening", "interviewing", "offer", "rejected")


def application_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "application_id": row["application_id"],
        "user_id": row["user_id"],
        "job_record_id": row["job_record_id"],
        "job_id": row["job_id"],
        "job_title": row["job_title"],
        "company": row["company"],
        "location": row["location"],
        "apply_link": row["apply_link"],
        "source": row["source"],
        "applied_at": row["applied_at"],
        "application_method": row["application_method"],
        "cover_letter_used": row["cover_letter_used"],
        "resume_version_used": row["resume_version_used"],
        "status": row["status"],
        "last_status_update": row["last_status_update"],
        "notes": row["notes"],
        "interview_dates": loads_json(row["interview_dates_json"], []),
        "match_score": row["match_score"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def insert_application(
    conn: sqlite3.Connection,
    *,
    user_id: str,
    job_record_id: str | None,
    job_id: str,
    job_title: str,
    company: str,
    location: str | None,
    apply_link: str,
    source: str,
    application_method: str,
    cover_letter_used: str | None,
    resume_version_used: str | None,
    match_score: int | None,
    now_iso: str,
) -> str:
    """Append one history record inside the caller's transaction."""
    application_id = f"app_{uuid4().hex}"
    conn.execute(
        """
        INSERT INTO applications(
            application_id, user_id, job_record_id, job_id, job_title, company, location,
            apply_link, source, applied_at, application_method, cover_letter_used,
            resume_version_used, status, match_score, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'applied', ?, ?, ?);
        """,
        (
            application_id,
            user_id,
            job_record_id,
            job_id,
            job_title,
            company,
            location,
            apply_link,
            source,
            now_iso,
            application_method,
            cover_letter_used,
            resume_version_used,
            match_score,
            now_iso,
            now_iso,
        ),
    )
    return application_id


class ApplicationHistory:
    """Append-only history with user-driven lifecycle updates (viewed, interviewing, ...)."""

    def __init__(self, database: Database | None = None) -> None:
        self._db = database or Database()

    def record_application(
        self,
        *,
        user_id: str,
        job_id: str,
        job_title: str,
        company: str,
        apply_link: str = "",
        source: str = "manual",
        application_method: str = "manual",
        location: str | None = None,
        job_record_id: str | None = None,
        cover_letter_used: str | None = None,
        resume_version_used: str | None = None,
        match_score: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Record an application made outside the queue.

        When `job_record_id` is given the linked job record is also moved to
        `applied`.
        """
        if application_method not in APPLICATION_METHODS:
            return {"ok": False, "error": f"invalid application method: {application_method}"}
        if not str(job_title or "").strip() or not str(company or "").strip():
            return {"ok": False, "error": "job_title and company are required."}

        now_iso = iso(resolve_now(now))
        with self._db.connect(write=True) as conn:
            if job_record_id is not None:
                cursor = conn.execute(
                    """
                    UPDATE jobs SET status = 'applied', applied_at = ?, updated_at = ?
                    WHERE job_record_id = ? AND user_id = ?;
                    """,
                    (now_iso, now_iso, job_record_id, user_id),
                )
                if not cursor.rowcount:
                    return {"ok": False, "error": "Job record not found"}
            application_id = insert_application(
                conn,
                user_id=user_id,
                job_record_id=job_record_id,
                job_id=job_id,
                job_title=job_title,
                company=company,
                location=location,
                apply_link=apply_link,
                source=source,
                application_method=application_method,
                cover_letter_used=cover_letter_used,
                resume_version_used=resume_version_used,
                match_score=match_score,
                now_iso=now_iso,
            )
        log.info("Recorded %s application %s (%s @ %s)", application_method, application_id, job_title, company)
        return {"ok": True, "application_id": application_id}

    def get_application(self, application_id: str) -> dict[str, Any] | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM applications WHERE application_id = ?;",
                (application_id,),
            ).fetchone()
        return application_row_to_dict(row) if row is not None else None

    def list_applications(
        self,
        *,
        user_id: str,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM applications WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY applied_at DESC, application_id DESC"
        if isinstance(limit, int) and limit > 0:
            sql += " LIMIT ?"
            params.append(limit)
        with self._db.connect() as conn:
            rows = conn.execute(sql + ";", params).fetchall()
        return [application_row_to_dict(row) for row in rows]

    def application_stats(self, *, user_id: str) -> dict[str, Any]:
        stats: dict[str, Any] = {"total": 0, **{status: 0 for status in APPLICATION_STATUSES}}
        with self._db.connect() as conn:
            rows = conn.execute("SELECT status FROM applications WHERE user_id = ?;", (user_id,)).fetchall()
        for row in rows:
            stats["total"] += 1
            stats[str(row["status"])] += 1

        total = stats["total"]
        responded = sum(stats[status] for status in _RESPONDED_STATUSES)
        stats["response_rate"] = round(responded / total * 100) if total else 0
        stats["interview_rate"] = round((stats["interviewing"] + stats["offer"]) / total * 100) if total else 0
        stats["offer_rate"] = round(stats["offer"] / total * 100) if total else 0
        return stats

    def _patch(self, application_id: str, sets: dict[str, Any], now_iso: str) -> dict[str, Any]:
        assignments = ", ".join(f"{name} = ?" for name in [*sets, "updated_at"])
        with self._db.connect(write=True) as conn:
            cursor = conn.execute(
                f"UPDATE applications SET {assignments} WHERE application_id = ?;",
                [*sets.values(), now_iso, application_id],
            )
            if not cursor.rowcount:
                return {"ok": False, "error": "Application not found"}
        return {"ok": True, "application_id": application_id}

    def update_status(
        self,
        *,
        application_id: str,
        status: str,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if status not in APPLICATION_STATUSES:
            return {"ok": False, "error": f"invalid application status: {status}"}
        now_iso = iso(resolve_now(now))
        sets: dict[str, Any] = {"status": status, "last_status_update": now_iso}
        if notes is not None:
            sets["notes"] = notes
        out = self._patch(application_id, sets, now_iso)
        if out["ok"]:
            log.info("Application %s moved to %s", application_id, status)
        return out

    def add_interview_date(
        self,
        *,
        application_id: str,
        interview_at: datetime,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now_iso = iso(resolve_now(now))
        with self._db.connect(write=True) as conn:
            row = conn.execute(
                "SELECT interview_dates_json FROM applications WHERE application_id = ?;",
                (application_id,),
            ).fetchone()
            if row is None:
                return {"ok": False, "error": "Application not found"}
            dates = loads_json(row["interview_dates_json"], [])
            dates.append(iso(interview_at))
            conn.execute(
                """
                UPDATE applications
                SET interview_dates_json = ?, status = 'interviewing', last_status_update = ?, updated_at = ?
                WHERE application_id = ?;
                """,
                (dumps_json(dates), now_iso, now_iso, application_id),
            )
        return {"ok": True, "application_id": application_id, "interview_dates": dates}

    def add_notes(self, *, application_id: str, notes: str, now: datetime | None = None) -> dict[str, Any]:
        return self._patch(application_id, {"notes": notes}, iso(resolve_now(now)))

    def recent_applications(
        self,
        *,
        user_id: str,
        days: int = DEFAULT_RECENT_DAYS,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        cutoff = iso(resolve_now(now) - timedelta(days=days))
        with self._db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM applications
                WHERE user_id = ? AND applied_at >= ?
                ORDER BY applied_at DESC;
                """,
                (user_id, cutoff),
            ).fetchall()
        return [application_row_to_dict(row) for row in rows]

    def by_company(self, *, user_id: str, company: str) -> list[dict[str, Any]]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM applications WHERE company = ? AND user_id = ? ORDER BY applied_at DESC;",
                (company, user_id),
            ).fetchall()
        return [application_row_to_dict(row) for row in rows]

    def delete_application(self, application_id: str) -> dict[str, Any]:
        with self._db.connect(write=True) as conn:
            cursor = conn.execute("DELETE FROM applications WHERE application_id = ?;", (application_id,))
            if not cursor.rowcount:
                return {"ok": False, "error": "Application not found"}
        return {"ok": True, "application_id": application_id}

    def today_count(self, *, user_id: str, now: datetime | None = None) -> int:
        """Applications since UTC midnight; used to cap daily volume."""
        start_of_day = resolve_now(now).replace(hour=0, minute=0, second=0, microsecond=0)
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM applications WHERE user_id = ? AND applied_at >= ?;",
                (user_id, iso(start_of_day)),
            ).fetchone()
        return int(row["n"])
