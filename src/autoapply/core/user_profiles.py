"""Applicant profile data consumed by the auto-apply executor."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any

from .db import Database, as_list, dumps_json, iso, loads_json, resolve_now
from .log import get_logger

log = get_logger(__name__)

PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "city",
    "state",
    "country",
    "zip_code",
    "linkedin_url",
    "portfolio_url",
    "github_url",
    "authorized_to_work",
    "requires_sponsorship",
    "resume_text",
    "skills",
)
_BOOL_FIELDS = {"authorized_to_work", "requires_sponsorship"}
REQUIRED_APPLY_FIELDS = ("first_name", "last_name", "email", "phone", "resume_text")


def profile_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    out = {key: row[key] for key in PROFILE_FIELDS if key != "skills"}
    out["user_id"] = row["user_id"]
    out["authorized_to_work"] = bool(row["authorized_to_work"])
    out["requires_sponsorship"] = bool(row["requires_sponsorship"])
    out["skills"] = loads_json(row["skills_json"], [])
    out["created_at"] = row["created_at"]
    out["updated_at"] = row["updated_at"]
    return out


def fetch_profile(conn: sqlite3.Connection, user_id: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM user_profiles WHERE user_id = ?;", (user_id,)).fetchone()
    return profile_row_to_dict(row) if row is not None else None


def missing_apply_fields(profile: dict[str, Any] | None) -> list[str]:
    """Return the required applicant fields that are empty or absent."""
    if not profile:
        return list(REQUIRED_APPLY_FIELDS)
    return [key for key in REQUIRED_APPLY_FIELDS if not str(profile.get(key) or "").strip()]


class UserProfileStore:
    def __init__(self, database: Database | None = None) -> None:
        self._db = database or Database()

    def upsert_profile(self, *, user_id: str, fields: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
        clean_user = str(user_id or "").strip()
        if not clean_user:
            return {"ok": False, "error": "user_id is required."}
        unknown = sorted(set(fields) - set(PROFILE_FIELDS))
        if unknown:
            return {"ok": False, "error": f"unknown profile fields: {', '.join(unknown)}"}

        columns: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "skills":
                columns["skills_json"] = dumps_json(as_list(value))
            elif key in _BOOL_FIELDS:
                columns[key] = int(bool(value))
            else:
                columns[key] = value

        now_iso = iso(resolve_now(now))
        with self._db.connect(write=True) as conn:
            exists = conn.execute("SELECT 1 FROM user_profiles WHERE user_id = ?;", (clean_user,)).fetchone()
            if exists is None:
                names = ["user_id", "created_at", "updated_at", *columns]
                values = [clean_user, now_iso, now_iso, *columns.values()]
                placeholders = ", ".join("?" for _ in names)
                conn.execute(
                    f"INSERT INTO user_profiles({', '.join(names)}) VALUES ({placeholders});",
                    values,
                )
                created = True
            else:
                sets = ", ".join(f"{name} = ?" for name in ["updated_at", *columns])
                conn.execute(
                    f"UPDATE user_profiles SET {sets} WHERE user_id = ?;",
                    [now_iso, *columns.values(), clean_user],
                )
                created = False
            profile = fetch_profile(conn, clean_user)
        log.debug("Saved profile for user %s (created=%s)", clean_user, created)
        return {"ok": True, "created": created, "profile": profile}

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        with self._db.connect() as conn:
            return fetch_profile(conn, user_id)
