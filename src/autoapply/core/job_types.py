"""Shared schemas for discovery and auto-apply."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

DiscoveryStatus = Literal["idle", "searching", "analyzing", "generating", "complete", "error"]
ApplyMethod = Literal["easy_apply", "form", "redirect", "unknown"]

DISCOVERY_STATUSES = ("idle", "searching", "analyzing", "generating", "complete", "error")


def _short_amount(value: float) -> str:
    if value >= 1000:
        return f"{round(value / 1000)}K"
    return f"{value:,.0f}"


def format_salary(
    *,
    salary_min: float | None = None,
    salary_max: float | None = None,
    period: str | None = None,
) -> str | None:
    """Render a salary range the way it is shown and stored, e.g. `$100K - $140K/yr`."""
    if not salary_min and not salary_max:
        return None
    period_label = {"YEAR": "/yr", "MONTH": "/mo"}.get((period or "YEAR").upper(), "/hr")
    if salary_min and salary_max:
        return f"${_short_amount(salary_min)} - ${_short_amount(salary_max)}{period_label}"
    if salary_min:
        return f"${_short_amount(salary_min)}+{period_label}"
    return f"Up to ${_short_amount(salary_max or 0)}{period_label}"


@dataclass(slots=True)
class DiscoveryConfig:
    """Per-run knobs for the discovery agent."""

    min_match_score: int = 70
    max_jobs_to_analyze: int = 15
    generate_cover_letters: bool = False
    search_queries: list[str] = field(default_factory=list)
    location: str | None = None
    remote_only: bool = False
    batch_size: int = 5
    batch_delay_sec: float = 0.3
    per_query_limit: int = 10

    def __post_init__(self) -> None:
        if not 0 <= self.min_match_score <= 100:
            raise ValueError("DiscoveryConfig.min_match_score must be within 0-100.")
        if self.max_jobs_to_analyze < 0:
            raise ValueError("DiscoveryConfig.max_jobs_to_analyze must be >= 0.")
        if self.batch_size < 1:
            raise ValueError("DiscoveryConfig.batch_size must be >= 1.")
        if self.batch_delay_sec < 0:
            raise ValueError("DiscoveryConfig.batch_delay_sec must be >= 0.")
        if self.per_query_limit < 1:
            raise ValueError("DiscoveryConfig.per_query_limit must be >= 1.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_match_score": self.min_match_score,
            "max_jobs_to_analyze": self.max_jobs_to_analyze,
            "generate_cover_letters": self.generate_cover_letters,
            "search_queries": list(self.search_queries),
            "location": self.location,
            "remote_only": self.remote_only,
            "batch_size": self.batch_size,
            "batch_delay_sec": self.batch_delay_sec,
            "per_query_limit": self.per_query_limit,
        }


@dataclass(slots=True)
class DiscoveryProgress:
    status: DiscoveryStatus = "idle"
    current_phase: str = "Initializing"
    jobs_found: int = 0
    jobs_analyzed: int = 0
    jobs_qualified: int = 0
    average_match_score: int | None = None
    current_job: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "current_phase": self.current_phase,
            "jobs_found": self.jobs_found,
            "jobs_analyzed": self.jobs_analyzed,
            "jobs_qualified": self.jobs_qualified,
            "average_match_score": self.average_match_score,
            "current_job": self.current_job,
            "error": self.error,
        }


@dataclass(slots=True)
class DiscoveredJob:
    """A posting that cleared the match threshold, with its analysis."""

    job: dict[str, Any]
    match_result: dict[str, Any]
    cover_letter: str | None = None

    @property
    def match_score(self) -> int:
        return int(self.match_result.get("overall_match", 0))

    def to_job_attributes(self) -> dict[str, Any]:
        """Shape the posting for `JobStore.upsert_discovered`."""
        job = self.job
        return {
            "job_title": job.get("title"),
            "company": job.get("employer"),
            "location": job.get("location"),
            "salary": format_salary(
                salary_min=job.get("salary_min"),
                salary_max=job.get("salary_max"),
                period=job.get("salary_period"),
            ),
            "job_type": job.get("employment_type"),
            "remote": job.get("remote"),
            "description": job.get("description"),
            "requirements": job.get("qualifications") or job.get("required_skills") or [],
            "apply_link": job.get("apply_link") or "",
            "source": job.get("source") or "unknown",
            "match_score": self.match_score,
            "match_analysis": self.match_result.get("summary"),
            "matched_skills": self.match_result.get("matched_skills") or [],
            "missing_skills": self.match_result.get("missing_skills") or [],
            "cover_letter": self.cover_letter or None,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "match_result": self.match_result,
            "cover_letter": self.cover_letter,
        }


@dataclass(slots=True)
class ApplyResult:
    """Outcome reported by an application executor for one attempt."""

    success: bool
    method: ApplyMethod | None = None
    confirmation_text: str | None = None
    screenshot_url: str | None = None
    error: str | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "method": self.method,
            "confirmation_text": self.confirmation_text,
            "screenshot_url": self.screenshot_url,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }
