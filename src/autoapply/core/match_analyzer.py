"""Résumé-to-job fit scoring via the LLM."""

from __future__ import annotations

import json
import re
from typing import Any, Callable

from .llm_client import get_completion
from .log import get_logger

log = get_logger(__name__)

MATCH_LEVELS = ("excellent", "good", "fair", "poor")

JOB_MATCH_SYSTEM_PROMPT = """You are an expert career advisor and recruiter. Analyze how well a candidate's resume matches a specific job posting.

Return a JSON object with exactly this structure:

{
  "overall_match": 0-100,
  "match_level": "excellent|good|fair|poor",
  "matched_skills": ["skill"],
  "missing_skills": ["skill"],
  "partial_match_skills": ["skill with a similar variant"],
  "experience_match": {"score": 0-100, "feedback": "...", "years_required": "X years or null", "years_have": "X years or null"},
  "qualification_match": {"score": 0-100, "met": ["..."], "not_met": ["..."]},
  "strengths": ["..."],
  "gaps": ["..."],
  "recommendations": [{"priority": "high|medium|low", "action": "...", "impact": "..."}],
  "summary": "2-3 sentence summary of the match"
}

Scoring:
- 85-100 (excellent): meets most requirements with relevant experience
- 70-84 (good): meets core requirements, gaps are fillable
- 50-69 (fair): transferable skills but notable gaps
- 0-49 (poor): missing critical requirements

Be realistic and consider transferable skills. Return ONLY valid JSON."""

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def match_level_for(score: int) -> str:
    if score >= 85:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 50:
        return "fair"
    return "poor"


def _list_of(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else []


def normalize_match_result(result: dict[str, Any]) -> dict[str, Any]:
    """Clamp the score, fill defaults, and derive the level when the model omitted it."""
    try:
        score = round(float(result.get("overall_match", 0)))
    except (TypeError, ValueError):
        score = 0
    score = max(0, min(100, int(score)))

    level = result.get("match_level")
    if level not in MATCH_LEVELS:
        level = match_level_for(score)

    experience = result.get("experience_match")
    if not isinstance(experience, dict):
        experience = {"score": 50, "feedback": "Experience analysis unavailable"}
    qualification = result.get("qualification_match")
    if not isinstance(qualification, dict):
        qualification = {"score": 50, "met": [], "not_met": []}

    summary = result.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        summary = f"{score}% match for this position."

    return {
        "overall_match": score,
        "match_level": level,
        "matched_skills": _list_of(result.get("matched_skills")),
        "missing_skills": _list_of(result.get("missing_skills")),
        "partial_match_skills": _list_of(result.get("partial_match_skills")),
        "experience_match": experience,
        "qualification_match": qualification,
        "strengths": _list_of(result.get("strengths")),
        "gaps": _list_of(result.get("gaps")),
        "recommendations": _list_of(result.get("recommendations")),
        "summary": summary,
    }


def build_match_prompt(
    resume_text: str,
    job_title: str,
    company: str,
    description: str,
    qualifications: list[str] | None = None,
) -> str:
    qualifications_text = ""
    if qualifications:
        qualifications_text = "\nRequired Qualifications:\n" + "\n".join(f"- {q}" for q in qualifications)
    return (
        "Analyze how well this resume matches the job posting.\n\n"
        "JOB DETAILS:\n"
        f"Title: {job_title}\n"
        f"Company: {company}\n"
        f"Description: {description}\n"
        f"{qualifications_text}\n\n"
        "---\n\n"
        "CANDIDATE RESUME:\n"
        f"{resume_text}\n\n"
        "---\n\n"
        "Provide a JSON analysis of the match. Be honest but constructive."
    )


def analyze_job_match(
    resume_text: str,
    job_title: str,
    company: str,
    description: str,
    qualifications: list[str] | None = None,
    *,
    completion_fn: Callable[..., str] = get_completion,
) -> dict[str, Any]:
    """Score one posting against a résumé. Raises RuntimeError on any failure."""
    prompt = build_match_prompt(resume_text, job_title, company, description, qualifications)
    try:
        response = completion_fn(JOB_MATCH_SYSTEM_PROMPT, prompt, temperature=0.3, max_tokens=2048)
        match = _JSON_OBJECT_RE.search(response or "")
        if not match:
            raise ValueError("Invalid AI response - no JSON found")
        parsed = json.loads(match.group(0))
        if not isinstance(parsed, dict):
            raise ValueError("Invalid AI response - expected a JSON object")
    except Exception as exc:
        log.error("Job match analysis failed for %s @ %s: %s", job_title, company, exc)
        raise RuntimeError(f"Failed to analyze job match: {exc}") from exc
    return normalize_match_result(parsed)
