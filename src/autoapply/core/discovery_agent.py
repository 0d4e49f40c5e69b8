"""Job discovery agent: search, score against a résumé, keep the qualifying postings.

Searches for every query run concurrently; scoring runs in fixed-size
concurrent batches with a short pause between them. A failed search or a
failed analysis only drops that query or posting. `stop()` is cooperative:
it is observed between queries and between batches, never mid-request.
"""

from __future__ import annotations

import json
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from threading import Event, Lock, RLock
from time import sleep
from typing import Any, Callable, TypeVar

from .config_loader import get_discovery_config
from .job_types import DiscoveredJob, DiscoveryConfig, DiscoveryProgress
from .llm_client import get_completion
from .log import get_logger
from .match_analyzer import analyze_job_match
from src.autoapply.tools.jsearch import search_jobs

log = get_logger(__name__)

T = TypeVar("T")
ProgressCallback = Callable[[DiscoveryProgress], None]

TRANSIENT_ERROR_MARKERS = ("terminated", "socket", "econnreset", "network", "timeout")
FALLBACK_SEARCH_QUERIES = ["Software Engineer", "Developer", "Engineer"]
RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY_SEC = 1.0
RESUME_PROMPT_CHARS = 2000

COVER_LETTER_SYSTEM_PROMPT = """You are an expert career coach and professional writer. Write a compelling, personalized cover letter that highlights the candidate's relevant experience, shows genuine interest in the company and role, and addresses the key requirements of the posting. Keep it professional but personable, 3-4 paragraphs at most.

Do NOT open with generic phrases like "I am writing to express my interest".
Do NOT include placeholders like [Your Name]."""

QUERY_EXTRACTION_SYSTEM_PROMPT = """You are a career advisor. Based on the resume, suggest exactly 3 job titles that would be a good match for this candidate. Return ONLY a JSON array of 3 strings with no explanation.

Example output: ["Software Engineer", "Full Stack Developer", "Backend Developer"]"""

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


def is_transient_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_ERROR_MARKERS)


def with_retry(
    fn: Callable[[], T],
    *,
    max_attempts: int = RETRY_MAX_ATTEMPTS,
    base_delay_sec: float = RETRY_BASE_DELAY_SEC,
    sleep_fn: Callable[[float], None] = sleep,
) -> T:
    """Call `fn`, retrying network-class failures with delays of 1s, 2s, 4s..."""
    for attempt in range(max_attempts):
        try:
            return fn()
        except Exception as exc:
            if not is_transient_error(exc) or attempt == max_attempts - 1:
                raise
            delay = base_delay_sec * (2**attempt)
            log.warning("Network error, retrying after %.1fs (attempt %d/%d): %s", delay, attempt + 1, max_attempts, exc)
            sleep_fn(delay)
    raise RuntimeError("retry loop exited unexpectedly")


def _average_score(jobs: list[DiscoveredJob]) -> int:
    if not jobs:
        return 0
    return int(sum(job.match_score for job in jobs) / len(jobs) + 0.5)


def dedupe_key(job: dict[str, Any]) -> str:
    return f"{job.get('title') or ''}|{job.get('employer') or ''}".lower()


def get_discovery_settings(config: dict[str, Any] | None = None, **overrides: Any) -> DiscoveryConfig:
    """Build a DiscoveryConfig from the `discovery` config section plus explicit overrides."""
    section = get_discovery_config(config)
    defaults = DiscoveryConfig()
    values = defaults.to_dict()
    for key, default in values.items():
        raw = section.get(key)
        if raw is None:
            continue
        if isinstance(default, bool):
            if isinstance(raw, bool):
                values[key] = raw
        elif isinstance(default, int):
            if isinstance(raw, int) and not isinstance(raw, bool):
                values[key] = raw
        elif isinstance(default, float):
            if isinstance(raw, (int, float)) and not isinstance(raw, bool):
                values[key] = float(raw)
    values.update({key: value for key, value in overrides.items() if value is not None})
    return DiscoveryConfig(**values)


class JobDiscoveryAgent:
    def __init__(
        self,
        resume_text: str,
        config: DiscoveryConfig | None = None,
        *,
        search_fn: Callable[..., list[dict[str, Any]]] = search_jobs,
        analyze_fn: Callable[..., dict[str, Any]] = analyze_job_match,
        completion_fn: Callable[..., str] = get_completion,
        sleep_fn: Callable[[float], None] = sleep,
    ) -> None:
        self._resume_text = resume_text
        self._config = config or DiscoveryConfig()
        self._search_fn = search_fn
        self._analyze_fn = analyze_fn
        self._completion_fn = completion_fn
        self._sleep = sleep_fn
        self._cancelled = Event()
        self._lock = Lock()
        # Held across the callback so subscribers see updates in the order they were made.
        self._delivery_lock = RLock()
        self._progress = DiscoveryProgress()
        self._callback: ProgressCallback | None = None

    @property
    def config(self) -> DiscoveryConfig:
        return self._config

    @property
    def progress(self) -> DiscoveryProgress:
        with self._lock:
            return replace(self._progress)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def on_progress(self, callback: ProgressCallback) -> None:
        self._callback = callback

    def stop(self) -> None:
        self._cancelled.set()
        self._update(status="idle", current_phase="Stopped by user", force=True)

    def _update(self, *, force: bool = False, **changes: Any) -> None:
        with self._delivery_lock:
            with self._lock:
                # Once stopped, only the stop itself and the error state may be reported.
                if self._cancelled.is_set() and not force:
                    return
                self._progress = replace(self._progress, **changes)
                snapshot = replace(self._progress)
            if self._callback is not None:
                self._callback(snapshot)

    def discover(self) -> list[DiscoveredJob]:
        qualified: list[DiscoveredJob] = []
        cfg = self._config
        try:
            self._update(status="searching", current_phase="Searching job boards...")
            all_jobs = self._search_jobs()
            if self.cancelled:
                return qualified

            self._update(jobs_found=len(all_jobs), current_phase=f"Found {len(all_jobs)} potential jobs")
            self._update(status="analyzing", current_phase="Analyzing job matches...")

            to_analyze = all_jobs[: cfg.max_jobs_to_analyze]
            total = len(to_analyze)
            with ThreadPoolExecutor(max_workers=cfg.batch_size, thread_name_prefix="discovery-analyze") as pool:
                for start in range(0, total, cfg.batch_size):
                    if self.cancelled:
                        break
                    batch = to_analyze[start : start + cfg.batch_size]
                    end = min(start + cfg.batch_size, total)
                    self._update(
                        status="analyzing",
                        current_phase=f"Analyzing jobs {start + 1}-{end} of {total}...",
                        jobs_analyzed=start,
                    )

                    futures = [pool.submit(self._analyze_job, job) for job in batch]
                    for job, future in zip(batch, futures):
                        try:
                            match_result = future.result()
                        except Exception as exc:
                            log.error("Failed to analyze job %r: %s", job.get("title"), exc)
                            continue
                        if match_result["overall_match"] < cfg.min_match_score:
                            continue
                        cover_letter = None
                        if cfg.generate_cover_letters:
                            self._update(
                                status="generating",
                                current_phase=f"Generating cover letter for {job.get('title')}...",
                                current_job=job.get("title"),
                            )
                            cover_letter = self._generate_cover_letter(job, match_result)
                        qualified.append(DiscoveredJob(job=job, match_result=match_result, cover_letter=cover_letter))

                    self._update(
                        jobs_analyzed=end,
                        jobs_qualified=len(qualified),
                        average_match_score=_average_score(qualified),
                    )
                    if end < total:
                        self._sleep(cfg.batch_delay_sec)

            if self.cancelled:
                return qualified

            self._update(
                status="complete",
                current_phase=f"Discovery complete! Found {len(qualified)} qualified jobs.",
                current_job=None,
                average_match_score=_average_score(qualified),
            )
            log.info("Discovery finished: %d of %d analyzed jobs qualified", len(qualified), total)
            return qualified
        except Exception as exc:
            self._update(status="error", current_phase="Discovery failed", error=str(exc) or "Unknown error", force=True)
            log.error("Discovery failed: %s", exc)
            raise

    def _search_jobs(self) -> list[dict[str, Any]]:
        queries = list(self._config.search_queries) or self._extract_search_queries()
        self._update(current_phase=f"Searching for {len(queries)} job titles simultaneously...")
        if not queries:
            return []

        with ThreadPoolExecutor(max_workers=len(queries), thread_name_prefix="discovery-search") as pool:
            results = list(pool.map(self._run_query, queries))

        seen: set[str] = set()
        all_jobs: list[dict[str, Any]] = []
        for jobs in results:
            for job in jobs:
                key = dedupe_key(job)
                if key in seen:
                    continue
                seen.add(key)
                all_jobs.append(job)
        return all_jobs

    def _run_query(self, query: str) -> list[dict[str, Any]]:
        if self.cancelled:
            return []
        try:
            jobs = self._search_fn(query, limit=self._config.per_query_limit, location=self._config.location)
        except Exception as exc:
            log.error("Search failed for query %r: %s", query, exc)
            return []
        if self._config.remote_only:
            jobs = [job for job in jobs if job.get("remote")]
        return list(jobs)

    def _analyze_job(self, job: dict[str, Any]) -> dict[str, Any]:
        return with_retry(
            lambda: self._analyze_fn(
                self._resume_text,
                str(job.get("title") or ""),
                str(job.get("employer") or ""),
                str(job.get("description") or ""),
                list(job.get("qualifications") or []),
            ),
            sleep_fn=self._sleep,
        )

    def _generate_cover_letter(self, job: dict[str, Any], match_result: dict[str, Any]) -> str:
        requirements = "\n".join(job.get("qualifications") or []) or "See job description"
        prompt = (
            "Write a cover letter for this job application.\n\n"
            "JOB:\n"
            f"Title: {job.get('title')}\n"
            f"Company: {job.get('employer')}\n"
            f"Location: {job.get('location') or 'Remote'}\n\n"
            f"KEY REQUIREMENTS:\n{requirements}\n\n"
            "CANDIDATE'S MATCHING STRENGTHS:\n"
            + "\n".join(match_result.get("strengths") or [])
            + f"\n\nMATCHED SKILLS: {', '.join(match_result.get('matched_skills') or [])}\n\n"
            f"CANDIDATE'S RESUME:\n{self._resume_text[:RESUME_PROMPT_CHARS]}...\n\n"
            "Write a compelling cover letter (3-4 paragraphs) that positions this candidate as an ideal fit."
        )
        try:
            letter = with_retry(
                lambda: self._completion_fn(COVER_LETTER_SYSTEM_PROMPT, prompt, temperature=0.7, max_tokens=1024),
                sleep_fn=self._sleep,
            )
        except Exception as exc:
            log.error("Cover letter generation failed for %r: %s", job.get("title"), exc)
            return ""
        return letter.strip()

    def _extract_search_queries(self) -> list[str]:
        prompt = (
            "Based on this resume, what are the top 3 job titles this person should search for?\n\n"
            f"{self._resume_text[:RESUME_PROMPT_CHARS]}"
        )
        try:
            response = self._completion_fn(QUERY_EXTRACTION_SYSTEM_PROMPT, prompt, temperature=0.3, max_tokens=128)
            match = _JSON_ARRAY_RE.search(response or "")
            if match:
                parsed = json.loads(match.group(0))
                queries = [item.strip() for item in parsed if isinstance(item, str) and item.strip()]
                if queries:
                    return queries[:3]
        except Exception as exc:
            log.warning("Could not extract search queries from resume: %s", exc)
        return list(FALLBACK_SEARCH_QUERIES)


def discover_jobs(
    resume_text: str,
    config: DiscoveryConfig | None = None,
    on_progress: ProgressCallback | None = None,
    **agent_kwargs: Any,
) -> list[DiscoveredJob]:
    agent = JobDiscoveryAgent(resume_text, config, **agent_kwargs)
    if on_progress is not None:
        agent.on_progress(on_progress)
    return agent.discover()
