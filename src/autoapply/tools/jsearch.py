"""JSearch (RapidAPI) job search tool."""

from __future__ import annotations

import json
import os
from threading import Lock
from time import monotonic
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from src.autoapply.core.config_loader import get_job_search_config
from src.autoapply.core.log import get_logger
from src.autoapply.core.provider_queue import execute_provider_call

log = get_logger(__name__)

DEFAULT_JSEARCH_BASE_URL = "https://jsearch.p.rapidapi.com"
JSEARCH_HOST = "jsearch.p.rapidapi.com"
DEFAULT_CACHE_TTL_SEC = 10 * 60
QUEUE_GROUP = "jsearch"

_SEARCH_CACHE: dict[str, tuple[float, list[dict[str, Any]]]] = {}
_CACHE_LOCK = Lock()


def _number(value: Any, default: float) -> float:
    return float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else default


def _jsearch_settings() -> dict[str, Any]:
    config = get_job_search_config("jsearch")
    api_key = config.get("api_key") or os.getenv("RAPIDAPI_KEY")
    return {
        "base_url": str(config.get("base_url") or DEFAULT_JSEARCH_BASE_URL).rstrip("/"),
        "api_key": api_key if isinstance(api_key, str) and api_key else None,
        "timeout_sec": int(_number(config.get("timeout_sec"), 15)),
        "cache_ttl_sec": _number(config.get("cache_ttl_sec"), DEFAULT_CACHE_TTL_SEC),
        "queue_min_interval_sec": _number(config.get("queue_min_interval_sec"), 0.0),
        "queue_max_retries": int(_number(config.get("queue_max_retries"), 1)),
        "queue_retry_backoff_sec": _number(config.get("queue_retry_backoff_sec"), 1.0),
    }


def _fetch_json(url: str, headers: dict[str, str], timeout_sec: int) -> dict[str, Any]:
    req = Request(url, headers=headers, method="GET")
    try:
        with urlopen(req, timeout=timeout_sec) as response:
            body = response.read().decode("utf-8")
    except HTTPError as exc:
        if int(exc.code) == 429:
            raise RuntimeError("HTTP 429: Rate limit exceeded. Please try again later.") from exc
        raise RuntimeError(f"HTTP {exc.code}: JSearch request failed") from exc
    payload = json.loads(body)
    if not isinstance(payload, dict):
        raise ValueError("JSearch response must be a JSON object.")
    return payload


def _is_retryable_jsearch_error(exc: Exception) -> bool:
    cause = exc.__cause__ if isinstance(exc.__cause__, Exception) else exc
    if isinstance(cause, HTTPError):
        code = int(getattr(cause, "code", 0) or 0)
        return code == 429 or 500 <= code < 600
    return isinstance(cause, (URLError, TimeoutError))


def clear_search_cache() -> None:
    with _CACHE_LOCK:
        _SEARCH_CACHE.clear()


def search_cache_size() -> int:
    with _CACHE_LOCK:
        return len(_SEARCH_CACHE)


def format_location(
    *,
    city: str | None = None,
    state: str | None = None,
    country: str | None = None,
    is_remote: bool = False,
) -> str:
    parts = [part for part in (city, state) if part]
    if not parts and country:
        parts.append(country)
    if is_remote:
        return f"Remote ({', '.join(parts)})" if parts else "Remote"
    return ", ".join(parts) or "Location not specified"


def normalize_posting(raw: dict[str, Any]) -> dict[str, Any]:
    """Map one JSearch result onto the provider-neutral posting shape."""
    highlights = raw.get("job_highlights") if isinstance(raw.get("job_highlights"), dict) else {}
    qualifications = highlights.get("Qualifications") if isinstance(highlights.get("Qualifications"), list) else []
    skills = raw.get("job_required_skills") if isinstance(raw.get("job_required_skills"), list) else []
    remote = bool(raw.get("job_is_remote") or False)
    return {
        "job_id": str(raw.get("job_id") or ""),
        "title": str(raw.get("job_title") or ""),
        "employer": str(raw.get("employer_name") or ""),
        "description": str(raw.get("job_description") or ""),
        "location": format_location(
            city=raw.get("job_city"),
            state=raw.get("job_state"),
            country=raw.get("job_country"),
            is_remote=remote,
        ),
        "remote": remote,
        "employment_type": raw.get("job_employment_type"),
        "salary_min": raw.get("job_min_salary"),
        "salary_max": raw.get("job_max_salary"),
        "salary_currency": raw.get("job_salary_currency") or "USD",
        "salary_period": raw.get("job_salary_period") or "YEAR",
        "required_skills": [str(skill) for skill in skills],
        "qualifications": [str(item) for item in qualifications],
        "apply_link": str(raw.get("job_apply_link") or ""),
        "employer_logo": raw.get("employer_logo"),
        "posted_at": raw.get("job_posted_at_datetime_utc"),
        "source": "jsearch",
    }


def search_jobs(
    query: str,
    *,
    limit: int = 10,
    location: str | None = None,
    remote_only: bool = False,
) -> list[dict[str, Any]]:
    """Search JSearch and return normalized postings, most recent first.

    Raises RuntimeError when the API key is missing or the request fails.
    Results are cached in memory per parameter set for `cache_ttl_sec`.
    """
    clean_query = query.strip()
    if not clean_query:
        raise ValueError("query must be non-empty.")
    settings = _jsearch_settings()
    cache_key = json.dumps({"q": clean_query, "loc": location or "", "remote": bool(remote_only)}, sort_keys=True)

    with _CACHE_LOCK:
        cached = _SEARCH_CACHE.get(cache_key)
    if cached is not None and monotonic() - cached[0] < settings["cache_ttl_sec"]:
        log.debug("JSearch cache hit for %r", clean_query)
        return cached[1][:limit]

    if not settings["api_key"]:
        raise RuntimeError("Missing `job_search.jsearch.api_key` in config (or RAPIDAPI_KEY).")

    params = {
        "query": f"{clean_query} in {location}" if location else clean_query,
        "page": "1",
        "num_pages": "1",
    }
    if remote_only:
        params["remote_jobs_only"] = "true"
    url = f"{settings['base_url']}/search?{urlencode(params)}"
    headers = {
        "Accept": "application/json",
        "X-RapidAPI-Key": settings["api_key"],
        "X-RapidAPI-Host": JSEARCH_HOST,
    }

    log.info("Searching JSearch for %r", clean_query)
    queued = execute_provider_call(
        group=QUEUE_GROUP,
        fn=lambda: _fetch_json(url, headers=headers, timeout_sec=settings["timeout_sec"]),
        min_interval_sec=settings["queue_min_interval_sec"],
        max_retries=settings["queue_max_retries"],
        retry_backoff_sec=settings["queue_retry_backoff_sec"],
        is_retryable=_is_retryable_jsearch_error,
    )
    if not queued.get("ok"):
        raise RuntimeError(f"JSearch search failed: {queued.get('error')}")

    payload = queued.get("value") if isinstance(queued.get("value"), dict) else {}
    data = payload.get("data")
    if not isinstance(data, list):
        raise RuntimeError("Invalid JSearch response format")

    postings = [normalize_posting(item) for item in data if isinstance(item, dict)]
    postings.sort(key=lambda item: str(item.get("posted_at") or ""), reverse=True)

    with _CACHE_LOCK:
        _SEARCH_CACHE[cache_key] = (monotonic(), postings)
    return postings[:limit]
