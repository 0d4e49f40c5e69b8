"""LLM completion entrypoint used for match scoring and cover letters."""

from __future__ import annotations

import os
import re
import socket
from time import sleep
from typing import Any
from urllib.error import HTTPError, URLError

from .config_loader import get_provider_config, load_config
from .log import get_logger
from .providers import OPENROUTER_CHAT_URL, call_openrouter
from .providers.openrouter import DEFAULT_MODEL

log = get_logger(__name__)

DEFAULT_RETRY_BACKOFF_SCHEDULE_SEC = (1.0, 3.0, 5.0)
DEFAULT_TIMEOUT_SEC = 60
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2048
RETRYABLE_HTTP_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class _ProviderCallError(Exception):
    def __init__(self, *, cause: Exception, attempts_used: int, retryable_error: bool) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.attempts_used = attempts_used
        self.retryable_error = retryable_error


def _exception_chain(exc: Exception) -> list[Exception]:
    chain: list[Exception] = []
    seen: set[int] = set()
    current: Exception | None = exc
    while current is not None and id(current) not in seen:
        chain.append(current)
        seen.add(id(current))
        nxt = current.__cause__ if isinstance(current.__cause__, Exception) else None
        if nxt is None:
            nxt = current.__context__ if isinstance(current.__context__, Exception) else None
        current = nxt
    return chain


def _http_code_from_text(text: str) -> int | None:
    match = re.search(r"\bHTTP\s+(\d{3})\b", text)
    return int(match.group(1)) if match else None


def is_retryable_provider_error(exc: Exception) -> bool:
    """True for rate limits, upstream 5xx and transport failures."""
    for current in _exception_chain(exc):
        if isinstance(current, HTTPError):
            return int(current.code) in RETRYABLE_HTTP_CODES
        if isinstance(current, URLError):
            reason = getattr(current, "reason", None)
            if isinstance(reason, (socket.gaierror, TimeoutError, OSError)):
                return True
            if isinstance(reason, str):
                low = reason.lower()
                return "timed out" in low or "temporary failure" in low or "name resolution" in low
            return True
        if isinstance(current, TimeoutError):
            return True
        code = _http_code_from_text(str(current))
        if code is not None:
            return code in RETRYABLE_HTTP_CODES
    return False


def _coerce_retry_schedule_sec(raw: Any) -> list[float]:
    if isinstance(raw, list):
        out = [float(val) for val in raw if isinstance(val, (int, float)) and float(val) >= 0]
        if out:
            return out
    return [float(val) for val in DEFAULT_RETRY_BACKOFF_SCHEDULE_SEC]


def _call_openrouter_with_retry(
    *,
    attempts: int,
    backoff_schedule_sec: list[float],
    **kwargs: Any,
) -> tuple[dict[str, Any], int]:
    safe_attempts = max(1, int(attempts))
    for attempt in range(1, safe_attempts + 1):
        try:
            return call_openrouter(**kwargs), attempt
        except Exception as exc:
            retryable = is_retryable_provider_error(exc)
            if attempt >= safe_attempts or not retryable:
                raise _ProviderCallError(cause=exc, attempts_used=attempt, retryable_error=retryable) from exc
            delay = backoff_schedule_sec[min(attempt - 1, len(backoff_schedule_sec) - 1)] if backoff_schedule_sec else 0.0
            log.warning("OpenRouter attempt %d/%d failed, retrying in %.1fs: %s", attempt, safe_attempts, delay, exc)
            if delay > 0:
                sleep(delay)
    raise RuntimeError("OpenRouter retry loop exited unexpectedly.")


def _failure(error: str, **extra: Any) -> dict[str, Any]:
    return {"ok": False, "provider": "openrouter", "text": None, "usage": None, "error": error, **extra}


def call_llm(
    *,
    messages: list[dict[str, Any]],
    temperature: float | None = None,
    max_output_tokens: int | None = None,
    timeout_sec: int | None = None,
    config: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Execute one chat completion with retries on transient provider errors."""
    try:
        payload = config if config is not None else load_config()
        provider_cfg = get_provider_config("openrouter", payload)
    except (FileNotFoundError, ValueError) as exc:
        provider_cfg = {}
        log.debug("No openrouter provider config (%s); using defaults", exc)

    api_key = provider_cfg.get("apikey") or os.getenv("OPENROUTER_API_KEY")
    if not isinstance(api_key, str) or not api_key:
        return _failure("OpenRouter API key missing.")

    provider_timeout = timeout_sec
    if provider_timeout is None:
        configured = provider_cfg.get("timeout_sec")
        provider_timeout = int(configured) if isinstance(configured, int) and configured > 0 else DEFAULT_TIMEOUT_SEC
    retry_schedule_sec = _coerce_retry_schedule_sec(provider_cfg.get("retry_backoff_schedule_sec"))
    retry_attempts_raw = provider_cfg.get("retry_attempts")
    if isinstance(retry_attempts_raw, int) and retry_attempts_raw > 0:
        retry_attempts = retry_attempts_raw
    else:
        retry_attempts = len(retry_schedule_sec) + 1

    model = provider_cfg.get("model") if isinstance(provider_cfg.get("model"), str) else DEFAULT_MODEL
    try:
        response, attempts_used = _call_openrouter_with_retry(
            attempts=retry_attempts,
            backoff_schedule_sec=retry_schedule_sec,
            api_key=api_key,
            model=model,
            messages=messages,
            max_output_tokens=max_output_tokens,
            temperature=temperature,
            timeout_sec=provider_timeout,
            base_url=provider_cfg.get("base_url") or OPENROUTER_CHAT_URL,
            referer=provider_cfg.get("referer"),
        )
    except _ProviderCallError as exc:
        log.error("OpenRouter call failed after %d attempt(s): %s", exc.attempts_used, exc.cause)
        return _failure(
            str(exc.cause),
            model=model,
            attempts_used=int(exc.attempts_used),
            attempts_configured=retry_attempts,
            retryable_error=bool(exc.retryable_error),
        )

    out = dict(response)
    out["attempts_used"] = attempts_used
    out["attempts_configured"] = retry_attempts
    return out


def get_completion(
    system_prompt: str,
    user_prompt: str,
    *,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> str:
    """Return the completion text, raising RuntimeError when the call fails."""
    result = call_llm(
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        temperature=temperature,
        max_output_tokens=max_tokens,
    )
    if not result.get("ok"):
        raise RuntimeError(str(result.get("error") or "LLM call failed"))
    return str(result.get("text") or "")
