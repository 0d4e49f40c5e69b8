import threading
import time
from uuid import uuid4

from src.autoapply.core.provider_queue import execute_provider_call, provider_queue_stats


def _group(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:8]}"


def test_provider_queue_serializes_calls_per_group():
    group = _group("jsearch_serial")
    guard = threading.Lock()
    active = {"count": 0, "peak": 0}
    outputs: list[dict] = []

    def _call() -> dict:
        with guard:
            active["count"] += 1
            active["peak"] = max(active["peak"], active["count"])
        time.sleep(0.05)
        with guard:
            active["count"] -= 1
        return {"data": []}

    threads = [threading.Thread(target=lambda: outputs.append(execute_provider_call(group=group, fn=_call))) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=2.0)

    assert len(outputs) == 3
    assert all(out["ok"] for out in outputs)
    assert active["peak"] == 1
    stats = provider_queue_stats(group)
    assert stats["calls_total"] == 3
    assert stats["calls_success"] == 3
    assert stats["waiting"] == 0


def test_provider_queue_retries_retryable_failures():
    group = _group("jsearch_retry")
    attempts = {"n": 0}

    def _flaky() -> dict:
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise RuntimeError("temporary")
        return {"data": [1]}

    out = execute_provider_call(
        group=group,
        fn=_flaky,
        max_retries=3,
        is_retryable=lambda exc: isinstance(exc, RuntimeError),
    )
    assert out["ok"] is True
    assert out["value"] == {"data": [1]}
    assert out["queue"]["attempt"] == 3

    stats = provider_queue_stats(group)
    assert stats["retries_total"] == 2
    assert stats["calls_failed"] == 0


def test_provider_queue_stops_on_non_retryable_error():
    group = _group("jsearch_fatal")

    def _fatal() -> dict:
        raise ValueError("HTTP 403")

    out = execute_provider_call(group=group, fn=_fatal, max_retries=3, is_retryable=lambda exc: False)
    assert out["ok"] is False
    assert out["error"] == "HTTP 403"
    assert out["queue"]["attempt"] == 1
    stats = provider_queue_stats(group)
    assert stats["calls_failed"] == 1
    assert stats["last_error"] == "HTTP 403"


def test_provider_queue_spaces_calls_by_min_interval():
    group = _group("jsearch_pace")
    execute_provider_call(group=group, fn=lambda: None)
    second = execute_provider_call(group=group, fn=lambda: None, min_interval_sec=0.05)
    assert second["ok"] is True
    assert second["queue"]["wait_sec"] >= 0.04
