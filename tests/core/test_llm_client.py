import json
from pathlib import Path
from urllib.error import HTTPError, URLError

import pytest

from src.autoapply.core import llm_client
from src.autoapply.core.config_loader import clear_config_cache
from src.autoapply.core.llm_client import call_llm, get_completion, is_retryable_provider_error


def _write_config(path: Path, payload: dict) -> None:
    path.write_text(json.dumps(payload), encoding="utf-8")


@pytest.fixture()
def configured_openrouter(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    path = tmp_path / "config.json"
    _write_config(
        path,
        {
            "model_providers": {
                "openrouter": {
                    "apikey": "KEY_123",
                    "model": "openai/gpt-5-mini",
                    "retry_backoff_schedule_sec": [0.5, 2],
                }
            }
        },
    )
    monkeypatch.setenv("AUTOAPPLY_CONFIG_PATH", str(path))
    clear_config_cache()
    return path


def _ok_response(text: str = "hello") -> dict:
    return {
        "ok": True,
        "provider": "openrouter",
        "model": "openai/gpt-5-mini",
        "text": text,
        "finish_reason": "stop",
        "usage": {"total_tokens": 12},
        "error": None,
    }


def test_call_llm_invokes_provider_with_config(configured_openrouter, monkeypatch):
    seen: dict = {}

    def fake_call_openrouter(**kwargs):
        seen.update(kwargs)
        return _ok_response()

    monkeypatch.setattr(llm_client, "call_openrouter", fake_call_openrouter)
    out = call_llm(messages=[{"role": "user", "content": "hi"}], max_output_tokens=64)

    assert out["ok"] is True
    assert out["text"] == "hello"
    assert out["attempts_used"] == 1
    assert out["attempts_configured"] == 3
    assert seen["api_key"] == "KEY_123"
    assert seen["model"] == "openai/gpt-5-mini"
    assert seen["max_output_tokens"] == 64
    assert seen["timeout_sec"] == 60


def test_call_llm_missing_key_fails_softly(monkeypatch):
    def fail_if_called(**_kwargs):
        raise AssertionError("provider should not be called")

    monkeypatch.setattr(llm_client, "call_openrouter", fail_if_called)
    out = call_llm(messages=[{"role": "user", "content": "hi"}])
    assert out["ok"] is False
    assert out["error"] == "OpenRouter API key missing."


def test_call_llm_uses_env_key_without_config(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "ENV_KEY")
    seen: dict = {}

    def fake_call_openrouter(**kwargs):
        seen.update(kwargs)
        return _ok_response()

    monkeypatch.setattr(llm_client, "call_openrouter", fake_call_openrouter)
    assert call_llm(messages=[{"role": "user", "content": "hi"}])["ok"] is True
    assert seen["api_key"] == "ENV_KEY"


def test_call_llm_retries_retryable_errors_on_schedule(configured_openrouter, monkeypatch):
    attempts = {"n": 0}
    sleeps: list[float] = []

    def flaky(**_kwargs):
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise RuntimeError("HTTP 429: rate limited")
        return _ok_response("third time")

    monkeypatch.setattr(llm_client, "call_openrouter", flaky)
    monkeypatch.setattr(llm_client, "sleep", sleeps.append)

    out = call_llm(messages=[{"role": "user", "content": "hi"}])
    assert out["ok"] is True
    assert out["text"] == "third time"
    assert out["attempts_used"] == 3
    assert sleeps == [0.5, 2.0]


def test_call_llm_does_not_retry_client_errors(configured_openrouter, monkeypatch):
    attempts = {"n": 0}

    def unauthorized(**_kwargs):
        attempts["n"] += 1
        raise RuntimeError("HTTP 401: invalid key")

    monkeypatch.setattr(llm_client, "call_openrouter", unauthorized)
    monkeypatch.setattr(llm_client, "sleep", lambda _s: None)

    out = call_llm(messages=[{"role": "user", "content": "hi"}])
    assert out["ok"] is False
    assert out["retryable_error"] is False
    assert out["attempts_used"] == 1
    assert attempts["n"] == 1


def test_is_retryable_provider_error():
    assert is_retryable_provider_error(HTTPError("https://x", 503, "down", {}, None))
    assert not is_retryable_provider_error(HTTPError("https://x", 400, "bad", {}, None))
    assert is_retryable_provider_error(URLError(TimeoutError("timed out")))
    assert is_retryable_provider_error(TimeoutError())
    assert not is_retryable_provider_error(ValueError("nope"))


def test_get_completion_raises_on_failure(monkeypatch):
    monkeypatch.setattr(llm_client, "call_llm", lambda **_kwargs: {"ok": False, "error": "HTTP 500: upstream"})
    with pytest.raises(RuntimeError, match="HTTP 500"):
        get_completion("system", "user")

    captured: dict = {}

    def fake_call_llm(**kwargs):
        captured.update(kwargs)
        return {"ok": True, "text": "done"}

    monkeypatch.setattr(llm_client, "call_llm", fake_call_llm)
    assert get_completion("be brief", "hi", temperature=0.2, max_tokens=50) == "done"
    assert captured["messages"][0] == {"role": "system", "content": "be brief"}
    assert captured["temperature"] == 0.2
    assert captured["max_output_tokens"] == 50
