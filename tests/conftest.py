import os
from datetime import UTC, datetime

import pytest

os.environ.setdefault("AUTOAPPLY_LOG_TO_FILE", "0")

from src.autoapply.core.config_loader import clear_config_cache
from src.autoapply.core.db import Database
from src.autoapply.core.job_store import JobStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.setenv("AUTOAPPLY_CONFIG_PATH", str(tmp_path / "missing_config.json"))
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.delenv("RAPIDAPI_KEY", raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture()
def now() -> datetime:
    return NOW


@pytest.fixture()
def db(tmp_path) -> Database:
    return Database(tmp_path / "autoapply.sqlite3")


@pytest.fixture()
def make_job(db):
    store = JobStore(db)
    counter = {"n": 0}

    def _make(user_id: str = "user_1", status: str = "approved", **attributes) -> str:
        counter["n"] += 1
        payload = {
            "job_title": f"Backend Engineer {counter['n']}",
            "company": "Acme",
            "apply_link": "https://boards.greenhouse.io/acme/jobs/1",
            "source": "jsearch",
            "match_score": 82,
            "cover_letter": "Dear Acme team",
            "status": status,
        }
        payload.update(attributes)
        out = store.upsert_discovered(
            user_id=user_id,
            external_job_id=f"ext_{counter['n']}",
            attributes=payload,
            now=NOW,
        )
        assert out["ok"] is True
        return out["job_record_id"]

    return _make
