import time
from threading import Event, Thread

import pytest

from src.autoapply.core.discovery_agent import (
    FALLBACK_SEARCH_QUERIES,
    JobDiscoveryAgent,
    _average_score,
    dedupe_key,
    discover_jobs,
    get_discovery_settings,
    is_transient_error,
    with_retry,
)
from src.autoapply.core.job_types import DiscoveredJob, DiscoveryConfig
from src.autoapply.core.match_analyzer import normalize_match_result

RESUME = "Senior Python engineer with eight years of backend, data pipeline and cloud infrastructure experience. " * 2


def _posting(job_id: str, title: str, employer: str = "Acme", remote: bool = True) -> dict:
    return {
        "job_id": job_id,
        "title": title,
        "employer": employer,
        "description": f"{title} role",
        "location": "Remote" if remote else "Austin, TX",
        "remote": remote,
        "qualifications": ["Python"],
        "apply_link": f"https://jobs.example/{job_id}",
        "source": "jsearch",
    }


class _Recorder:
    def __init__(self) -> None:
        self.sleeps: list[float] = []
        self.progress: list = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def on_progress(self, progress) -> None:
        self.progress.append(progress)


def _scores_analyzer(scores: dict[str, int]):
    calls: list[str] = []

    def _analyze(resume_text, title, employer, description, qualifications):
        calls.append(title)
        return normalize_match_result({"overall_match": scores[title], "strengths": ["APIs"], "matched_skills": ["Python"]})

    _analyze.calls = calls
    return _analyze


def _no_completion(*_args, **_kwargs):
    raise AssertionError("completion should not be called")


def test_discover_dedupes_filters_and_averages():
    by_query = {
        "Backend Engineer": [_posting("1", "Backend Engineer"), _posting("2", "Data Engineer")],
        "Data Engineer": [_posting("3", "data engineer", employer="ACME"), _posting("4", "ML Engineer", "Initech")],
    }
    analyze = _scores_analyzer({"Backend Engineer": 90, "Data Engineer": 71, "ML Engineer": 40})
    recorder = _Recorder()
    agent = JobDiscoveryAgent(
        RESUME,
        DiscoveryConfig(search_queries=["Backend Engineer", "Data Engineer"], batch_size=2),
        search_fn=lambda query, limit, location: by_query[query],
        analyze_fn=analyze,
        completion_fn=_no_completion,
        sleep_fn=recorder.sleep,
    )
    agent.on_progress(recorder.on_progress)

    jobs = agent.discover()

    assert [job.job["job_id"] for job in jobs] == ["1", "2"]
    assert sorted(analyze.calls) == ["Backend Engineer", "Data Engineer", "ML Engineer"]
    assert all(job.cover_letter is None for job in jobs)
    final = agent.progress
    assert final.status == "complete"
    assert final.jobs_found == 3
    assert final.jobs_analyzed == 3
    assert final.jobs_qualified == 2
    assert final.average_match_score == 81
    assert recorder.progress[-1].status == "complete"
    assert recorder.sleeps == [0.3]


def test_min_match_score_is_inclusive():
    analyze = _scores_analyzer({"Exact": 70, "Below": 69})
    agent = JobDiscoveryAgent(
        RESUME,
        DiscoveryConfig(search_queries=["q"]),
        search_fn=lambda query, limit, location: [_posting("1", "Exact"), _posting("2", "Below")],
        analyze_fn=analyze,
        sleep_fn=lambda _s: None,
    )
    assert [job.job["title"] for job in agent.discover()] == ["Exact"]


def test_failed_search_query_is_isolated_and_remote_filter_applies():
    def _search(query, limit, location):
        if query == "broken":
            raise RuntimeError("JSearch HTTP 500")
        return [_posting("1", "Remote Role"), _posting("2", "Onsite Role", remote=False)]

    agent = JobDiscoveryAgent(
        RESUME,
        DiscoveryConfig(search_queries=["broken", "ok"], remote_only=True),
        search_fn=_search,
        analyze_fn=_scores_analyzer({"Remote Role": 80, "Onsite Role": 99}),
        sleep_fn=lambda _s: None,
    )
    jobs = agent.discover()
    assert [job.job["title"] for job in jobs] == ["Remote Role"]
    assert agent.progress.jobs_found == 1


def test_failed_analysis_only_drops_that_job():
    def _analyze(resume_text, title, employer, description, qualifications):
        if title == "Bad":
            raise ValueError("Invalid AI response - no JSON found")
        return normalize_match_result({"overall_match": 88})

    recorder = _Recorder()
    agent = JobDiscoveryAgent(
        RESUME,
        DiscoveryConfig(search_queries=["q"]),
        search_fn=lambda query, limit, location: [_posting("1", "Bad"), _posting("2", "Good")],
        analyze_fn=_analyze,
        sleep_fn=recorder.sleep,
    )
    jobs = agent.discover()
    assert [job.job["title"] for job in jobs] == ["Good"]
    assert agent.progress.jobs_analyzed == 2
    assert recorder.sleeps == []


def test_transient_analysis_failure_is_retried():
    attempts = {"n": 0}

    def _analyze(resume_text, title, employer, description, qualifications):
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise RuntimeError("Failed to analyze job match: socket hang up")
        return normalize_match_result({"overall_match": 75})

    recorder = _Recorder()
    agent = JobDiscoveryAgent(
        RESUME,
        DiscoveryConfig(search_queries=["q"]),
        search_fn=lambda query, limit, location: [_posting("1", "Role")],
        analyze_fn=_analyze,
        sleep_fn=recorder.sleep,
    )
    jobs = agent.discover()
    assert len(jobs) == 1
    assert attempts["n"] == 2
    assert recorder.sleeps == [1.0]


def test_max_jobs_to_analyze_caps_work():
    postings = [_posting(str(i), f"Role {i}") for i in range(6)]
    analyze = _scores_analyzer({f"Role {i}": 80 for i in range(6)})
    recorder = _Recorder()
    agent = JobDiscoveryAgent(
        RESUME,
        DiscoveryConfig(search_queries=["q"], max_jobs_to_analyze=4, batch_size=2, batch_delay_sec=0.5),
        search_fn=lambda query, limit, location: postings,
        analyze_fn=analyze,
        sleep_fn=recorder.sleep,
    )
    jobs = agent.discover()
    assert len(jobs) == 4
    assert len(analyze.calls) == 4
    assert recorder.sleeps == [0.5]
    assert agent.progress.jobs_found == 6


def test_stop_during_search_settles_in_idle_state():
    holder: dict = {}

    def _search(query, limit, location):
        holder["agent"].stop()
        return [_posting("1", "Role")]

    analyze = _scores_analyzer({"Role": 90})
    recorder = _Recorder()
    agent = JobDiscoveryAgent(
        RESUME,
        DiscoveryConfig(search_queries=["q"]),
        search_fn=_search,
        analyze_fn=analyze,
        sleep_fn=lambda _s: None,
    )
    holder["agent"] = agent
    agent.on_progress(recorder.on_progress)

    assert agent.discover() == []
    assert analyze.calls == []
    assert agent.cancelled is True
    assert agent.progress.status == "idle"
    assert agent.progress.current_phase == "Stopped by user"
    assert recorder.progress[-1].status == "idle"


def test_stop_is_delivered_after_an_in_flight_progress_update():
    entered = Event()
    delivered: list[str] = []

    def _slow_callback(progress) -> None:
        if progress.status == "searching" and not entered.is_set():
            entered.set()
            time.sleep(0.3)
        delivered.append(progress.status)

    agent = JobDiscoveryAgent(
        RESUME,
        DiscoveryConfig(search_queries=["q"]),
        search_fn=lambda query, limit, location: [_posting("1", "Role")],
        analyze_fn=_scores_analyzer({"Role": 90}),
        sleep_fn=lambda _s: None,
    )
    agent.on_progress(_slow_callback)
    worker = Thread(target=agent.discover)
    worker.start()

    assert entered.wait(timeout=5.0)
    agent.stop()
    worker.join(timeout=5.0)

    assert delivered[0] == "searching"
    assert delivered[-1] == "idle"
    assert delivered.count("idle") == 1
    assert agent.progress.status == "idle"


def test_stop_between_batches_keeps_finished_batch():
    holder: dict = {}

    def _analyze(resume_text, title, employer, description, qualifications):
        holder["agent"].stop()
        return normalize_match_result({"overall_match": 95})

    agent = JobDiscoveryAgent(
        RESUME,
        DiscoveryConfig(search_queries=["q"], batch_size=1),
        search_fn=lambda query, limit, location: [_posting("1", "First"), _posting("2", "Second")],
        analyze_fn=_analyze,
        sleep_fn=lambda _s: None,
    )
    holder["agent"] = agent

    jobs = agent.discover()
    assert [job.job["title"] for job in jobs] == ["First"]
    assert agent.progress.status == "idle"


def test_discover_reports_error_state_and_reraises():
    recorder = _Recorder()
    agent = JobDiscoveryAgent(
        RESUME,
        DiscoveryConfig(search_queries=["q"]),
        search_fn=lambda query, limit, location: [_posting("1", "Role")],
        analyze_fn=lambda *args: {"summary": "missing score"},
        sleep_fn=lambda _s: None,
    )
    agent.on_progress(recorder.on_progress)

    with pytest.raises(KeyError):
        agent.discover()

    final = agent.progress
    assert final.status == "error"
    assert final.current_phase == "Discovery failed"
    assert final.error
    assert recorder.progress[-1].status == "error"
    assert all(p.status != "complete" for p in recorder.progress)


def test_cover_letters_are_generated_and_fall_back_to_empty():
    def _completion(system, user, *, temperature, max_tokens):
        if "Title: Broken" in user:
            raise ValueError("model refused")
        return "  Dear hiring team, ...  "

    agent = JobDiscoveryAgent(
        RESUME,
        DiscoveryConfig(search_queries=["q"], generate_cover_letters=True),
        search_fn=lambda query, limit, location: [_posting("1", "Role"), _posting("2", "Broken")],
        analyze_fn=_scores_analyzer({"Role": 80, "Broken": 80}),
        completion_fn=_completion,
        sleep_fn=lambda _s: None,
    )
    jobs = {job.job["title"]: job for job in agent.discover()}
    assert jobs["Role"].cover_letter == "Dear hiring team, ..."
    assert jobs["Broken"].cover_letter == ""


def test_search_queries_are_extracted_from_resume_when_not_given():
    searched: list[str] = []

    def _search(query, limit, location):
        searched.append(query)
        return []

    agent = JobDiscoveryAgent(
        RESUME,
        DiscoveryConfig(),
        search_fn=_search,
        analyze_fn=_scores_analyzer({}),
        completion_fn=lambda system, user, **kw: 'Sure: ["Data Engineer", "Platform Engineer"]',
        sleep_fn=lambda _s: None,
    )
    assert agent.discover() == []
    assert sorted(searched) == ["Data Engineer", "Platform Engineer"]
    assert agent.progress.status == "complete"


def test_query_extraction_falls_back_to_defaults():
    agent = JobDiscoveryAgent(RESUME, completion_fn=lambda system, user, **kw: "no idea")
    assert agent._extract_search_queries() == FALLBACK_SEARCH_QUERIES

    def _boom(*_args, **_kwargs):
        raise RuntimeError("OpenRouter API key missing.")

    agent = JobDiscoveryAgent(RESUME, completion_fn=_boom)
    assert agent._extract_search_queries() == FALLBACK_SEARCH_QUERIES


def test_with_retry_policy():
    delays: list[float] = []
    calls = {"n": 0}

    def _always_network():
        calls["n"] += 1
        raise ConnectionError("ECONNRESET by peer")

    with pytest.raises(ConnectionError):
        with_retry(_always_network, sleep_fn=delays.append)
    assert calls["n"] == 3
    assert delays == [1.0, 2.0]

    def _fatal():
        calls["n"] += 1
        raise ValueError("bad json")

    calls["n"] = 0
    with pytest.raises(ValueError):
        with_retry(_fatal, sleep_fn=delays.append)
    assert calls["n"] == 1


def test_helpers():
    assert is_transient_error(RuntimeError("Request Timeout"))
    assert is_transient_error(OSError("network unreachable"))
    assert not is_transient_error(ValueError("invalid"))
    assert dedupe_key({"title": "Data Engineer", "employer": "ACME"}) == dedupe_key({"title": "data engineer", "employer": "Acme"})

    jobs = [
        DiscoveredJob(job={}, match_result={"overall_match": 70}),
        DiscoveredJob(job={}, match_result={"overall_match": 71}),
    ]
    assert _average_score(jobs) == 71
    assert _average_score([]) == 0


def test_get_discovery_settings_merges_config_and_overrides():
    cfg = get_discovery_settings(
        {"discovery": {"min_match_score": 60, "batch_size": 3, "generate_cover_letters": "yes"}},
        max_jobs_to_analyze=5,
        location=None,
    )
    assert cfg.min_match_score == 60
    assert cfg.batch_size == 3
    assert cfg.generate_cover_letters is False
    assert cfg.max_jobs_to_analyze == 5
    assert cfg.location is None

    with pytest.raises(ValueError):
        get_discovery_settings({}, min_match_score=150)


def test_discover_jobs_helper_forwards_progress():
    seen: list[str] = []
    jobs = discover_jobs(
        RESUME,
        DiscoveryConfig(search_queries=["q"]),
        on_progress=lambda progress: seen.append(progress.status),
        search_fn=lambda query, limit, location: [_posting("1", "Role")],
        analyze_fn=_scores_analyzer({"Role": 99}),
        sleep_fn=lambda _s: None,
    )
    assert len(jobs) == 1
    assert seen[0] == "searching"
    assert seen[-1] == "complete"
