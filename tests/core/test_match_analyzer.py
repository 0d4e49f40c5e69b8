import pytest

from src.autoapply.core.match_analyzer import (
    analyze_job_match,
    build_match_prompt,
    match_level_for,
    normalize_match_result,
)


def test_match_level_thresholds():
    assert match_level_for(85) == "excellent"
    assert match_level_for(84) == "good"
    assert match_level_for(70) == "good"
    assert match_level_for(50) == "fair"
    assert match_level_for(49) == "poor"


def test_normalize_clamps_and_fills_defaults():
    out = normalize_match_result({"overall_match": 140, "matched_skills": "Python", "match_level": "amazing"})
    assert out["overall_match"] == 100
    assert out["match_level"] == "excellent"
    assert out["matched_skills"] == []
    assert out["experience_match"]["score"] == 50
    assert out["qualification_match"] == {"score": 50, "met": [], "not_met": []}
    assert out["summary"] == "100% match for this position."

    assert normalize_match_result({"overall_match": "n/a"})["overall_match"] == 0


def test_build_match_prompt_lists_qualifications():
    prompt = build_match_prompt("my resume", "SRE", "Hooli", "Keep it up", ["Linux", "Go"])
    assert "Title: SRE" in prompt
    assert "- Linux" in prompt
    assert "my resume" in prompt


def test_analyze_job_match_extracts_json_from_response():
    captured: dict = {}

    def _completion(system, user, *, temperature, max_tokens):
        captured["temperature"] = temperature
        return 'Here you go:\n{"overall_match": 77, "matched_skills": ["Python"], "summary": "Solid fit."}'

    out = analyze_job_match("resume", "Backend", "Acme", "desc", completion_fn=_completion)
    assert out["overall_match"] == 77
    assert out["match_level"] == "good"
    assert out["matched_skills"] == ["Python"]
    assert out["summary"] == "Solid fit."
    assert captured["temperature"] == 0.3


def test_analyze_job_match_wraps_failures():
    with pytest.raises(RuntimeError, match="Failed to analyze job match: Invalid AI response"):
        analyze_job_match("resume", "Backend", "Acme", "desc", completion_fn=lambda *a, **k: "no json here")

    def _network(*_args, **_kwargs):
        raise RuntimeError("socket hang up")

    with pytest.raises(RuntimeError, match="socket hang up"):
        analyze_job_match("resume", "Backend", "Acme", "desc", completion_fn=_network)
