import json
import subprocess
from pathlib import Path

import pytest

from _pr_watch_agent import stage_4_run_agent
from _pr_watch_agent.stage_2_gather_pr_context import PRContext
from _pr_watch_agent.stage_3_build_review_prompt import build_review_prompt
from _pr_watch_agent.stage_4_run_agent import (
    PROMPT_FILE_ENV,
    ReviewSchemaError,
    extract_review_json,
    parse_review_result,
    run_agent,
)


def _review(**overrides):
    data = {
        "overall_status": "needs_work",
        "spec_compliance": {"score": 80, "issues": ["no tests"], "missing_requirements": []},
        "code_quality": {"score": 75, "issues": []},
        "security": {"score": 70, "vulnerabilities": [], "concerns": ["token in log"]},
        "recommendation": "fix",
        "feedback": "Add tests.",
        "escalation_reason": "",
    }
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# extraction
# ---------------------------------------------------------------------------


def test_extracts_object_surrounded_by_noise():
    raw = 'noise {"recommendation":"fix","feedback":"add tests"} trailing'
    assert extract_review_json(raw) == {"recommendation": "fix", "feedback": "add tests"}

    review = parse_review_result(raw)
    assert review.recommendation == "fix"
    assert review.feedback == "add tests"


def test_no_brace_means_no_result():
    assert extract_review_json("I looked at the PR and it is fine.") is None
    assert parse_review_result("I looked at the PR and it is fine.") is None
    assert parse_review_result("") is None


def test_brace_span_is_single_line():
    raw = "thinking {\nnot json on this line\n}\nresult: " + json.dumps(_review())
    review = parse_review_result(raw)
    assert review.recommendation == "fix"


def test_invalid_json_span_yields_none():
    assert extract_review_json("answer: {recommendation: fix}") is None


def test_fenced_json_block_is_used_when_no_line_holds_the_review():
    raw = "Summary {not json}\n```json\n" + json.dumps(_review(), indent=2) + "\n```\nbye"
    data = extract_review_json(raw)
    assert data["recommendation"] == "fix"
    assert data["spec_compliance"]["score"] == 80


def test_quoted_code_block_does_not_hide_the_review():
    raw = (
        "The diff touches this file:\n"
        "```json\n{\"name\": \"widgets\", \"version\": \"1.0.0\"}\n```\n"
        + json.dumps(_review())
    )

    review = parse_review_result(raw)

    assert review.recommendation == "fix"
    assert review.scores() == (80.0, 75.0, 70.0)


def test_pretty_printed_review_is_not_mistaken_for_its_sections():
    raw = "```json\n" + json.dumps(_review(), indent=2) + "\n```"
    assert extract_review_json(raw)["recommendation"] == "fix"


def test_non_review_object_alone_still_reports_schema_problem():
    with pytest.raises(ReviewSchemaError):
        parse_review_result('package: {"name": "widgets"}')


def test_object_inside_array_is_found_but_bare_array_is_not():
    assert extract_review_json('[{"recommendation": "fix"}]') == {"recommendation": "fix"}
    assert extract_review_json('result: ["fix"]') is None


# ---------------------------------------------------------------------------
# schema
# ---------------------------------------------------------------------------


def test_full_review_parses_into_dataclass():
    review = parse_review_result(json.dumps(_review()))

    assert review.overall_status == "needs_work"
    assert review.scores() == (80.0, 75.0, 70.0)
    assert review.security["concerns"] == ["token in log"]
    assert review.raw["feedback"] == "Add tests."


def test_unknown_recommendation_is_dropped_when_scores_exist():
    review = parse_review_result(json.dumps(_review(recommendation="ship it")))
    assert review.recommendation is None
    assert review.scores() == (80.0, 75.0, 70.0)


def test_recommendation_is_normalised():
    review = parse_review_result(json.dumps({"recommendation": " Escalate "}))
    assert review.recommendation == "escalate"


@pytest.mark.parametrize(
    "data, fragment",
    [
        (_review(security="bad"), "security (must be an object)"),
        (_review(code_quality={"score": "high"}), "code_quality.score (must be a number)"),
        (_review(code_quality={"score": 140}), "code_quality.score (must be 0-100)"),
        (_review(spec_compliance={"score": 80, "issues": "none"}), "spec_compliance.issues (must be a list)"),
        (_review(feedback=["x"]), "feedback (must be a string)"),
        ({"overall_status": "pass"}, "needs a recommendation"),
        ({"recommendation": "maybe", "security": {"score": 90}}, "needs a recommendation"),
    ],
)
def test_schema_violations_raise(data, fragment):
    with pytest.raises(ReviewSchemaError) as excinfo:
        parse_review_result("out: " + json.dumps(data))
    assert fragment in str(excinfo.value)


# ---------------------------------------------------------------------------
# invocation
# ---------------------------------------------------------------------------


class _Completed:
    def __init__(self, stdout, returncode=0):
        self.stdout = stdout
        self.returncode = returncode


def test_run_agent_builds_argv_and_cleans_up(monkeypatch):
    seen = {}

    def fake_run(argv, cwd, env, stdin, stdout, stderr, timeout):
        prompt_file = Path(env[PROMPT_FILE_ENV])
        seen.update(argv=argv, cwd=cwd, timeout=timeout, stderr=stderr,
                    prompt_file=prompt_file, prompt_text=prompt_file.read_text(encoding="utf-8"))
        return _Completed(b'done {"recommendation":"continue"}\n')

    monkeypatch.setattr(stage_4_run_agent.subprocess, "run", fake_run)

    run = run_agent("review this", agent_command="copilot", approve_flag="--allow-all-tools")

    assert run.ok
    assert run.output == 'done {"recommendation":"continue"}\n'
    assert seen["argv"] == ["copilot", "-p", "review this", "--allow-all-tools"]
    assert seen["timeout"] is None
    assert seen["stderr"] == subprocess.STDOUT
    assert seen["prompt_text"] == "review this"
    assert seen["cwd"] == str(seen["prompt_file"].parent)
    assert not seen["prompt_file"].exists()
    assert not seen["prompt_file"].parent.exists()


def test_run_agent_uses_workdir_and_omits_empty_flag(monkeypatch, tmp_path):
    seen = {}

    def fake_run(argv, cwd, **kwargs):
        seen.update(argv=argv, cwd=cwd, timeout=kwargs["timeout"])
        return _Completed(b"", returncode=3)

    monkeypatch.setattr(stage_4_run_agent.subprocess, "run", fake_run)

    run = run_agent("p", agent_command="agent", approve_flag="", timeout=60, workdir=tmp_path)

    assert not run.ok
    assert run.returncode == 3
    assert seen == {"argv": ["agent", "-p", "p"], "cwd": str(tmp_path), "timeout": 60}


def test_run_agent_timeout_keeps_partial_output(monkeypatch):
    def fake_run(argv, **kwargs):
        raise subprocess.TimeoutExpired(argv, 5, output=b"partial")

    monkeypatch.setattr(stage_4_run_agent.subprocess, "run", fake_run)

    run = run_agent("p", timeout=5)

    assert run.timed_out
    assert run.output == "partial"
    assert not run.ok


def test_run_agent_missing_executable(monkeypatch):
    def fake_run(argv, **kwargs):
        raise FileNotFoundError(argv[0])

    monkeypatch.setattr(stage_4_run_agent.subprocess, "run", fake_run)

    run = run_agent("p", agent_command="no-such-agent")

    assert run.returncode == 127
    assert run.output == ""


def test_run_agent_start_failure_is_reported_not_raised(monkeypatch):
    def fake_run(argv, **kwargs):
        raise OSError(7, "Argument list too long")

    monkeypatch.setattr(stage_4_run_agent.subprocess, "run", fake_run)

    run = run_agent("p" * 200000)

    assert run.returncode == 126
    assert run.output == ""
    assert not run.ok


def test_built_prompt_fits_in_a_single_argv_element(monkeypatch):
    context = PRContext(
        diff=("+" + "\u00e9" * 60 + "\n") * 5000,
        files=[{"filename": f"pkg/file_{i}.py"} for i in range(500)],
    )
    prompt = build_review_prompt("spec line\n" * 8000, context, "acme", "widgets", 7)
    seen = {}

    def fake_run(argv, **kwargs):
        seen["argv"] = argv
        return _Completed(b"")

    monkeypatch.setattr(stage_4_run_agent.subprocess, "run", fake_run)

    run_agent(prompt)

    # MAX_ARG_STRLEN on Linux
    assert len(seen["argv"][2].encode("utf-8")) < 128 * 1024
