import requests

from _pr_watch_agent.stage_2_gather_pr_context import PRContext, gather_pr_context
from _pr_watch_agent.stage_3_build_review_prompt import (
    MAX_DIFF_CHARS,
    MAX_PROMPT_BYTES,
    build_review_prompt,
    build_validation_prompt,
)
from conftest import FakeResponse


def test_gather_pr_context_each_part_fails_soft(make_gh):
    gh, _ = make_gh({
        "GET pulls/7.diff": [requests.ConnectionError("boom")],
        "GET issues/7/comments": [FakeResponse([{"body": "hi", "user": {"login": "bob"}}])],
        "GET pulls/7/commits": [FakeResponse({}, status_code=500)],
        "GET pulls/7/files": [FakeResponse([{"filename": "app.py"}, {"status": "removed"}])],
    })

    context = gather_pr_context(gh, 7)

    assert context.diff == ""
    assert context.comments == [{"body": "hi", "user": {"login": "bob"}}]
    assert context.commits == []
    assert context.file_names == ["app.py"]


def _context(n_comments=8, n_commits=8, diff="diff --git a/app.py b/app.py"):
    return PRContext(
        diff=diff,
        comments=[
            {"body": f"comment-{i}", "user": {"login": "bob"}, "created_at": f"2026-01-0{i % 9 + 1}"}
            for i in range(n_comments)
        ],
        commits=[
            {"sha": f"{i:07d}abcdef", "commit": {"message": f"commit-{i}\n\nbody"}}
            for i in range(n_commits)
        ],
        files=[{"filename": "app.py", "status": "modified", "additions": 3, "deletions": 1}],
    )


def test_review_prompt_keeps_only_last_five_comments_and_commits():
    prompt = build_review_prompt("Must add /health.", _context(), "acme", "widgets", 7)

    for i in range(3):
        assert f"comment-{i}\n" not in prompt
        assert f"commit-{i}\n" not in prompt
    for i in range(3, 8):
        assert f"comment-{i}" in prompt
        assert f"commit-{i}" in prompt
    assert "body" not in prompt.split("## RECENT COMMITS")[1].split("## RECENT COMMENTS")[0]


def test_review_prompt_embeds_spec_files_and_schema():
    prompt = build_review_prompt("Must add /health.", _context(), "acme", "widgets", 7, worker_login="copilot")

    assert "acme/widgets#7" in prompt
    assert "<spec>\nMust add /health.\n</spec>" in prompt
    assert "- app.py (modified, +3/-1)" in prompt
    assert '"recommendation": "<continue | fix | escalate>"' in prompt
    assert "@copilot" in prompt


def test_review_prompt_without_spec_or_context():
    prompt = build_review_prompt("", PRContext(), "acme", "widgets", 7)

    assert "No spec file was provided" in prompt
    assert "(diff unavailable)" in prompt
    assert "(no comments)" in prompt
    assert "(no commits)" in prompt


def test_review_prompt_truncates_large_diff():
    prompt = build_review_prompt("", _context(diff="x" * (MAX_DIFF_CHARS + 50)), "acme", "widgets", 7)
    assert "[truncated 50 characters]" in prompt


def test_validation_prompt_names_drift_file_and_sections():
    prompt = build_validation_prompt("spec", _context(), "acme", "widgets", 7, drift_path="/tmp/drift.md")

    assert "`/tmp/drift.md`" in prompt
    for section in ("Context Drift", "Spec Refinements", "Validation Results",
                    "Manual Verification Needed", "Fixes Applied"):
        assert f'"{section}"' in prompt


def test_huge_context_still_fits_one_argument():
    context = PRContext(
        diff=("+ " + "\U0001F600" * 8 + "\n") * 20000,
        comments=[{"body": "ü" * 5000, "user": {"login": "bob"}} for _ in range(5)],
        commits=[{"sha": "abc1234", "commit": {"message": "x" * 5000}}],
        files=[{"filename": f"src/module_{i}.py", "status": "added", "additions": 10, "deletions": 0}
               for i in range(500)],
    )

    for prompt in (
        build_review_prompt("spec line\n" * 8000, context, "acme", "widgets", 7),
        build_validation_prompt("spec line\n" * 8000, context, "acme", "widgets", 7, drift_path="/tmp/d.md"),
    ):
        assert len(prompt.encode("utf-8")) <= MAX_PROMPT_BYTES
        assert "bytes]" in prompt.split("## DIFF")[1]
        assert "## CHANGED FILES" in prompt
        assert '"recommendation": "<continue | fix | escalate>"' in prompt
