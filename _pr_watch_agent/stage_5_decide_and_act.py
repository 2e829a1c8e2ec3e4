"""
Stage 5: Decide & Act — PR Watch Agent

PURPOSE:
    Turn the agent's ReviewResult into one of four actions and carry it out on
    the PR:

    IF CONTINUE:
      1. Post an approval comment with the three scores
    IF FIX:
      1. Post a comment mentioning the coding worker (@copilot) with the
         agent's feedback and the issues it listed
    IF ESCALATE:
      1. Post a comment mentioning the human owner with the reason and the
         changed files
      2. Request a review from that owner
    IF WAIT (no usable review):
      1. Nothing on GitHub, log only

    The action comes straight from "recommendation" when it is one of
    continue/fix/escalate. Otherwise the three scores are averaged:

        avg >= 90 -> continue
        avg >= 70 -> fix
        else      -> escalate

CALLED BY:
    pr_watch_main.py — after Stage 4 parsed the agent output.

FAILURE MODE:
    A failed comment or review request is logged and added to "errors". There
    is no retry and no rollback; a comment already posted stays posted.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from .github_api import GitHubAPI
from .stage_4_run_agent import ReviewResult

logger = logging.getLogger(__name__)

CONTINUE_THRESHOLD = 90.0
FIX_THRESHOLD = 70.0
MAX_LISTED_ITEMS = 10
MARKER = "<!-- pr-watch-agent -->"


@dataclass
class Decision:
    action: str
    message: str
    average_score: Optional[float] = None


def decide(review: Optional[ReviewResult]) -> Decision:
    """Map a ReviewResult (or its absence) to an action."""
    if review is None:
        return Decision("wait", "No usable review from the agent; will retry on the next completion.")

    if review.recommendation == "continue":
        return Decision("continue", review.feedback or "Work looks good; continuing.")
    if review.recommendation == "fix":
        return Decision("fix", review.feedback or "Fixes are needed.")
    if review.recommendation == "escalate":
        return Decision(
            "escalate",
            review.escalation_reason or review.feedback or "Human review required.",
        )

    scores = review.scores()
    if scores is None:
        return Decision("wait", "Review has neither a recommendation nor all three scores.")
    average = sum(scores) / len(scores)
    if average >= CONTINUE_THRESHOLD:
        action, message = "continue", review.feedback or "Work looks good; continuing."
    elif average >= FIX_THRESHOLD:
        action, message = "fix", review.feedback or "Fixes are needed."
    else:
        action = "escalate"
        message = review.escalation_reason or review.feedback or "Scores are below the fix threshold."
    return Decision(action, message, average_score=round(average, 1))


def act_on_decision(
    gh: GitHubAPI,
    pr_number: int,
    decision: Decision,
    review: Optional[ReviewResult],
    changed_files: Optional[list] = None,
    worker_login: str = "copilot",
    escalation_user: str = "",
) -> dict:
    """
    Execute the side effects for a decision.

    Returns:
        dict with keys:
            - 'success' (bool): Every write for this action succeeded
            - 'action_taken' (str): continue / fix / escalate / wait
            - 'errors' (list[str]): Write failures, already logged
    """
    errors = []
    changed_files = changed_files or []

    if decision.action == "wait":
        logger.info("PR #%s: waiting (%s)", pr_number, decision.message)
        return {"success": True, "action_taken": "wait", "errors": errors}

    if decision.action == "continue":
        body = _format_continue_comment(decision, review)
        _post(gh, pr_number, body, errors)

    elif decision.action == "fix":
        body = _format_fix_comment(decision, review, worker_login)
        _post(gh, pr_number, body, errors)

    elif decision.action == "escalate":
        body = _format_escalate_comment(decision, review, changed_files, escalation_user)
        _post(gh, pr_number, body, errors)
        if escalation_user:
            try:
                gh.request_reviewers(pr_number, [escalation_user])
            except requests.RequestException as e:
                msg = f"Failed to request review from {escalation_user}: {e}"
                logger.warning("PR #%s: %s", pr_number, msg)
                errors.append(msg)
        else:
            logger.warning("PR #%s: escalation without an escalation user; no review requested", pr_number)

    else:
        raise ValueError(f"Unknown action: {decision.action}")

    logger.info("PR #%s: action %s (%d errors)", pr_number, decision.action, len(errors))
    return {"success": not errors, "action_taken": decision.action, "errors": errors}


# ---------------------------------------------------------------------------
# PRIVATE HELPER FUNCTIONS
# ---------------------------------------------------------------------------


def _post(gh: GitHubAPI, pr_number: int, body: str, errors: list):
    try:
        gh.post_comment(pr_number, body)
    except requests.RequestException as e:
        msg = f"Failed to post comment: {e}"
        logger.warning("PR #%s: %s", pr_number, msg)
        errors.append(msg)


def _format_scores(review: Optional[ReviewResult], decision: Decision) -> list:
    if review is None:
        return []
    lines = ["| Dimension | Score |", "|-----------|-------|"]
    for label, section in (
        ("Spec compliance", review.spec_compliance),
        ("Code quality", review.code_quality),
        ("Security", review.security),
    ):
        score = section.get("score")
        lines.append(f"| {label} | {score if score is not None else '?'} |")
    if decision.average_score is not None:
        lines.append(f"| **Average** | {decision.average_score} |")
    lines.append("")
    return lines


def _format_list(title: str, items: list) -> list:
    if not items:
        return []
    lines = [f"**{title}:**"]
    for item in items[:MAX_LISTED_ITEMS]:
        lines.append(f"- {item}")
    if len(items) > MAX_LISTED_ITEMS:
        lines.append(f"- ... and {len(items) - MAX_LISTED_ITEMS} more")
    lines.append("")
    return lines


def _format_continue_comment(decision: Decision, review: Optional[ReviewResult]) -> str:
    lines = [MARKER, "## Automated review: approved", ""]
    lines += _format_scores(review, decision)
    lines += [decision.message, ""]
    return "\n".join(lines).rstrip() + "\n"


def _format_fix_comment(
    decision: Decision, review: Optional[ReviewResult], worker_login: str
) -> str:
    lines = [MARKER, "## Automated review: fixes requested", ""]
    lines += [f"@{worker_login} please address the following:", "", decision.message, ""]
    if review is not None:
        lines += _format_list("Spec compliance issues", review.spec_compliance.get("issues") or [])
        lines += _format_list("Missing requirements", review.spec_compliance.get("missing_requirements") or [])
        lines += _format_list("Code quality issues", review.code_quality.get("issues") or [])
        lines += _format_list("Security vulnerabilities", review.security.get("vulnerabilities") or [])
    lines += _format_scores(review, decision)
    return "\n".join(lines).rstrip() + "\n"


def _format_escalate_comment(
    decision: Decision,
    review: Optional[ReviewResult],
    changed_files: list,
    escalation_user: str,
) -> str:
    mention = f"@{escalation_user} " if escalation_user else ""
    lines = [MARKER, "## Automated review: escalated to a human", ""]
    lines += [f"{mention}this PR needs human review.", "", f"**Reason:** {decision.message}", ""]
    if review is not None:
        lines += _format_list("Security concerns", review.security.get("concerns") or [])
        lines += _format_list("Security vulnerabilities", review.security.get("vulnerabilities") or [])
    lines += _format_scores(review, decision)
    lines += _format_list("Changed files", changed_files)
    return "\n".join(lines).rstrip() + "\n"
