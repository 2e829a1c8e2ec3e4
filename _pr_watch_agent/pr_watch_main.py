"""
PR Watch Agent — main loop

PURPOSE:
    Follow one pull request until it is no longer open. Every `interval`
    seconds (no sleep before the first check):

      1. Read the PR state. Not open -> stop.
      2. Read the timeline and count worker start/finish markers (Stage 1).
      3. If the worker is done and this finished-count has not been handled
         yet, run one review cycle (Stages 2-5).
      4. Record the finished-count as handled, whatever the cycle's outcome.

    Step 4 makes each completion trigger at most once per process. A cycle
    that fails (agent crash, unparsable output, API errors) is not retried
    until the worker finishes another session.

    Loop state lives in an explicit PollerContext passed through each
    iteration. Nothing is persisted; a restart starts from zero and
    re-reviews the latest completion once.

USAGE:
    pr-watch-agent --owner acme --repo widgets --pr 42 --spec-file SPEC.md
    pr-watch-agent --owner acme --repo widgets --pr 42 --mode validate \\
        --spec-file SPEC.md --drift-file SPEC_DRIFT.md --escalation-user alice
"""

import logging
import sys
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from .config import ConfigError, WatchConfig, load_config
from .drift_report import (
    ensure_drift_file,
    format_drift_summary,
    read_drift_sections,
)
from .github_api import GitHubAPI
from .stage_1_poll_timeline import classify_work_status, fetch_pr_state, fetch_timeline
from .stage_2_gather_pr_context import gather_pr_context
from .stage_3_build_review_prompt import build_review_prompt, build_validation_prompt
from .stage_4_run_agent import ReviewSchemaError, parse_review_result, run_agent
from .stage_5_decide_and_act import Decision, act_on_decision, decide

logger = logging.getLogger(__name__)


@dataclass
class PollerContext:
    last_handled_finished_count: int = 0
    first_check: bool = True
    cycles_triggered: int = 0

    def mark_handled(self, finished_count: int):
        self.last_handled_finished_count = max(self.last_handled_finished_count, finished_count)


def run_review_cycle(gh: GitHubAPI, config: WatchConfig) -> dict:
    """
    One full review: gather context, prompt, run the agent, decide, act.

    Returns:
        dict with keys 'decision' (Decision), 'result' (act_on_decision output),
        'agent_returncode' (int) and, in validate mode, 'drift_comment_posted'.
    """
    pr_number = config.pr_number
    context = gather_pr_context(gh, pr_number)

    if config.mode == "validate":
        ensure_drift_file(config.drift_file, pr_number)
        prompt = build_validation_prompt(
            config.spec_text, context, config.owner, config.repo, pr_number,
            drift_path=str(config.drift_file), worker_login=config.worker_login,
        )
    else:
        prompt = build_review_prompt(
            config.spec_text, context, config.owner, config.repo, pr_number,
            worker_login=config.worker_login,
        )

    run = run_agent(
        prompt,
        agent_command=config.agent_command,
        approve_flag=config.agent_approve_flag,
        timeout=config.agent_timeout,
        workdir=config.workdir,
    )

    try:
        review = parse_review_result(run.output)
    except ReviewSchemaError as e:
        logger.warning("PR #%s: agent review rejected: %s", pr_number, e)
        review = None
    if review is None and config.mode == "review":
        logger.warning("PR #%s: no review JSON in agent output", pr_number)

    outcome = {"agent_returncode": run.returncode}

    if config.mode == "validate":
        outcome["drift_comment_posted"] = _post_drift_summary(gh, config)
        if review is None:
            decision = Decision("wait", "Validation recorded in the drift file.")
            outcome["decision"] = decision
            outcome["result"] = {"success": True, "action_taken": "wait", "errors": []}
            return outcome

    decision = decide(review)
    logger.info("PR #%s: decision %s", pr_number, decision.action)
    outcome["decision"] = decision
    outcome["result"] = act_on_decision(
        gh, pr_number, decision, review,
        changed_files=context.file_names,
        worker_login=config.worker_login,
        escalation_user=config.escalation_user,
    )
    return outcome


def _post_drift_summary(gh: GitHubAPI, config: WatchConfig) -> bool:
    try:
        sections = read_drift_sections(config.drift_file)
    except OSError as e:
        logger.warning("Could not read drift file %s: %s", config.drift_file, e)
        return False
    body = format_drift_summary(sections, config.pr_number, config.escalation_user)
    try:
        gh.post_comment(config.pr_number, body)
    except requests.RequestException as e:
        logger.warning("PR #%s: failed to post drift summary: %s", config.pr_number, e)
        return False
    return True


def poll_once(
    gh: GitHubAPI,
    config: WatchConfig,
    ctx: PollerContext,
    review_cycle: Optional[Callable] = None,
) -> bool:
    """
    One poll iteration.

    Returns:
        False when the PR is no longer open (stop polling), True otherwise.
    """
    review_cycle = review_cycle or run_review_cycle
    pr_number = config.pr_number
    state = fetch_pr_state(gh, pr_number)
    if state is not None and state != "open":
        logger.info("PR #%s is %s; stopping", pr_number, state)
        return False

    events = fetch_timeline(gh, pr_number)
    status = classify_work_status(events, config.started_event, config.finished_event)
    logger.debug(
        "PR #%s: started=%d finished=%d done=%s handled=%d",
        pr_number, status.started_count, status.finished_count,
        status.is_done, ctx.last_handled_finished_count,
    )

    if status.is_done and status.finished_count > ctx.last_handled_finished_count:
        logger.info(
            "PR #%s: worker session %d finished; starting review",
            pr_number, status.finished_count,
        )
        ctx.cycles_triggered += 1
        try:
            review_cycle(gh, config)
        except Exception:
            logger.exception("PR #%s: review cycle failed", pr_number)
        finally:
            ctx.mark_handled(status.finished_count)
    elif ctx.first_check and not status.is_done:
        logger.info(
            "PR #%s: worker active or not started (started=%d finished=%d)",
            pr_number, status.started_count, status.finished_count,
        )

    ctx.first_check = False
    return True


def watch_pull_request(
    gh: GitHubAPI,
    config: WatchConfig,
    sleep: Callable[[float], None] = time.sleep,
    ctx: Optional[PollerContext] = None,
) -> PollerContext:
    """Poll until the PR leaves the open state. Returns the final context."""
    ctx = ctx or PollerContext()
    logger.info(
        "Watching %s/%s#%s every %ss (mode=%s)",
        config.owner, config.repo, config.pr_number, config.interval, config.mode,
    )
    while True:
        if not ctx.first_check:
            sleep(config.interval)
        if not poll_once(gh, config, ctx):
            break
    logger.info("Done: %d review cycle(s) triggered", ctx.cycles_triggered)
    return ctx


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def main(argv: Optional[list] = None) -> int:
    try:
        config = load_config(argv)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    setup_logging(config.verbose)
    gh = GitHubAPI(config.owner, config.repo, config.token, api_url=config.api_url)
    try:
        watch_pull_request(gh, config)
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
