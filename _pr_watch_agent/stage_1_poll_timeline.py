"""
Stage 1: Poll Timeline — PR Watch Agent

PURPOSE:
    Decide whether the external worker's latest session on the PR is finished.
    The worker leaves a pair of timeline events per session (by default
    `copilot_work_started` / `copilot_work_finished`). We count both kinds over
    the whole timeline:

        is_done  <=>  started == finished and finished > 0

    This is a balance check, not per-session correlation. It cannot tell
    "no session yet" from "all sessions closed" except through finished > 0,
    and duplicated or replayed events from the API skew the counts. That is a
    known limitation and is left as is.

CALLED BY:
    pr_watch_main.py — once per poll iteration.

DEPENDS ON:
    - GitHub REST API: issue timeline and PR detail endpoints

FAILURE MODE:
    Soft. A failed request logs a warning; the timeline keeps whatever pages
    had arrived and the PR state becomes None. The next poll simply tries again.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from .github_api import GitHubAPI

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkStatus:
    started_count: int
    finished_count: int

    @property
    def is_done(self) -> bool:
        return self.started_count == self.finished_count and self.finished_count > 0


def fetch_timeline(gh: GitHubAPI, pr_number: int) -> list:
    """
    Fetch every timeline event of the PR, pages concatenated in response order.

    Returns the events accumulated so far if a request fails part-way.
    """
    events = []
    try:
        for batch in gh.iter_pages(f"issues/{pr_number}/timeline"):
            events.extend(batch)
    except requests.RequestException as e:
        logger.warning(
            "Timeline fetch for PR #%s failed after %d events: %s",
            pr_number, len(events), e,
        )
    return events


def classify_work_status(
    events: list,
    started_kind: str = "copilot_work_started",
    finished_kind: str = "copilot_work_finished",
) -> WorkStatus:
    """Count start/finish markers in a timeline."""
    started = 0
    finished = 0
    for event in events:
        kind = event.get("event") if isinstance(event, dict) else None
        if kind == started_kind:
            started += 1
        elif kind == finished_kind:
            finished += 1
    return WorkStatus(started_count=started, finished_count=finished)


def fetch_pr_state(gh: GitHubAPI, pr_number: int) -> Optional[str]:
    """Return the PR state ("open" / "closed"), or None if it could not be read."""
    try:
        pr = gh.get_pull_request(pr_number)
    except requests.RequestException as e:
        logger.warning("Could not fetch PR #%s: %s", pr_number, e)
        return None
    return pr.get("state")
