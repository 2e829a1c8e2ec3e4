"""
Stage 2: Gather PR Context — PR Watch Agent

PURPOSE:
    Collect what the reviewing agent needs to see: the unified diff, the
    conversation comments, the commits and the changed-files list.

    Each of the four reads is independent. One failing (rate limit, 5xx,
    a diff too large for the API) leaves that part empty and the rest intact;
    the review still runs on partial context.

CALLED BY:
    pr_watch_main.py — at the start of every review cycle.
"""

import logging
from dataclasses import dataclass, field

import requests

from .github_api import GitHubAPI

logger = logging.getLogger(__name__)


@dataclass
class PRContext:
    diff: str = ""
    comments: list = field(default_factory=list)
    commits: list = field(default_factory=list)
    files: list = field(default_factory=list)

    @property
    def file_names(self) -> list:
        return [f.get("filename", "") for f in self.files if f.get("filename")]


def gather_pr_context(gh: GitHubAPI, pr_number: int) -> PRContext:
    context = PRContext()

    try:
        context.diff = gh.get_pull_request_diff(pr_number)
    except requests.RequestException as e:
        logger.warning("Could not fetch diff for PR #%s: %s", pr_number, e)

    try:
        context.comments = gh.list_issue_comments(pr_number)
    except requests.RequestException as e:
        logger.warning("Could not fetch comments for PR #%s: %s", pr_number, e)

    try:
        context.commits = gh.list_commits(pr_number)
    except requests.RequestException as e:
        logger.warning("Could not fetch commits for PR #%s: %s", pr_number, e)

    try:
        context.files = gh.list_files(pr_number)
    except requests.RequestException as e:
        logger.warning("Could not fetch changed files for PR #%s: %s", pr_number, e)

    logger.info(
        "PR #%s context: %d diff chars, %d comments, %d commits, %d files",
        pr_number, len(context.diff), len(context.comments),
        len(context.commits), len(context.files),
    )
    return context
