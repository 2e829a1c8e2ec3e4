"""
GitHub REST API wrapper — PR Watch Agent

PURPOSE:
    Thin wrapper around the GitHub REST endpoints the watcher needs: PR detail,
    PR diff, the issue timeline, comments, commits, changed files, comment
    creation and review requests.

    Every method raises on failure (requests.HTTPError / RequestException).
    Whether a failure is fatal or swallowed is decided by the stage that calls
    it, never here.

PAGINATION:
    List endpoints are read with per_page=100 and the `Link: rel="next"`
    header. iter_pages() yields one page at a time so callers can keep the
    pages that arrived before a failure.
"""

from typing import Iterator, Optional

import requests

DEFAULT_API_URL = "https://api.github.com"
PAGE_SIZE = 100
REQUEST_TIMEOUT = 30
DIFF_MEDIA_TYPE = "application/vnd.github.v3.diff"


class GitHubAPI:
    """
    REST client bound to one repository.

    The token needs:
    - pull-requests:read (PR detail, diff, commits, files, timeline)
    - issues:write (post comments)
    - pull-requests:write (request reviewers)
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        api_url: str = DEFAULT_API_URL,
        session: Optional[requests.Session] = None,
    ):
        self.owner = owner
        self.repo = repo
        self.base_url = f"{api_url.rstrip('/')}/repos/{owner}/{repo}"
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "pr-watch-agent",
        })

    # -----------------------------------------------------------------------
    # READS
    # -----------------------------------------------------------------------

    def get_pull_request(self, pr_number: int) -> dict:
        """Fetch PR metadata (state, head, author, ...)."""
        url = f"{self.base_url}/pulls/{pr_number}"
        resp = self.session.get(url, timeout=REQUEST_TIMEOUT)
        resp.raise_for_status()
        return resp.json()

    def get_pull_request_diff(self, pr_number: int) -> str:
        """Fetch the unified diff of a PR (content-negotiated via Accept)."""
        url = f"{self.base_url}/pulls/{pr_number}"
        resp = self.session.get(
            url, headers={"Accept": DIFF_MEDIA_TYPE}, timeout=REQUEST_TIMEOUT
        )
        resp.raise_for_status()
        return resp.text

    def iter_pages(self, path: str) -> Iterator[list]:
        """
        Yield successive pages of a list endpoint.

        Stops when a page is empty or the response has no `next` link,
        whichever comes first.
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        params = {"per_page": PAGE_SIZE}
        while url:
            resp = self.session.get(url, params=params, timeout=REQUEST_TIMEOUT)
            resp.raise_for_status()
            batch = resp.json()
            if not batch:
                return
            yield batch
            # The next URL already carries per_page/page in its query string
            url = resp.links.get("next", {}).get("url")
            params = None

    def list_all(self, path: str) -> list:
        """Concatenate every page of a list endpoint, in response order."""
        items = []
        for batch in self.iter_pages(path):
            items.extend(batch)
        return items

    def list_timeline(self, pr_number: int) -> list:
        return self.list_all(f"issues/{pr_number}/timeline")

    def list_issue_comments(self, pr_number: int) -> list:
        return self.list_all(f"issues/{pr_number}/comments")

    def list_commits(self, pr_number: int) -> list:
        return self.list_all(f"pulls/{pr_number}/commits")

    def list_files(self, pr_number: int) -> list:
        return self.list_all(f"pulls/{pr_number}/files")

    # -----------------------------------------------------------------------
    # WRITES
    # -----------------------------------------------------------------------

    def post_comment(self, pr_number: int, body: str) -> dict:
        """Post a comment on the PR conversation."""
        url = f"{self.base_url}/issues/{pr_number}/comments"
        resp = self.session.post(url, json={"body": body}, timeout=REQUEST_TIMEOUT)
        resp.raise_for_status()
        return resp.json()

    def request_reviewers(self, pr_number: int, reviewers: list) -> dict:
        """Request a review from the given user logins."""
        url = f"{self.base_url}/pulls/{pr_number}/requested_reviewers"
        resp = self.session.post(
            url, json={"reviewers": reviewers}, timeout=REQUEST_TIMEOUT
        )
        resp.raise_for_status()
        return resp.json()
