"""Shared fakes for the GitHub REST session."""

import json as jsonlib

import pytest
import requests

from _pr_watch_agent.config import WatchConfig
from _pr_watch_agent.github_api import DIFF_MEDIA_TYPE, GitHubAPI

BASE = "https://api.github.com/repos/acme/widgets"


class FakeResponse:
    def __init__(self, payload=None, status_code=200, text=None, next_url=None):
        self._payload = payload
        self.status_code = status_code
        self.text = text if text is not None else jsonlib.dumps(payload)
        self.links = {"next": {"url": next_url, "rel": "next"}} if next_url else {}

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """
    Minimal stand-in for requests.Session.

    routes maps a path relative to the repo base URL (query string dropped)
    to a list of responses served in order; the last one repeats. A diff
    request is routed to "<path>.diff". Exceptions in the list are raised.
    """

    def __init__(self, routes=None):
        self.headers = {}
        self.routes = {k: list(v) for k, v in (routes or {}).items()}
        self.calls = []

    def _serve(self, method, url, headers=None, **kwargs):
        path = url.split("?", 1)[0]
        if path.startswith(BASE):
            path = path[len(BASE):].lstrip("/")
        if headers and headers.get("Accept") == DIFF_MEDIA_TYPE:
            path += ".diff"
        key = f"{method} {path}"
        self.calls.append((key, url, kwargs))
        queue = self.routes.get(key)
        if not queue:
            raise AssertionError(f"unexpected request: {key}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, params=None, headers=None, timeout=None):
        return self._serve("GET", url, headers=headers, params=params)

    def post(self, url, json=None, timeout=None):
        return self._serve("POST", url, json=json)

    def called(self, key):
        return [c for c in self.calls if c[0] == key]


@pytest.fixture()
def make_gh():
    def _make(routes=None):
        session = FakeSession(routes)
        gh = GitHubAPI("acme", "widgets", "t0ken", session=session)
        return gh, session

    return _make


@pytest.fixture()
def config():
    return WatchConfig(owner="acme", repo="widgets", pr_number=7, token="t0ken", interval=5)
