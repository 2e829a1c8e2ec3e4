"""
Configuration — PR Watch Agent

Command-line options for the watcher. Every option can also come from an
environment variable so the script runs unchanged inside CI, and the GitHub
credential falls back to the local `gh` CLI login when nothing is supplied.

Fatal startup problems (no credential, spec file missing, validate mode
without a drift file) raise ConfigError; main() turns that into exit code 1.
"""

import argparse
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .github_api import DEFAULT_API_URL

MODES = ("review", "validate")
DEFAULT_INTERVAL = 30
DEFAULT_WORKER_LOGIN = "copilot"
DEFAULT_AGENT_COMMAND = "copilot"
DEFAULT_AGENT_APPROVE_FLAG = "--allow-all-tools"
DEFAULT_STARTED_EVENT = "copilot_work_started"
DEFAULT_FINISHED_EVENT = "copilot_work_finished"


class ConfigError(Exception):
    """Raised for configuration problems that must stop the watcher at startup."""


@dataclass
class WatchConfig:
    owner: str
    repo: str
    pr_number: int
    token: str
    interval: int = DEFAULT_INTERVAL
    mode: str = "review"
    spec_file: Optional[Path] = None
    spec_text: str = ""
    escalation_user: str = ""
    drift_file: Optional[Path] = None
    worker_login: str = DEFAULT_WORKER_LOGIN
    agent_command: str = DEFAULT_AGENT_COMMAND
    agent_approve_flag: str = DEFAULT_AGENT_APPROVE_FLAG
    agent_timeout: int = 0
    workdir: Optional[Path] = None
    api_url: str = DEFAULT_API_URL
    started_event: str = DEFAULT_STARTED_EVENT
    finished_event: str = DEFAULT_FINISHED_EVENT
    verbose: bool = False

    def __post_init__(self):
        if not self.escalation_user:
            self.escalation_user = self.owner


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(key)
    return value if value else default


def _env_int(key: str, default: Optional[int] = None) -> Optional[int]:
    raw = os.environ.get(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")


def lookup_gh_token() -> Optional[str]:
    """Ask the locally installed `gh` CLI for its token, if there is one."""
    try:
        proc = subprocess.run(
            ["gh", "auth", "token"],
            capture_output=True,
            text=True,
            timeout=15,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


def resolve_token(explicit: Optional[str]) -> str:
    token = explicit or _env("GITHUB_TOKEN") or _env("GH_TOKEN") or lookup_gh_token()
    if not token:
        raise ConfigError(
            "No GitHub token: pass --token, set GITHUB_TOKEN/GH_TOKEN, or run `gh auth login`."
        )
    return token


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pr-watch-agent",
        description=(
            "Watch a pull request for finished worker sessions and run an AI "
            "agent to review, request fixes, or escalate."
        ),
    )
    env_pr = _env_int("PR_WATCH_PR")

    parser.add_argument("--owner", default=_env("PR_WATCH_OWNER"),
                        required=_env("PR_WATCH_OWNER") is None,
                        help="Repository owner (user or organization).")
    parser.add_argument("--repo", default=_env("PR_WATCH_REPO"),
                        required=_env("PR_WATCH_REPO") is None,
                        help="Repository name.")
    parser.add_argument("--pr", dest="pr_number", type=int, default=env_pr,
                        required=env_pr is None,
                        help="Pull request number to watch.")
    parser.add_argument("--interval", type=int,
                        default=_env_int("PR_WATCH_INTERVAL", DEFAULT_INTERVAL),
                        help="Seconds between polls (default: 30).")
    parser.add_argument("--token", default=None,
                        help="GitHub token. Falls back to GITHUB_TOKEN, GH_TOKEN, then `gh auth token`.")
    parser.add_argument("--mode", choices=MODES, default=_env("PR_WATCH_MODE", "review"),
                        help="review: JSON review + decision. validate: spec validation with a drift file.")
    parser.add_argument("--spec-file", default=_env("PR_WATCH_SPEC_FILE"),
                        help="Spec markdown file the PR is checked against.")
    parser.add_argument("--escalation-user", default=_env("PR_WATCH_ESCALATION_USER", ""),
                        help="Human owner mentioned and asked for review on escalation (default: repo owner).")
    parser.add_argument("--drift-file", default=_env("PR_WATCH_DRIFT_FILE"),
                        help="Drift report markdown file (required in validate mode).")
    parser.add_argument("--worker-login", default=_env("PR_WATCH_WORKER_LOGIN", DEFAULT_WORKER_LOGIN),
                        help="Login of the coding worker mentioned on fix requests.")
    parser.add_argument("--agent-command", default=_env("PR_WATCH_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                        help="Agent CLI executable (default: copilot).")
    parser.add_argument("--agent-approve-flag",
                        default=_env("PR_WATCH_AGENT_APPROVE_FLAG", DEFAULT_AGENT_APPROVE_FLAG),
                        help="Flag passed to the agent to run without interactive approval. Empty to omit.")
    parser.add_argument("--agent-timeout", type=int,
                        default=_env_int("PR_WATCH_AGENT_TIMEOUT", 0),
                        help="Seconds before the agent is killed; 0 disables the timeout.")
    parser.add_argument("--workdir", default=_env("PR_WATCH_WORKDIR"),
                        help="Directory the agent runs in (default: a fresh temp dir per cycle).")
    parser.add_argument("--api-url", default=_env("GITHUB_API_URL", DEFAULT_API_URL),
                        help="GitHub REST API base URL.")
    parser.add_argument("--started-event", default=DEFAULT_STARTED_EVENT,
                        help="Timeline event kind that marks a worker session start.")
    parser.add_argument("--finished-event", default=DEFAULT_FINISHED_EVENT,
                        help="Timeline event kind that marks a worker session finish.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser


def load_config(argv: Optional[list] = None) -> WatchConfig:
    """
    Parse argv (or sys.argv) into a WatchConfig.

    argparse exits with status 2 on missing required options; everything
    else that makes the run impossible raises ConfigError.
    """
    args = build_parser().parse_args(argv)

    # argparse only checks choices typed on the command line, not env defaults
    if args.mode not in MODES:
        raise ConfigError(f"--mode must be one of {', '.join(MODES)}, got {args.mode!r}")
    if args.interval < 0:
        raise ConfigError("--interval must be >= 0")
    if args.agent_timeout < 0:
        raise ConfigError("--agent-timeout must be >= 0")

    spec_file = None
    spec_text = ""
    if args.spec_file:
        spec_file = Path(args.spec_file)
        if not spec_file.is_file():
            raise ConfigError(f"Spec file not found: {spec_file}")
        spec_text = spec_file.read_text(encoding="utf-8")

    drift_file = Path(args.drift_file).resolve() if args.drift_file else None
    if args.mode == "validate":
        if drift_file is None:
            raise ConfigError("validate mode requires --drift-file")
        if spec_file is None:
            raise ConfigError("validate mode requires --spec-file")

    workdir = None
    if args.workdir:
        workdir = Path(args.workdir)
        if not workdir.is_dir():
            raise ConfigError(f"Working directory not found: {workdir}")

    return WatchConfig(
        owner=args.owner,
        repo=args.repo,
        pr_number=args.pr_number,
        token=resolve_token(args.token),
        interval=args.interval,
        mode=args.mode,
        spec_file=spec_file,
        spec_text=spec_text,
        escalation_user=args.escalation_user,
        drift_file=drift_file,
        worker_login=args.worker_login,
        agent_command=args.agent_command,
        agent_approve_flag=args.agent_approve_flag,
        agent_timeout=args.agent_timeout,
        workdir=workdir,
        api_url=args.api_url,
        started_event=args.started_event,
        finished_event=args.finished_event,
        verbose=args.verbose,
    )
