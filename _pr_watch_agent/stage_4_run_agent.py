"""
Stage 4: Run Agent — PR Watch Agent

PURPOSE:
    Hand the prompt from Stage 3 to the external agent CLI and turn its
    free-text answer into a ReviewResult.

    The agent is invoked non-interactively as:

        <agent_command> -p <prompt> [<approve_flag>]

    with stdout and stderr merged into one captured string. The prompt is also
    written to a temporary file (path exported as PR_WATCH_PROMPT_FILE) inside
    a per-cycle temporary working directory. Both are removed on every exit
    path, including timeouts and a missing executable.

    The agent may do its own side effects (check out code, edit the drift
    file). The watcher only reads what it prints.

CALLED BY:
    pr_watch_main.py — once per review cycle, after Stage 3.

TRUST BOUNDARY:
    The approve flag lets the agent use tools without asking. Both the flag
    and the timeout are explicit configuration (--agent-approve-flag,
    --agent-timeout). A timeout of 0 means the agent may run forever and
    block the watcher.

OUTPUT PARSING:
    extract_review_json() reads `{...}` spans one line at a time (greedy, no
    DOTALL), then ```json fenced blocks. The first JSON object with a
    recommendation or a score section is the review; quoted objects such as
    a package.json from the diff are passed over. parse_review_result() then
    validates it:
    - returns None when there is no JSON at all (treated as "wait"),
    - raises ReviewSchemaError when the JSON does not match the schema,
    - returns a ReviewResult otherwise.
"""

import json
import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

RECOMMENDATIONS = ("continue", "fix", "escalate")
SCORE_SECTIONS = ("spec_compliance", "code_quality", "security")
PROMPT_FILE_ENV = "PR_WATCH_PROMPT_FILE"

_FENCED_JSON_RE = re.compile(r"```(?:json)?[ \t]*\n(.*?)```", re.DOTALL)
_BRACE_SPAN_RE = re.compile(r"\{.*\}")


class ReviewSchemaError(ValueError):
    """Agent output contained JSON that does not match the Review Result schema."""


@dataclass
class AgentRun:
    output: str
    returncode: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


@dataclass
class ReviewResult:
    overall_status: str = ""
    spec_compliance: dict = field(default_factory=dict)
    code_quality: dict = field(default_factory=dict)
    security: dict = field(default_factory=dict)
    recommendation: Optional[str] = None
    feedback: str = ""
    escalation_reason: str = ""
    raw: dict = field(default_factory=dict)

    def scores(self) -> Optional[tuple]:
        """The three section scores, or None if any of them is missing."""
        values = []
        for section in (self.spec_compliance, self.code_quality, self.security):
            score = section.get("score")
            if score is None:
                return None
            values.append(float(score))
        return tuple(values)


# ---------------------------------------------------------------------------
# AGENT INVOCATION
# ---------------------------------------------------------------------------


def run_agent(
    prompt: str,
    agent_command: str = "copilot",
    approve_flag: str = "--allow-all-tools",
    timeout: int = 0,
    workdir: Optional[Path] = None,
) -> AgentRun:
    """
    Run the agent CLI once and capture its combined output.

    Args:
        prompt: Complete prompt from Stage 3
        agent_command: Executable name or path
        approve_flag: Extra flag for non-interactive tool approval ("" to omit)
        timeout: Seconds before the process is killed; 0 = no limit
        workdir: Directory to run in. None creates a temporary directory that
                 is deleted after the run.

    Returns:
        AgentRun with the raw text. Never raises for agent-side failures.
    """
    with tempfile.TemporaryDirectory(prefix="pr-watch-") as tmp:
        prompt_file = Path(tmp) / "prompt.md"
        prompt_file.write_text(prompt, encoding="utf-8")

        cwd = workdir or Path(tmp)
        argv = [agent_command, "-p", prompt]
        if approve_flag:
            argv.append(approve_flag)

        env = dict(os.environ)
        env[PROMPT_FILE_ENV] = str(prompt_file)

        logger.info("Running agent %s in %s", agent_command, cwd)
        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout or None,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("Agent timed out after %ss", timeout)
            return AgentRun(output=_decode(e.output), returncode=124, timed_out=True)
        except FileNotFoundError:
            logger.warning("Agent command not found: %s", agent_command)
            return AgentRun(output="", returncode=127)
        except OSError as e:
            logger.warning("Agent %s could not be started: %s", agent_command, e)
            return AgentRun(output="", returncode=126)

    output = _decode(proc.stdout)
    if proc.returncode != 0:
        logger.warning("Agent exited with status %s", proc.returncode)
    logger.debug("Agent output (%d chars):\n%s", len(output), output)
    return AgentRun(output=output, returncode=proc.returncode)


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


# ---------------------------------------------------------------------------
# OUTPUT PARSING
# ---------------------------------------------------------------------------


def extract_review_json(raw_text: str) -> Optional[dict]:
    """
    Pull the review object out of free text.

    Candidates are every single-line `{...}` span in order, then every fenced
    ```json block. The first candidate that looks like a review (has a
    recommendation or a score section) wins. Otherwise the first JSON object
    seen is returned, so schema problems still surface.

    Returns:
        Parsed dict, or None if no parsable object was found.
    """
    if not raw_text:
        return None

    first_object = None
    for candidate in _json_candidates(raw_text):
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            logger.debug("Skipping span that is not valid JSON: %.200s", candidate)
            continue
        if not isinstance(parsed, dict):
            continue
        if _looks_like_review(parsed):
            return parsed
        if first_object is None:
            first_object = parsed
    return first_object


def _json_candidates(raw_text: str):
    for match in _BRACE_SPAN_RE.finditer(raw_text):
        yield match.group(0)
    for match in _FENCED_JSON_RE.finditer(raw_text):
        yield match.group(1).strip()


def _looks_like_review(data: dict) -> bool:
    return "recommendation" in data or any(name in data for name in SCORE_SECTIONS)


def parse_review_result(raw_text: str) -> Optional[ReviewResult]:
    """
    Extract and validate a ReviewResult from agent output.

    Raises:
        ReviewSchemaError: JSON was found but does not match the schema.
    """
    data = extract_review_json(raw_text)
    if data is None:
        return None
    return validate_review(data)


def validate_review(data: dict) -> ReviewResult:
    """Check a parsed dict against the Review Result schema and build the dataclass."""
    problems = []

    sections = {}
    for name in SCORE_SECTIONS:
        section = data.get(name, {})
        if section is None:
            section = {}
        if not isinstance(section, dict):
            problems.append(f"{name} (must be an object)")
            section = {}
        sections[name] = section

        score = section.get("score")
        if score is not None:
            if isinstance(score, bool) or not isinstance(score, (int, float)):
                problems.append(f"{name}.score (must be a number)")
            elif not 0 <= score <= 100:
                problems.append(f"{name}.score (must be 0-100)")

    list_fields = {
        "spec_compliance": ("issues", "missing_requirements"),
        "code_quality": ("issues",),
        "security": ("vulnerabilities", "concerns"),
    }
    for name, keys in list_fields.items():
        for key in keys:
            value = sections[name].get(key)
            if value is not None and not isinstance(value, list):
                problems.append(f"{name}.{key} (must be a list)")

    for key in ("overall_status", "recommendation", "feedback", "escalation_reason"):
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            problems.append(f"{key} (must be a string)")

    if problems:
        raise ReviewSchemaError("Invalid review JSON: " + ", ".join(problems))

    recommendation = (data.get("recommendation") or "").strip().lower()
    result = ReviewResult(
        overall_status=data.get("overall_status") or "",
        spec_compliance=sections["spec_compliance"],
        code_quality=sections["code_quality"],
        security=sections["security"],
        recommendation=recommendation if recommendation in RECOMMENDATIONS else None,
        feedback=data.get("feedback") or "",
        escalation_reason=data.get("escalation_reason") or "",
        raw=data,
    )

    if result.recommendation is None and result.scores() is None:
        raise ReviewSchemaError(
            "Invalid review JSON: needs a recommendation (continue/fix/escalate) "
            "or all three scores"
        )
    return result
