"""
Drift report file used by `validate` mode.

The file is plain markdown with a fixed set of `## ` sections. The watcher
creates it (or adds missing sections), the agent writes under the headings,
and the watcher reads the sections back to post a summary comment.
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

DRIFT_SECTIONS = [
    "Context Drift",
    "Spec Refinements",
    "Validation Results",
    "Manual Verification Needed",
    "Fixes Applied",
]
MANUAL_SECTION = "Manual Verification Needed"
MAX_SUMMARY_CHARS = 3000

_HEADING_RE = re.compile(r"^##\s+(.+?)\s*$", re.MULTILINE)
_EMPTY_MARKERS = {"", "_none_", "none", "n/a", "-"}


def ensure_drift_file(path: Path, pr_number: int) -> Path:
    """Create the drift file with every section, or append the sections it lacks."""
    path = Path(path)
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        lines = [f"# Spec Drift Report: PR #{pr_number}", "", f"Created: {now}", ""]
        for section in DRIFT_SECTIONS:
            lines += [f"## {section}", "", ""]
        path.write_text("\n".join(lines), encoding="utf-8")
        logger.info("Created drift file %s", path)
        return path

    text = path.read_text(encoding="utf-8")
    present = set(_HEADING_RE.findall(text))
    missing = [s for s in DRIFT_SECTIONS if s not in present]
    if missing:
        addition = "".join(f"\n## {section}\n\n" for section in missing)
        path.write_text(text.rstrip("\n") + "\n" + addition, encoding="utf-8")
        logger.info("Added missing drift sections to %s: %s", path, ", ".join(missing))
    return path


def read_drift_sections(path: Path) -> dict:
    """Return {section title: body text} for every `## ` section in the file."""
    text = Path(path).read_text(encoding="utf-8")
    sections = {}
    matches = list(_HEADING_RE.finditer(text))
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        sections[match.group(1)] = text[match.end():end].strip()
    return sections


def needs_manual_verification(sections: dict) -> bool:
    body = sections.get(MANUAL_SECTION, "")
    return body.strip().lower() not in _EMPTY_MARKERS


def format_drift_summary(sections: dict, pr_number: int, escalation_user: str = "") -> str:
    """Comment body summarising the drift file after a validation run."""
    lines = [f"## Spec validation for PR #{pr_number}", ""]

    results = sections.get("Validation Results", "").strip()
    lines += ["### Validation Results", "", _clip(results) if results else "_No results recorded._", ""]

    for title in ("Context Drift", "Fixes Applied"):
        body = sections.get(title, "").strip()
        if body:
            lines += [f"### {title}", "", _clip(body), ""]

    if needs_manual_verification(sections):
        mention = f"@{escalation_user} " if escalation_user else ""
        lines += [
            f"### {MANUAL_SECTION}",
            "",
            f"{mention}the following needs a human to confirm:",
            "",
            _clip(sections[MANUAL_SECTION]),
            "",
        ]
    return "\n".join(lines).rstrip() + "\n"


def _clip(text: str) -> str:
    if len(text) <= MAX_SUMMARY_CHARS:
        return text
    return text[:MAX_SUMMARY_CHARS] + "\n\n_(truncated, see the drift file)_"
