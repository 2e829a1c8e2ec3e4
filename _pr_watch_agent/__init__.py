# PR Watch Agent - Package
#
# This package contains the polling/review pipeline that follows a single
# pull request while an external coding worker (e.g. Copilot) works on it.
# Each stage is in its own file following the one-concern-per-file pattern.
#
# The loop is driven by pr_watch_main.py. It reads the PR timeline from the
# GitHub REST API, runs an external agent CLI as a subprocess, and writes
# back to GitHub (comments, review requests).
#
# Stage flow (per detected completion):
#   1. Poll Timeline -> 2. Gather PR Context -> 3. Build Review Prompt
#   -> 4. Run Agent -> 5. Decide & Act
