"""
Git probe — the two questions the loop asks source control.

Failures are not errors here: outside a repository there is no revision
and no commits, and smart termination simply sees "nothing changed".
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger


class GitProbe:
    def __init__(self, repo_path: Path):
        self.repo_path = repo_path

    def current_sha(self) -> str | None:
        out = self._git("rev-parse", "HEAD")
        return out or None

    def count_commits_since(self, sha: str | None) -> int:
        if not sha:
            return 0
        out = self._git("rev-list", "--count", f"{sha}..HEAD")
        try:
            return int(out)
        except ValueError:
            return 0

    def _git(self, *args: str) -> str:
        cmd = ["git", *args]
        try:
            result = subprocess.run(cmd, cwd=self.repo_path, capture_output=True, text=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"[GIT] {' '.join(cmd)} failed: {e}")
            return ""
        if result.returncode != 0:
            logger.debug(f"[GIT] {' '.join(cmd)} exited {result.returncode}: {result.stderr.strip()}")
            return ""
        return result.stdout.strip()
