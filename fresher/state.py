"""
Fresher Run State — the single persisted record of a loop run.

Only the controller writes it. It is rewritten after every iteration
boundary and replaced wholesale when the next run starts.
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from fresher.errors import FresherError

STATE_FILE = ".state.json"


class StateError(FresherError):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FinishType(str, Enum):
    MANUAL = "manual"
    ERROR = "error"
    MAX_ITERATIONS = "max_iterations"
    COMPLETE = "complete"
    NO_CHANGES = "no_changes"


class State(BaseModel):
    iteration: int = 0
    last_exit_code: int = 0
    last_commit_sha: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    total_commits: int = 0
    duration_seconds: int = 0
    finish_type: FinishType | None = None
    iteration_start: datetime | None = None
    iteration_sha: str | None = None

    def start_iteration(self, sha: str | None, now: datetime | None = None) -> None:
        self.iteration += 1
        self.iteration_start = now or utcnow()
        self.iteration_sha = sha

    def complete_iteration(
        self,
        exit_code: int,
        commits: int,
        head_sha: str | None,
        now: datetime | None = None,
    ) -> None:
        self.last_exit_code = exit_code
        self.total_commits += commits
        if commits > 0:
            self.last_commit_sha = head_sha
        self.update_duration(now)

    def update_duration(self, now: datetime | None = None) -> None:
        elapsed = (now or utcnow()) - self.started_at
        self.duration_seconds = max(int(elapsed.total_seconds()), 0)

    def set_finish(self, finish_type: FinishType, now: datetime | None = None) -> None:
        self.finish_type = finish_type
        self.update_duration(now)

    def to_env_vars(self) -> dict[str, str]:
        """Environment handed to hook scripts."""
        env = {
            "FRESHER_ITERATION": str(self.iteration),
            "FRESHER_LAST_EXIT_CODE": str(self.last_exit_code),
            "FRESHER_TOTAL_COMMITS": str(self.total_commits),
            "FRESHER_DURATION": str(self.duration_seconds),
            "FRESHER_TOTAL_ITERATIONS": str(self.iteration),
        }
        if self.last_commit_sha:
            env["FRESHER_LAST_COMMIT_SHA"] = self.last_commit_sha
        if self.finish_type is not None:
            env["FRESHER_FINISH_TYPE"] = self.finish_type.value
        return env


class StateStore:
    """JSON file holding one State. Saves are atomic (temp file + rename)."""

    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def for_project(cls, project_dir: Path) -> "StateStore":
        return cls(project_dir / ".fresher" / STATE_FILE)

    def load(self) -> State | None:
        if not self.path.exists():
            return None
        try:
            return State.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise StateError(f"Failed to read {self.path}: {e}") from e
        except ValidationError as e:
            raise StateError(f"Failed to parse {self.path}: {e}") from e

    def save(self, state: State) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".state.", suffix=".tmp", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(state.model_dump_json(indent=2))
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateError(f"Failed to write {self.path}: {e}") from e
        logger.debug(f"[STATE] Saved iteration {state.iteration} to {self.path}")
