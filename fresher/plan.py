"""
Fresher Plan Model — IMPLEMENTATION_PLAN.md parsing

Turns a markdown checkbox plan into an ordered list of Tasks and answers
the one question the loop keeps asking: is there still work to do?

Recognized syntax:
  ## Priority 2: Label            sets the priority for following tasks
  - [ ] / - [x] / - [X] / - [~]   opens a task (pending / done / in progress)
  (refs: specs/a.md, specs/b.md)  inline spec references, stripped from text
    - Dependencies: A, B          annotates the most recent task
    - Complexity: low|medium|high annotates the most recent task
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from fresher.errors import FresherError


class PlanError(FresherError):
    """Raised when a plan document cannot be read."""
    pass


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

PRIORITY_RE = re.compile(r"^##\s+Priority\s+(\d+)")
CHECKBOX_RE = re.compile(r"^(\s*)-\s*\[([ xX~])\]\s+(.+)$")
REFS_RE = re.compile(r"\(refs?:\s*([^)]+)\)")
DEPS_RE = re.compile(r"Dependencies:\s*(.+)")
COMPLEXITY_RE = re.compile(r"Complexity:\s*(low|medium|high)")

PENDING_CHECKBOX_RE = re.compile(r"^\s*-\s*\[\s\]")
COMPLETE_CHECKBOX_RE = re.compile(r"^\s*-\s*\[[xX]\]")
IN_PROGRESS_CHECKBOX_RE = re.compile(r"^\s*-\s*\[~\]")
NUMBERED_HEADER_RE = re.compile(r"^###\s+\d+\.\d+\s+.+$")

INDEX_DOCUMENT = "README.md"
ARCHIVE_DIR = ".archive"


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"

    @classmethod
    def from_marker(cls, marker: str) -> "TaskStatus":
        if marker in ("x", "X"):
            return cls.COMPLETED
        if marker == "~":
            return cls.IN_PROGRESS
        return cls.PENDING

    @property
    def checkbox(self) -> str:
        return {"pending": "[ ]", "completed": "[x]", "in_progress": "[~]"}[self.value]


Complexity = Literal["low", "medium", "high"]


class Task(BaseModel):
    """A single checkbox item from the plan. Re-parse to change it."""
    model_config = ConfigDict(frozen=True)

    description: str
    status: TaskStatus
    spec_refs: list[str] = Field(default_factory=list)
    line_number: int
    priority: int | None = None
    dependencies: list[str] = Field(default_factory=list)
    complexity: Complexity | None = None

    @property
    def has_refs(self) -> bool:
        return bool(self.spec_refs)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _split_list(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def parse_plan_text(content: str) -> list[Task]:
    """Parse plan markdown into tasks. Unmatched lines are ignored."""
    drafts: list[dict[str, Any]] = []
    current_priority: int | None = None

    for line_num, line in enumerate(content.splitlines(), 1):
        priority_match = PRIORITY_RE.match(line)
        if priority_match:
            current_priority = int(priority_match.group(1))
            continue

        checkbox_match = CHECKBOX_RE.match(line)
        if checkbox_match:
            text = checkbox_match.group(3)
            refs_match = REFS_RE.search(text)
            drafts.append({
                "description": REFS_RE.sub("", text).strip(),
                "status": TaskStatus.from_marker(checkbox_match.group(2)),
                "spec_refs": _split_list(refs_match.group(1)) if refs_match else [],
                "line_number": line_num,
                "priority": current_priority,
                "dependencies": [],
                "complexity": None,
            })

        # Annotations belong to the most recently opened task
        if not drafts:
            continue
        deps_match = DEPS_RE.search(line)
        if deps_match:
            deps = deps_match.group(1).strip()
            if deps.lower() != "none":
                drafts[-1]["dependencies"] = _split_list(deps)
        complexity_match = COMPLEXITY_RE.search(line)
        if complexity_match:
            drafts[-1]["complexity"] = complexity_match.group(1)

    return [Task(**draft) for draft in drafts]


def parse_plan(plan_path: Path) -> list[Task]:
    """Read and parse a plan file. An unreadable file is fatal."""
    tasks = parse_plan_text(_read(plan_path))
    logger.debug(f"[PLAN] Parsed {len(tasks)} tasks from {plan_path}")
    return tasks


def count_tasks(tasks: list[Task]) -> tuple[int, int, int, int]:
    """Return (total, pending, completed, in_progress)."""
    pending = sum(1 for t in tasks if t.status is TaskStatus.PENDING)
    completed = sum(1 for t in tasks if t.status is TaskStatus.COMPLETED)
    in_progress = sum(1 for t in tasks if t.status is TaskStatus.IN_PROGRESS)
    return len(tasks), pending, completed, in_progress


# ---------------------------------------------------------------------------
# Pending-work detection
# ---------------------------------------------------------------------------

def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PlanError(f"Failed to read {path}: {e}") from e


def _has_pending_checkbox(content: str) -> bool:
    return any(PENDING_CHECKBOX_RE.match(line) for line in content.splitlines())


def _has_pending_tasks_hierarchical(impl_dir: Path) -> bool:
    for path in sorted(impl_dir.iterdir()):
        if path.name in (INDEX_DOCUMENT, ARCHIVE_DIR) or path.suffix != ".md" or not path.is_file():
            continue
        try:
            if _has_pending_checkbox(path.read_text(encoding="utf-8")):
                return True
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"[PLAN] Could not read feature file {path.name}: {e}")

    # Cross-cutting tasks live in the index document itself
    return _has_pending_checkbox(_read(impl_dir / INDEX_DOCUMENT))


def _has_pending_tasks_legacy(plan_path: Path) -> bool:
    if not plan_path.exists():
        return False

    content = _read(plan_path)
    if _has_pending_checkbox(content):
        return True

    # "### 1.2 Title" sections count as pending until marked done
    return any(
        NUMBERED_HEADER_RE.match(line) and "✅" not in line and "✓" not in line
        for line in content.splitlines()
    )


def has_pending_tasks(plan_path: Path, impl_dir: Path = Path("impl")) -> bool:
    """
    Check whether any work is left.

    Supported layouts, in order:
      1. Hierarchical impl/ directory (when impl/README.md exists)
      2. Legacy single file with `- [ ]` checkboxes
      3. Legacy single file with `### N.N Title` sections lacking a ✅
    """
    if (impl_dir / INDEX_DOCUMENT).exists():
        return _has_pending_tasks_hierarchical(impl_dir)
    return _has_pending_tasks_legacy(plan_path)
