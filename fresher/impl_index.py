"""
Fresher Hierarchical Index — impl/ navigation

A hierarchical plan is a directory of feature documents plus an index:

  impl/
    README.md        index: status table, current focus, cross-cutting tasks
    auth.md          one feature's tasks
    api.md
    .archive/        completed features moved out of the way

The ImplIndex is a projection rebuilt from disk on every load. Feature
status is derived from checkbox counts, never stored.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from fresher.errors import FresherError
from fresher.plan import (
    ARCHIVE_DIR,
    COMPLETE_CHECKBOX_RE,
    INDEX_DOCUMENT,
    IN_PROGRESS_CHECKBOX_RE,
    PENDING_CHECKBOX_RE,
)
from fresher.transaction import FileTransaction

SPEC_LINK_RE = re.compile(r"\*\*Spec:\*\*\s*\[.*?\]\((.*?)\)")
ACTIVE_RE = re.compile(r"\*\*Active:\*\*\s*\[(.*?)\]")
FOCUS_SECTION_RE = re.compile(r"##\s*Current Focus[\s\S]*?\[(.*?)\.md\]")


class ImplIndexError(FresherError):
    pass


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class FeatureState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    ARCHIVED = "archived"

    @property
    def label(self) -> str:
        return {
            "pending": "⏳ Pending",
            "in_progress": "🔄 In Progress",
            "complete": "✅ Complete",
            "archived": "📦 Archived",
        }[self.value]

    @classmethod
    def derive(cls, total: int, completed: int, in_progress: int) -> "FeatureState":
        if total > 0 and completed == total:
            return cls.COMPLETE
        if completed > 0 or in_progress > 0:
            return cls.IN_PROGRESS
        return cls.PENDING


class FeatureStatus(BaseModel):
    name: str
    file: Path
    status: FeatureState
    total_tasks: int
    completed_tasks: int
    pending_tasks: int  # includes in-progress items
    spec_ref: str | None = None

    def completion_percent(self) -> float:
        if self.total_tasks == 0:
            return 100.0
        return self.completed_tasks / self.total_tasks * 100.0


class CrossCuttingTasks(BaseModel):
    total: int = 0
    completed: int = 0
    pending: int = 0


# ---------------------------------------------------------------------------
# Document scanning
# ---------------------------------------------------------------------------

def parse_feature_text(name: str, path: Path, content: str) -> FeatureStatus:
    pending = completed = in_progress = 0
    spec_ref = None

    for line in content.splitlines():
        if PENDING_CHECKBOX_RE.match(line):
            pending += 1
        elif COMPLETE_CHECKBOX_RE.match(line):
            completed += 1
        elif IN_PROGRESS_CHECKBOX_RE.match(line):
            in_progress += 1

        if spec_ref is None:
            link = SPEC_LINK_RE.search(line)
            if link:
                spec_ref = link.group(1)

    total = pending + completed + in_progress
    return FeatureStatus(
        name=name,
        file=path,
        status=FeatureState.derive(total, completed, in_progress),
        total_tasks=total,
        completed_tasks=completed,
        pending_tasks=pending + in_progress,
        spec_ref=spec_ref,
    )


def parse_feature_file(path: Path) -> FeatureStatus:
    return parse_feature_text(path.stem, path, path.read_text(encoding="utf-8"))


def parse_current_focus(content: str) -> str | None:
    """`**Active:** [auth.md](./auth.md)` wins; else the first `[x.md]` after `## Current Focus`."""
    active = ACTIVE_RE.search(content)
    if active:
        return active.group(1)
    section = FOCUS_SECTION_RE.search(content)
    if section:
        return section.group(1)
    return None


def count_cross_cutting_tasks(content: str) -> CrossCuttingTasks:
    """Checkboxes in the index document that are not part of a table row."""
    pending = completed = 0
    for line in content.splitlines():
        if "|" in line:
            continue
        if PENDING_CHECKBOX_RE.match(line):
            pending += 1
        elif COMPLETE_CHECKBOX_RE.match(line):
            completed += 1
    return CrossCuttingTasks(total=pending + completed, completed=completed, pending=pending)


def _is_feature_document(path: Path) -> bool:
    return (
        path.name != INDEX_DOCUMENT
        and path.name != ARCHIVE_DIR
        and path.suffix == ".md"
        and path.is_file()
    )


def has_hierarchical_plan(impl_dir: Path) -> bool:
    return (impl_dir / INDEX_DOCUMENT).exists()


def list_feature_files(impl_dir: Path) -> list[Path]:
    if not impl_dir.exists():
        return []
    return sorted(p for p in impl_dir.iterdir() if _is_feature_document(p))


def list_archived_files(impl_dir: Path) -> list[Path]:
    archive_dir = impl_dir / ARCHIVE_DIR
    if not archive_dir.exists():
        return []
    return sorted(p for p in archive_dir.iterdir() if p.suffix == ".md")


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------

class ImplIndex(BaseModel):
    impl_dir: Path
    features: list[FeatureStatus] = Field(default_factory=list)
    current_focus: str | None = None
    cross_cutting_tasks: CrossCuttingTasks = Field(default_factory=CrossCuttingTasks)

    @classmethod
    def load(cls, impl_dir: Path) -> "ImplIndex":
        readme_path = impl_dir / INDEX_DOCUMENT
        if not readme_path.exists():
            raise ImplIndexError(f"{readme_path} not found")

        features = []
        for path in list_feature_files(impl_dir):
            try:
                features.append(parse_feature_file(path))
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"[INDEX] Skipping unreadable feature file {path.name}: {e}")
        features.sort(key=lambda f: f.name)

        try:
            readme = readme_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ImplIndexError(f"Failed to read {readme_path}: {e}") from e

        index = cls(
            impl_dir=impl_dir,
            features=features,
            current_focus=parse_current_focus(readme),
            cross_cutting_tasks=count_cross_cutting_tasks(readme),
        )
        logger.debug(
            f"[INDEX] Loaded {len(features)} features, "
            f"{index.pending_tasks()}/{index.total_tasks()} tasks pending"
        )
        return index

    def total_tasks(self) -> int:
        return sum(f.total_tasks for f in self.features) + self.cross_cutting_tasks.total

    def completed_tasks(self) -> int:
        return sum(f.completed_tasks for f in self.features) + self.cross_cutting_tasks.completed

    def pending_tasks(self) -> int:
        return sum(f.pending_tasks for f in self.features) + self.cross_cutting_tasks.pending

    def is_complete(self) -> bool:
        return self.pending_tasks() == 0

    def find_feature(self, name: str) -> FeatureStatus | None:
        """Accepts `auth` or `auth.md`."""
        stem = name.removesuffix(".md")
        return next((f for f in self.features if f.name == stem), None)

    def select_next_focus(self) -> FeatureStatus | None:
        """
        Pick the feature the next iteration should work on:
          1. the first in-progress feature (name order)
          2. otherwise the feature with the fewest pending tasks (quick wins)
        """
        for feature in self.features:
            if feature.status is FeatureState.IN_PROGRESS:
                return feature

        candidates = [f for f in self.features if f.pending_tasks > 0]
        if not candidates:
            return None
        # min() keeps the first of equal keys, so ties go to name order
        return min(candidates, key=lambda f: f.pending_tasks)


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------

def archive_feature(impl_dir: Path, feature_name: str) -> Path:
    """Move impl/<name>.md into impl/.archive/. All or nothing."""
    stem = feature_name.removesuffix(".md")
    feature_path = impl_dir / f"{stem}.md"
    archive_path = impl_dir / ARCHIVE_DIR / f"{stem}.md"

    if not feature_path.exists():
        raise ImplIndexError(f"Feature file not found: {feature_path}")
    if archive_path.exists():
        raise ImplIndexError(f"Already archived: {archive_path}")

    with FileTransaction() as tx:
        tx.mkdir(archive_path.parent)
        tx.move(feature_path, archive_path)

    logger.info(f"[INDEX] Archived {stem} -> {archive_path}")
    return archive_path
