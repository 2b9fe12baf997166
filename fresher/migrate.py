"""
Fresher Plan Migration — single-file plan to impl/ feature documents

Tasks are grouped by their first spec reference:

  - [ ] Add login (refs: specs/auth.md)    -> impl/auth.md
  - [ ] Add tokens (refs: specs/api/v1.md) -> impl/api-v1.md
  - [ ] Update README                      -> impl/README.md, Cross-Cutting Tasks

The whole migration is one FileTransaction: either every generated document
is written and the legacy plan renamed to <plan>.md.backup, or nothing on
disk changes.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from fresher.errors import FresherError
from fresher.plan import ARCHIVE_DIR, INDEX_DOCUMENT, Task, TaskStatus, parse_plan
from fresher.transaction import FileTransaction, TransactionError


class MigrationError(FresherError):
    pass


class MigrationAnalysis(BaseModel):
    legacy_path: Path
    total_tasks: int
    tasks_by_spec: dict[str, list[Task]] = Field(default_factory=dict)
    orphan_tasks: list[Task] = Field(default_factory=list)
    should_migrate: bool
    threshold: int


class MigrationResult(BaseModel):
    impl_dir: Path
    backup_path: Path
    created_files: list[Path]
    feature_count: int
    task_count: int
    orphan_count: int


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def extract_spec_name(spec_ref: str) -> str:
    """specs/api/v1.md -> api-v1"""
    return spec_ref.removeprefix("specs/").removesuffix(".md").replace("/", "-")


def analyze_migration(legacy_path: Path, threshold: int) -> MigrationAnalysis:
    tasks = parse_plan(legacy_path)

    tasks_by_spec: dict[str, list[Task]] = defaultdict(list)
    orphans: list[Task] = []
    for task in tasks:
        if task.spec_refs:
            tasks_by_spec[extract_spec_name(task.spec_refs[0])].append(task)
        else:
            orphans.append(task)

    return MigrationAnalysis(
        legacy_path=legacy_path,
        total_tasks=len(tasks),
        tasks_by_spec=dict(tasks_by_spec),
        orphan_tasks=orphans,
        should_migrate=len(tasks) >= threshold,
        threshold=threshold,
    )


def backup_path_for(legacy_path: Path) -> Path:
    return legacy_path.with_name(f"{legacy_path.stem}.md.backup")


# ---------------------------------------------------------------------------
# Document generation
# ---------------------------------------------------------------------------

def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def _title(spec_name: str) -> str:
    return " ".join(part[:1].upper() + part[1:] for part in spec_name.split("-"))


def _feature_label(tasks: list[Task]) -> str:
    completed = sum(1 for t in tasks if t.status is TaskStatus.COMPLETED)
    if tasks and completed == len(tasks):
        return "✅ Complete"
    if completed > 0:
        return "🔄 In Progress"
    return "⏳ Pending"


def generate_feature_file(spec_name: str, tasks: list[Task], today: str | None = None) -> str:
    lines = [
        f"# {_title(spec_name)} Implementation",
        "",
        f"**Spec:** [specs/{spec_name}.md](../specs/{spec_name}.md)",
        "**Status:** Pending",
        f"**Last Updated:** {today or _today()}",
        "",
        "---",
        "",
        "## Dependencies",
        "",
        "- ⏳ None blocking",
        "",
        "---",
        "",
        "## Tasks",
        "",
    ]

    by_priority: dict[int | None, list[Task]] = defaultdict(list)
    for task in tasks:
        by_priority[task.priority].append(task)

    # Numbered priorities ascending, uncategorized last
    for priority in sorted(by_priority, key=lambda p: (p is None, p or 0)):
        lines += [f"### Priority {priority}" if priority is not None else "### Uncategorized", ""]
        for idx, task in enumerate(by_priority[priority], 1):
            task_id = f"P{priority if priority is not None else 99}.{idx}"
            title = task.description.split("(")[0].strip()
            lines += [f"#### {task_id}: {title}", ""]
            lines.append(f"- {task.status.checkbox} {task.description}")
            if task.complexity:
                lines.append(f"  - **Complexity:** {task.complexity}")
            if task.dependencies:
                lines.append(f"  - **Dependencies:** {', '.join(task.dependencies)}")
            lines.append("")

    return "\n".join(lines)


def generate_readme(
    tasks_by_spec: dict[str, list[Task]],
    orphan_tasks: list[Task],
    today: str | None = None,
) -> str:
    lines = [
        "# Implementation Plan",
        "",
        f"**Generated:** {today or _today()}",
        "**Based on:** specs/*.md",
        "**Project:** (migrated from IMPLEMENTATION_PLAN.md)",
        "",
        "---",
        "",
        "## Status Overview",
        "",
        "| Feature | Status | Progress | Spec |",
        "|---------|--------|----------|------|",
    ]

    features = sorted(tasks_by_spec)
    for name in features:
        tasks = tasks_by_spec[name]
        completed = sum(1 for t in tasks if t.status is TaskStatus.COMPLETED)
        lines.append(
            f"| [{name}](./{name}.md) | {_feature_label(tasks)} | "
            f"{completed}/{len(tasks)} | [spec](../specs/{name}.md) |"
        )

    focus = next(
        (n for n in features if any(t.status is TaskStatus.PENDING for t in tasks_by_spec[n])),
        None,
    )
    lines += ["", "---", "", "## Current Focus", ""]
    if focus:
        lines.append(f"**Active:** [{focus}.md](./{focus}.md)")
    else:
        lines.append("**Active:** None (all features complete or empty)")
    lines.append("")

    if orphan_tasks:
        lines += ["---", "", "## Cross-Cutting Tasks", "", "Tasks not tied to a specific feature:", ""]
        lines += [f"- {t.status.checkbox} {t.description}" for t in orphan_tasks]

    lines += [
        "",
        "---",
        "",
        "## Archived Features",
        "",
        f"Completed features moved to `{ARCHIVE_DIR}/`:",
        "",
        "(none yet)",
        "",
    ]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------

def migrate_plan(legacy_path: Path, impl_dir: Path) -> MigrationResult:
    """
    Split a legacy plan into impl/ documents and back up the original.

    Refuses to run over an existing hierarchical plan or an existing backup.
    """
    readme_path = impl_dir / INDEX_DOCUMENT
    if readme_path.exists():
        raise MigrationError(
            f"Hierarchical plan already exists at {impl_dir}/. "
            "Remove it to re-migrate."
        )
    if not legacy_path.exists():
        raise MigrationError(f"No legacy plan found at {legacy_path}")

    backup_path = backup_path_for(legacy_path)
    if backup_path.exists():
        raise MigrationError(f"Backup already exists: {backup_path}")

    analysis = analyze_migration(legacy_path, threshold=0)
    reserved = Path(INDEX_DOCUMENT).stem.lower()
    for spec_name in analysis.tasks_by_spec:
        if spec_name.lower() == reserved:
            raise MigrationError(
                f"Tasks referencing specs/{spec_name}.md would overwrite {INDEX_DOCUMENT}; "
                "rename that spec before migrating."
            )
    today = _today()

    created: list[Path] = []
    try:
        with FileTransaction() as tx:
            tx.mkdir(impl_dir / ARCHIVE_DIR)
            for spec_name, tasks in analysis.tasks_by_spec.items():
                feature_path = impl_dir / f"{spec_name}.md"
                tx.write(feature_path, generate_feature_file(spec_name, tasks, today))
                created.append(feature_path)
            tx.write(readme_path, generate_readme(analysis.tasks_by_spec, analysis.orphan_tasks, today))
            created.append(readme_path)
            tx.move(legacy_path, backup_path)
    except (TransactionError, OSError) as e:
        raise MigrationError(f"Migration aborted, no files changed: {e}") from e

    logger.info(
        f"[MIGRATE] {analysis.total_tasks} tasks -> {len(analysis.tasks_by_spec)} features, "
        f"{len(analysis.orphan_tasks)} cross-cutting; backup at {backup_path}"
    )
    return MigrationResult(
        impl_dir=impl_dir,
        backup_path=backup_path,
        created_files=created,
        feature_count=len(analysis.tasks_by_spec),
        task_count=analysis.total_tasks,
        orphan_count=len(analysis.orphan_tasks),
    )
