"""
Fresher Verify — plan-to-spec traceability

Extracts requirements from specs/*.md and measures how well the plan's
tasks cover them. Requirements are computed on demand and never persisted.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path

from loguru import logger
from pydantic import BaseModel

from fresher.plan import Task, count_tasks, parse_plan

RFC2119_RE = re.compile(
    r"\b(MUST|MUST NOT|REQUIRED|SHALL|SHALL NOT|SHOULD|SHOULD NOT|RECOMMENDED|MAY|OPTIONAL)\b"
)
SECTION_RE = re.compile(r"^###\s+(.+)$")
SPEC_CHECKBOX_RE = re.compile(r"^(\s*)-\s*\[([ xX])\]\s+(.+)$")


class RequirementKind(str, Enum):
    SECTION = "section"
    TASK = "task"
    RFC2119 = "rfc2119"


class Requirement(BaseModel):
    spec_name: str
    kind: RequirementKind
    text: str
    line_number: int


class CoverageEntry(BaseModel):
    spec_name: str
    requirement_count: int
    task_count: int
    coverage_percent: float


class VerifyReport(BaseModel):
    total_tasks: int
    pending_tasks: int
    completed_tasks: int
    in_progress_tasks: int
    tasks_with_refs: int
    orphan_tasks: int
    coverage: list[CoverageEntry]
    tasks: list[Task]


def normalize_spec_ref(spec_ref: str) -> str:
    """specs/foo.md -> foo"""
    name = spec_ref.removeprefix("specs/")
    return name.removesuffix(".md")


def extract_requirements(spec_dir: Path) -> list[Requirement]:
    """Scan every markdown spec for sections, checkboxes and RFC 2119 keywords."""
    requirements: list[Requirement] = []
    if not spec_dir.exists():
        return requirements

    for path in sorted(spec_dir.glob("*.md")):
        spec_name = path.stem
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"[VERIFY] Skipping unreadable spec {path.name}: {e}")
            continue
        for line_num, line in enumerate(content.splitlines(), 1):
            section = SECTION_RE.match(line)
            if section:
                requirements.append(Requirement(
                    spec_name=spec_name, kind=RequirementKind.SECTION,
                    text=section.group(1), line_number=line_num,
                ))

            checkbox = SPEC_CHECKBOX_RE.match(line)
            if checkbox:
                requirements.append(Requirement(
                    spec_name=spec_name, kind=RequirementKind.TASK,
                    text=checkbox.group(3), line_number=line_num,
                ))

            if RFC2119_RE.search(line):
                requirements.append(Requirement(
                    spec_name=spec_name, kind=RequirementKind.RFC2119,
                    text=line, line_number=line_num,
                ))

    return requirements


def analyze_coverage(spec_dir: Path, tasks: list[Task]) -> list[CoverageEntry]:
    """Per-spec ratio of referencing tasks to requirements, capped at 100%."""
    spec_reqs: dict[str, int] = {}
    for req in extract_requirements(spec_dir):
        spec_reqs[req.spec_name] = spec_reqs.get(req.spec_name, 0) + 1

    spec_tasks: dict[str, int] = {}
    for task in tasks:
        for ref in task.spec_refs:
            name = normalize_spec_ref(ref)
            spec_tasks[name] = spec_tasks.get(name, 0) + 1

    coverage = []
    for spec_name, req_count in sorted(spec_reqs.items()):
        task_count = spec_tasks.get(spec_name, 0)
        percent = min(task_count / req_count * 100.0, 100.0) if req_count else 0.0
        coverage.append(CoverageEntry(
            spec_name=spec_name,
            requirement_count=req_count,
            task_count=task_count,
            coverage_percent=percent,
        ))
    return coverage


def generate_report(plan_path: Path, spec_dir: Path) -> VerifyReport:
    tasks = parse_plan(plan_path)
    total, pending, completed, in_progress = count_tasks(tasks)
    with_refs = sum(1 for t in tasks if t.has_refs)

    report = VerifyReport(
        total_tasks=total,
        pending_tasks=pending,
        completed_tasks=completed,
        in_progress_tasks=in_progress,
        tasks_with_refs=with_refs,
        orphan_tasks=total - with_refs,
        coverage=analyze_coverage(spec_dir, tasks),
        tasks=tasks,
    )
    logger.debug(f"[VERIFY] {total} tasks, {with_refs} with refs, {len(report.coverage)} specs")
    return report
