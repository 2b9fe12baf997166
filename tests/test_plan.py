from pathlib import Path

import pytest

from fresher.plan import (
    PlanError,
    TaskStatus,
    count_tasks,
    has_pending_tasks,
    parse_plan,
    parse_plan_text,
)

PLAN = """\
# Implementation Plan

## Priority 1: Core

- [x] Set up project (refs: specs/core.md)
- [ ] Add login flow (refs: specs/auth.md, specs/session.md)
  - Dependencies: Set up project
  - Complexity: medium

## Priority 2: Polish

- [~] Write docs
  - Dependencies: none
- [X] Ship it
not a task line
-[ ] tight checkbox still counts
"""


def test_parse_plan_fields():
    tasks = parse_plan_text(PLAN)
    assert [t.description for t in tasks] == [
        "Set up project",
        "Add login flow",
        "Write docs",
        "Ship it",
        "tight checkbox still counts",
    ]

    setup, login, docs, ship, tight = tasks
    assert setup.status is TaskStatus.COMPLETED
    assert setup.spec_refs == ["specs/core.md"]
    assert setup.priority == 1
    assert setup.line_number == 5

    assert login.status is TaskStatus.PENDING
    assert login.spec_refs == ["specs/auth.md", "specs/session.md"]
    assert login.dependencies == ["Set up project"]
    assert login.complexity == "medium"

    assert docs.status is TaskStatus.IN_PROGRESS
    assert docs.priority == 2
    assert docs.dependencies == []
    assert not docs.has_refs

    assert ship.status is TaskStatus.COMPLETED
    assert tight.status is TaskStatus.PENDING


def test_tasks_are_immutable():
    task = parse_plan_text("- [ ] one")[0]
    with pytest.raises(Exception):
        task.description = "two"


def test_priority_absent_before_first_header():
    tasks = parse_plan_text("- [ ] early\n## Priority 3\n- [ ] late\n")
    assert tasks[0].priority is None
    assert tasks[1].priority == 3


def test_count_tasks():
    assert count_tasks(parse_plan_text(PLAN)) == (5, 2, 2, 1)


def test_parse_plan_missing_file_is_fatal(tmp_path):
    with pytest.raises(PlanError):
        parse_plan(tmp_path / "nope.md")


def test_parse_plan_invalid_utf8_is_fatal(tmp_path):
    plan = tmp_path / "IMPLEMENTATION_PLAN.md"
    plan.write_bytes(b"- [ ] task \xff\xfe\n")
    with pytest.raises(PlanError):
        parse_plan(plan)


# ---------------------------------------------------------------------------
# has_pending_tasks
# ---------------------------------------------------------------------------

def test_legacy_pending_checkbox(tmp_path):
    plan = tmp_path / "IMPLEMENTATION_PLAN.md"
    plan.write_text("- [x] done\n- [ ] todo\n")
    assert has_pending_tasks(plan, tmp_path / "impl")


def test_legacy_all_done(tmp_path):
    plan = tmp_path / "IMPLEMENTATION_PLAN.md"
    plan.write_text("- [x] done\n- [~] in progress is not a pending checkbox\n")
    assert not has_pending_tasks(plan, tmp_path / "impl")


def test_legacy_numbered_headers(tmp_path):
    plan = tmp_path / "IMPLEMENTATION_PLAN.md"
    plan.write_text("### 1.1 Done ✅\n### 1.2 Also done ✓\n")
    assert not has_pending_tasks(plan, tmp_path / "impl")

    plan.write_text("### 1.1 Done ✅\n### 1.2 Still open\n")
    assert has_pending_tasks(plan, tmp_path / "impl")


def test_legacy_missing_plan(tmp_path):
    assert not has_pending_tasks(tmp_path / "missing.md", tmp_path / "impl")


def test_hierarchical_wins_over_legacy(tmp_path):
    plan = tmp_path / "IMPLEMENTATION_PLAN.md"
    plan.write_text("- [ ] legacy todo\n")
    impl = tmp_path / "impl"
    impl.mkdir()
    (impl / "README.md").write_text("# Index\n")
    (impl / "auth.md").write_text("- [x] done\n")
    assert not has_pending_tasks(plan, impl)

    (impl / "api.md").write_text("- [ ] todo\n")
    assert has_pending_tasks(plan, impl)


def test_hierarchical_ignores_archive_and_counts_readme(tmp_path):
    impl = tmp_path / "impl"
    (impl / ".archive").mkdir(parents=True)
    (impl / ".archive" / "old.md").write_text("- [ ] forgotten\n")
    (impl / "README.md").write_text("| [auth](./auth.md) | - [ ] in a table row |\n")
    (impl / "notes.txt").write_text("- [ ] not markdown\n")
    # README line starts with "|" so the pending pattern does not match it
    assert not has_pending_tasks(Path("IMPLEMENTATION_PLAN.md"), impl)

    (impl / "README.md").write_text("## Cross-Cutting Tasks\n- [ ] update changelog\n")
    assert has_pending_tasks(Path("IMPLEMENTATION_PLAN.md"), impl)


def test_hierarchical_skips_undecodable_feature(tmp_path):
    impl = tmp_path / "impl"
    impl.mkdir()
    (impl / "README.md").write_text("# Index\n")
    (impl / "bad.md").write_bytes(b"- [x] done \xff\n")
    assert not has_pending_tasks(tmp_path / "IMPLEMENTATION_PLAN.md", impl)

    (impl / "good.md").write_text("- [ ] todo\n")
    assert has_pending_tasks(tmp_path / "IMPLEMENTATION_PLAN.md", impl)


def test_legacy_invalid_utf8_is_fatal(tmp_path):
    plan = tmp_path / "IMPLEMENTATION_PLAN.md"
    plan.write_bytes(b"- [ ] task \xff\n")
    with pytest.raises(PlanError):
        has_pending_tasks(plan, tmp_path / "impl")
