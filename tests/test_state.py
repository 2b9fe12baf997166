from datetime import datetime, timedelta, timezone

import pytest

from fresher.state import FinishType, State, StateError, StateStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_iteration_lifecycle():
    state = State(started_at=T0)

    state.start_iteration("abc", now=T0 + timedelta(seconds=5))
    assert state.iteration == 1
    assert state.iteration_sha == "abc"
    assert state.iteration_start == T0 + timedelta(seconds=5)

    state.complete_iteration(exit_code=0, commits=2, head_sha="def", now=T0 + timedelta(seconds=65))
    assert state.total_commits == 2
    assert state.last_commit_sha == "def"
    assert state.duration_seconds == 65

    state.start_iteration("def")
    state.complete_iteration(exit_code=1, commits=0, head_sha="def", now=T0 + timedelta(seconds=90))
    assert state.iteration == 2
    assert state.last_exit_code == 1
    assert state.total_commits == 2

    state.set_finish(FinishType.ERROR, now=T0 + timedelta(seconds=100))
    assert state.finish_type is FinishType.ERROR
    assert state.duration_seconds == 100


def test_last_commit_sha_only_moves_with_commits():
    state = State(started_at=T0)
    state.start_iteration("abc", now=T0)
    state.complete_iteration(exit_code=0, commits=0, head_sha="abc", now=T0)
    assert state.last_commit_sha is None


def test_env_vars():
    state = State(started_at=T0, iteration=3, total_commits=4, duration_seconds=120, last_exit_code=0)
    env = state.to_env_vars()
    assert env == {
        "FRESHER_ITERATION": "3",
        "FRESHER_LAST_EXIT_CODE": "0",
        "FRESHER_TOTAL_COMMITS": "4",
        "FRESHER_DURATION": "120",
        "FRESHER_TOTAL_ITERATIONS": "3",
    }

    state.last_commit_sha = "deadbeef"
    state.finish_type = FinishType.NO_CHANGES
    env = state.to_env_vars()
    assert env["FRESHER_LAST_COMMIT_SHA"] == "deadbeef"
    assert env["FRESHER_FINISH_TYPE"] == "no_changes"


def test_round_trip(tmp_path):
    store = StateStore(tmp_path / ".fresher" / ".state.json")
    state = State(
        iteration=5,
        last_exit_code=2,
        last_commit_sha="abc123",
        started_at=T0,
        total_commits=7,
        duration_seconds=300,
        finish_type=FinishType.MAX_ITERATIONS,
        iteration_start=T0 + timedelta(minutes=4),
        iteration_sha="abc000",
    )

    store.save(state)
    assert store.load() == state
    assert list(store.path.parent.iterdir()) == [store.path]


def test_load_missing_returns_none(tmp_path):
    assert StateStore(tmp_path / "none.json").load() is None


def test_load_corrupt_is_fatal(tmp_path):
    path = tmp_path / ".state.json"
    path.write_text("{not json")
    with pytest.raises(StateError):
        StateStore(path).load()


def test_load_undecodable_is_fatal(tmp_path):
    path = tmp_path / ".state.json"
    path.write_bytes(b"{\"iteration\": \xff}")
    with pytest.raises(StateError):
        StateStore(path).load()


def test_for_project(tmp_path):
    assert StateStore.for_project(tmp_path).path == tmp_path / ".fresher" / ".state.json"
