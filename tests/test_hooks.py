import asyncio
import time

import pytest

from fresher.config_loader import FresherConfig
from fresher.hooks import (
    HookResult,
    HookSignal,
    hook_path,
    run_finished_hook,
    run_hook,
    run_next_iteration_hook,
    run_started_hook,
)
from fresher.state import FinishType, State


def _install(project, name: str, body: str, executable: bool = True):
    path = hook_path(project, name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body + "\n")
    if executable:
        path.chmod(0o755)
    return path


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def config():
    cfg = FresherConfig()
    cfg.fresher.mode = "building"
    cfg.hooks.timeout = 5
    return cfg


@pytest.mark.parametrize("code,signal", [
    (0, HookSignal.CONTINUE),
    (1, HookSignal.SKIP),
    (2, HookSignal.ABORT),
])
def test_exit_code_mapping(tmp_path, config, code, signal):
    _install(tmp_path, "next_iteration", f"exit {code}")
    result = _run(run_hook("next_iteration", State(), config, tmp_path))
    assert result.signal is signal


def test_other_exit_code_is_error(tmp_path, config):
    _install(tmp_path, "next_iteration", "exit 99")
    result = _run(run_hook("next_iteration", State(), config, tmp_path))
    assert result.signal is HookSignal.ERROR
    assert "99" in result.message


def test_missing_hook_is_not_found(tmp_path, config):
    result = _run(run_hook("started", State(), config, tmp_path))
    assert result.signal is HookSignal.NOT_FOUND


def test_non_executable_hook_is_not_found(tmp_path, config):
    _install(tmp_path, "started", "exit 2", executable=False)
    result = _run(run_hook("started", State(), config, tmp_path))
    assert result.signal is HookSignal.NOT_FOUND


def test_disabled_hooks_are_not_found(tmp_path, config):
    _install(tmp_path, "started", "exit 2")
    config.hooks.enabled = False
    result = _run(run_hook("started", State(), config, tmp_path))
    assert result.signal is HookSignal.NOT_FOUND


def test_timeout_kills_hook(tmp_path, config):
    marker = tmp_path / "still-running"
    _install(tmp_path, "next_iteration", f"sleep 3\ntouch {marker}")

    started = time.monotonic()
    result = _run(run_hook("next_iteration", State(), config, tmp_path, timeout=0.5))
    elapsed = time.monotonic() - started

    assert result.signal is HookSignal.TIMEOUT
    assert elapsed < 2.5

    # The killed hook never gets to finish its work
    time.sleep(3)
    assert not marker.exists()


def test_hook_environment(tmp_path, config):
    out = tmp_path / "env.txt"
    _install(
        tmp_path,
        "finished",
        f'echo "$FRESHER_ITERATION $FRESHER_TOTAL_COMMITS $FRESHER_FINISH_TYPE $FRESHER_MODE $(pwd -P)" > {out}',
    )
    state = State(iteration=4, total_commits=2, finish_type=FinishType.COMPLETE)

    _run(run_finished_hook(state, config, tmp_path))

    iteration, commits, finish, mode, cwd = out.read_text().split()
    assert (iteration, commits, finish, mode) == ("4", "2", "complete", "building")
    assert cwd == str(tmp_path.resolve())


def test_from_exit_code():
    assert HookResult.from_exit_code(0) == HookResult(signal=HookSignal.CONTINUE)
    assert HookResult.from_exit_code(-9).message == "Hook exited with code -9"


# ---------------------------------------------------------------------------
# Call-site policies
# ---------------------------------------------------------------------------

def test_started_hook_policy(tmp_path, config):
    assert _run(run_started_hook(State(), config, tmp_path)) is True

    _install(tmp_path, "started", "exit 2")
    assert _run(run_started_hook(State(), config, tmp_path)) is False

    _install(tmp_path, "started", "exit 7")
    assert _run(run_started_hook(State(), config, tmp_path)) is True


def test_next_iteration_hook_policy(tmp_path, config):
    assert _run(run_next_iteration_hook(State(), config, tmp_path)) == (True, False)

    _install(tmp_path, "next_iteration", "exit 1")
    assert _run(run_next_iteration_hook(State(), config, tmp_path)) == (True, True)

    _install(tmp_path, "next_iteration", "exit 2")
    assert _run(run_next_iteration_hook(State(), config, tmp_path)) == (False, False)

    _install(tmp_path, "next_iteration", "exit 42")
    assert _run(run_next_iteration_hook(State(), config, tmp_path)) == (True, False)


def test_finished_hook_never_raises(tmp_path, config):
    _install(tmp_path, "finished", "exit 2")
    assert _run(run_finished_hook(State(), config, tmp_path)) is None
