"""
Fresher Hook Runner

Hooks are user executables at .fresher/hooks/<name>. They steer the loop
through their exit code:

  0 -> continue    1 -> skip    2 -> abort    anything else -> error

A missing or non-executable hook is NotFound, which callers treat like
continue. Hooks that outlive the timeout are killed (whole process group)
and reaped before Timeout is returned.
"""

from __future__ import annotations

import asyncio
import os
import signal
from enum import Enum
from pathlib import Path
from typing import NamedTuple

from loguru import logger
from pydantic import BaseModel

from fresher.config_loader import CONTROL_DIR, FresherConfig
from fresher.state import State

HOOK_CONTINUE = 0
HOOK_SKIP = 1
HOOK_ABORT = 2

HOOK_STARTED = "started"
HOOK_NEXT_ITERATION = "next_iteration"
HOOK_FINISHED = "finished"


class HookSignal(str, Enum):
    CONTINUE = "continue"
    SKIP = "skip"
    ABORT = "abort"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    ERROR = "error"


class HookResult(BaseModel):
    signal: HookSignal
    message: str = ""

    @classmethod
    def from_exit_code(cls, code: int) -> "HookResult":
        if code == HOOK_CONTINUE:
            return cls(signal=HookSignal.CONTINUE)
        if code == HOOK_SKIP:
            return cls(signal=HookSignal.SKIP)
        if code == HOOK_ABORT:
            return cls(signal=HookSignal.ABORT)
        return cls(signal=HookSignal.ERROR, message=f"Hook exited with code {code}")


class NextIterationDecision(NamedTuple):
    proceed: bool
    skip: bool


def hook_path(project_dir: Path, name: str) -> Path:
    return project_dir / CONTROL_DIR / "hooks" / name


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.kill()


async def run_hook(
    name: str,
    state: State,
    config: FresherConfig,
    project_dir: Path,
    timeout: float | None = None,
) -> HookResult:
    """Run one hook and map its outcome. Never raises for hook failures."""
    if not config.hooks.enabled:
        return HookResult(signal=HookSignal.NOT_FOUND)

    path = hook_path(project_dir, name)
    if not path.is_file() or not os.access(path, os.X_OK):
        return HookResult(signal=HookSignal.NOT_FOUND)

    env = {
        **os.environ,
        **state.to_env_vars(),
        "FRESHER_PROJECT_DIR": str(project_dir),
        "FRESHER_MODE": config.fresher.mode,
    }
    limit = config.hooks.timeout if timeout is None else timeout

    logger.debug(f"[HOOK] Running {name} (timeout {limit}s)")
    try:
        proc = await asyncio.create_subprocess_exec(
            str(path),
            cwd=str(project_dir),
            env=env,
            start_new_session=True,
        )
    except OSError as e:
        return HookResult(signal=HookSignal.ERROR, message=f"Failed to run hook: {e}")

    try:
        code = await asyncio.wait_for(proc.wait(), timeout=limit)
    except asyncio.TimeoutError:
        _kill_group(proc)
        await proc.wait()
        return HookResult(signal=HookSignal.TIMEOUT)

    return HookResult.from_exit_code(code)


# ---------------------------------------------------------------------------
# Call sites
# ---------------------------------------------------------------------------

async def run_started_hook(state: State, config: FresherConfig, project_dir: Path) -> bool:
    """Returns False only when the hook asks to abort before the first iteration."""
    result = await run_hook(HOOK_STARTED, state, config, project_dir)
    if result.signal is HookSignal.ABORT:
        logger.info("[HOOK] started hook requested abort")
        return False
    if result.signal is HookSignal.TIMEOUT:
        logger.warning("[HOOK] started hook timed out, continuing")
    elif result.signal is HookSignal.ERROR:
        logger.warning(f"[HOOK] started hook error: {result.message}")
    return True


async def run_next_iteration_hook(
    state: State, config: FresherConfig, project_dir: Path
) -> NextIterationDecision:
    result = await run_hook(HOOK_NEXT_ITERATION, state, config, project_dir)
    if result.signal is HookSignal.SKIP:
        logger.info(f"[HOOK] next_iteration hook skipped iteration {state.iteration}")
        return NextIterationDecision(proceed=True, skip=True)
    if result.signal is HookSignal.ABORT:
        logger.info("[HOOK] next_iteration hook requested abort")
        return NextIterationDecision(proceed=False, skip=False)
    if result.signal is HookSignal.TIMEOUT:
        logger.warning("[HOOK] next_iteration hook timed out, continuing")
    elif result.signal is HookSignal.ERROR:
        logger.warning(f"[HOOK] next_iteration hook error: {result.message}")
    return NextIterationDecision(proceed=True, skip=False)


async def run_finished_hook(state: State, config: FresherConfig, project_dir: Path) -> None:
    result = await run_hook(HOOK_FINISHED, state, config, project_dir)
    if result.signal is HookSignal.TIMEOUT:
        logger.warning("[HOOK] finished hook timed out")
    elif result.signal is HookSignal.ERROR:
        logger.warning(f"[HOOK] finished hook error: {result.message}")


class HookRunner:
    """Binds config and project dir so the controller can call hooks by stage."""

    def __init__(self, config: FresherConfig, project_dir: Path):
        self.config = config
        self.project_dir = project_dir

    async def started(self, state: State) -> bool:
        return await run_started_hook(state, self.config, self.project_dir)

    async def next_iteration(self, state: State) -> NextIterationDecision:
        return await run_next_iteration_hook(state, self.config, self.project_dir)

    async def finished(self, state: State) -> None:
        await run_finished_hook(state, self.config, self.project_dir)
