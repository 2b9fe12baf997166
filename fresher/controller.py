"""
Fresher Controller — The Loop

It is NOT smart. It is deterministic. Every iteration, in order:

  1. interrupt requested?          -> finish: manual
  2. iteration ceiling reached?    -> finish: max_iterations
  3. no pending work (building)?   -> finish: complete
  4. start iteration (counter + revision snapshot), persist
  5. next_iteration hook           -> abort: finish manual / skip: back to 1
  6. run the worker, classify its stream
  7. tally commits, persist
  8. worker exited non-zero?       -> finish: error
  9. smart termination, nothing changed? -> finish: no_changes

Whatever the reason, the run then updates its duration, persists, and runs
the finished hook exactly once.

Everything with side effects (clock, git, worker, hooks, state file) is a
collaborator passed in, so the loop can be driven entirely by fakes.
"""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime
from pathlib import Path
from typing import Callable

from loguru import logger
from pydantic import BaseModel
from rich.console import Console
from rich.table import Table

from fresher.config_loader import FresherConfig
from fresher.event_bus import (
    ITERATION_COMPLETED,
    ITERATION_SKIPPED,
    ITERATION_STARTED,
    RUN_FINISHED,
    RUN_STARTED,
    EventBus,
)
from fresher.git import GitProbe
from fresher.hooks import HookRunner
from fresher.impl_index import ImplIndex, ImplIndexError, has_hierarchical_plan
from fresher.plan import has_pending_tasks
from fresher.state import FinishType, State, StateStore, utcnow
from fresher.worker import ClaudeWorker, load_prompt

BUILDING = "building"
PLANNING = "planning"


# ---------------------------------------------------------------------------
# Interrupt
# ---------------------------------------------------------------------------

class InterruptFlag:
    """
    Set from a SIGINT/SIGTERM handler, read only between iterations.

    The first signal requests a graceful stop and removes the handler, so a
    second Ctrl+C falls through to Python's default KeyboardInterrupt.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self) -> None:
        self._set = False
        self._loop: asyncio.AbstractEventLoop | None = None

    def is_set(self) -> bool:
        return self._set

    def set(self) -> None:
        self._set = True

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        for sig in self.SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug(f"[LOOP] Cannot install handler for {sig.name}")

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in self.SIGNALS:
            try:
                self._loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                pass
        self._loop = None

    def _on_signal(self, sig: signal.Signals) -> None:
        self._set = True
        logger.warning(f"[LOOP] Received {sig.name}, finishing current iteration...")
        if self._loop is not None:
            self._loop.remove_signal_handler(sig)


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------

class LoopOutcome(BaseModel):
    state: State
    finish_type: FinishType


def default_pending_work(config: FresherConfig, project_dir: Path) -> Callable[[], bool]:
    plan_path = project_dir / config.paths.plan_file
    impl_dir = project_dir / config.paths.impl_dir
    return lambda: has_pending_tasks(plan_path, impl_dir)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class Controller:
    def __init__(
        self,
        config: FresherConfig,
        project_dir: Path,
        *,
        state_store: StateStore | None = None,
        git: GitProbe | None = None,
        worker: ClaudeWorker | None = None,
        hooks: HookRunner | None = None,
        bus: EventBus | None = None,
        interrupt: InterruptFlag | None = None,
        clock: Callable[[], datetime] = utcnow,
        pending_work: Callable[[], bool] | None = None,
        prompt: str | None = None,
        console: Console | None = None,
    ):
        self.config = config
        self.project_dir = project_dir
        self.mode = config.fresher.mode
        self.store = state_store or StateStore.for_project(project_dir)
        self.git = git or GitProbe(project_dir)
        self.worker = worker or ClaudeWorker(config, project_dir)
        self.hooks = hooks or HookRunner(config, project_dir)
        self.bus = bus or EventBus()
        self.interrupt = interrupt or InterruptFlag()
        self.clock = clock
        self.console = console or Console()
        self.prompt = prompt if prompt is not None else load_prompt(self.mode, project_dir)

        # Planning creates the plan, so there is nothing to check yet
        if pending_work is None and self.mode == BUILDING:
            pending_work = default_pending_work(config, project_dir)
        self.pending_work = pending_work

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self) -> LoopOutcome:
        state = State(started_at=self.clock())
        max_iter = self.config.fresher.max_iterations

        self.console.print(f"[bold green]Starting Fresher ({self.mode.title()} Mode)[/]")
        self.bus.emit(RUN_STARTED, 0, {"mode": self.mode, "max_iterations": max_iter})

        if not await self.hooks.started(state):
            state.set_finish(FinishType.MANUAL, self.clock())
            self.store.save(state)
            self.bus.emit(RUN_FINISHED, state.iteration, {"finish_type": FinishType.MANUAL.value})
            return LoopOutcome(state=state, finish_type=FinishType.MANUAL)

        finish_type = await self._loop(state)

        state.update_duration(self.clock())
        self.store.save(state)
        await self.hooks.finished(state)

        self.bus.emit(RUN_FINISHED, state.iteration, {
            "finish_type": finish_type.value,
            "total_commits": state.total_commits,
            "duration_seconds": state.duration_seconds,
        })
        logger.info(f"[LOOP] Finished after {state.iteration} iterations: {finish_type.value}")
        self._print_summary(state)
        return LoopOutcome(state=state, finish_type=finish_type)

    async def _loop(self, state: State) -> FinishType:
        max_iter = self.config.fresher.max_iterations

        while True:
            if self.interrupt.is_set():
                return self._finish(state, FinishType.MANUAL)

            if max_iter > 0 and state.iteration >= max_iter:
                self.console.print("\n[yellow]Max iterations reached[/]")
                return self._finish(state, FinishType.MAX_ITERATIONS)

            if self.pending_work is not None and not self.pending_work():
                self.console.print("[green]All tasks complete![/]")
                return self._finish(state, FinishType.COMPLETE)

            self._log_focus()

            state.start_iteration(self.git.current_sha(), self.clock())
            self.store.save(state)
            self.console.print(f"[bold cyan]Iteration {state.iteration}[/] {'─' * 30}")
            self.bus.emit(ITERATION_STARTED, state.iteration, {"sha": state.iteration_sha})

            decision = await self.hooks.next_iteration(state)
            if not decision.proceed:
                return self._finish(state, FinishType.MANUAL)
            if decision.skip:
                self.console.print("[yellow]Skipping iteration (hook requested)[/]")
                self.bus.emit(ITERATION_SKIPPED, state.iteration)
                continue

            result = await self.worker.run(self.prompt)

            commits = self.git.count_commits_since(state.iteration_sha)
            head_sha = self.git.current_sha()
            state.complete_iteration(result.exit_code, commits, head_sha, self.clock())
            self.store.save(state)

            self.bus.emit(ITERATION_COMPLETED, state.iteration, {
                "exit_code": result.exit_code,
                "commits": commits,
                "num_turns": result.num_turns,
                "cost_usd": result.cost_usd,
                "is_error": result.is_error,
            })
            if commits > 0:
                self.console.print(f"  [dim]Commits:[/] [green]{commits}[/]")

            if result.exit_code != 0:
                self.console.print(f"\n[red]Claude exited with code {result.exit_code}[/]")
                return self._finish(state, FinishType.ERROR)

            if self.config.fresher.smart_termination and head_sha == state.iteration_sha and commits == 0:
                self.console.print("\n[yellow]No changes made this iteration[/]")
                return self._finish(state, FinishType.NO_CHANGES)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _finish(self, state: State, finish_type: FinishType) -> FinishType:
        state.set_finish(finish_type, self.clock())
        return finish_type

    def _log_focus(self) -> None:
        if self.mode != BUILDING:
            return
        impl_dir = self.project_dir / self.config.paths.impl_dir
        if not has_hierarchical_plan(impl_dir):
            return
        try:
            focus = ImplIndex.load(impl_dir).select_next_focus()
        except ImplIndexError as e:
            logger.warning(f"[LOOP] Could not load index for focus selection: {e}")
            return
        if focus is not None:
            logger.info(f"[LOOP] Focus: {focus.name} ({focus.pending_tasks} pending)")

    def _print_summary(self, state: State) -> None:
        table = Table(title="Summary", show_header=False)
        table.add_column("Field", style="dim")
        table.add_column("Value", style="cyan")
        table.add_row("Iterations", str(state.iteration))
        table.add_row("Commits", str(state.total_commits))
        table.add_row("Duration", f"{state.duration_seconds}s")
        if state.finish_type is not None:
            table.add_row("Finished", f"[yellow]{state.finish_type.value}[/]")
        self.console.print(table)
