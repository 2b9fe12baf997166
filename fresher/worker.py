"""
Fresher Worker — one fresh-context agent run per iteration.

Spawns `claude -p <prompt> ... --output-format stream-json` with no session
persistence, routes its stdout through the stream classifier and returns the
run summary with the real exit code filled in. Stderr goes straight to the
terminal.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

from loguru import logger

from fresher.config_loader import CONTROL_DIR, FresherConfig
from fresher.errors import SetupError
from fresher.streaming import ProcessResult, StreamHandler, process_stream

AGENT_BINARY = "claude"
AGENTS_FILE = "AGENTS.md"

DEFAULT_PROMPTS = {
    "planning": (
        "Study the specifications in specs/ and the existing code. "
        "Write or update IMPLEMENTATION_PLAN.md as a prioritized checklist of "
        "`- [ ]` tasks, each annotated with `(refs: specs/<file>.md)`. "
        "Do not implement anything. Commit the plan when done."
    ),
    "building": (
        "Read IMPLEMENTATION_PLAN.md (or impl/README.md and the current focus "
        "feature). Pick the single most important pending task, implement it, "
        "run the tests, mark the task `- [x]` and commit. Do one task only."
    ),
}


def find_agent_binary(name: str = AGENT_BINARY) -> str:
    """Resolve the agent executable on PATH or fail before any iteration runs."""
    path = shutil.which(name)
    if path is None:
        raise SetupError(
            f"{name} command not found. Install Claude Code first: https://claude.ai/claude-code"
        )
    return path


def load_prompt(mode: str, project_dir: Path) -> str:
    """`.fresher/PROMPT.<mode>.md` if present, otherwise the built-in prompt."""
    custom = project_dir / CONTROL_DIR / f"PROMPT.{mode}.md"
    if custom.exists():
        try:
            return custom.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SetupError(f"Failed to read {custom}: {e}") from e
    try:
        return DEFAULT_PROMPTS[mode]
    except KeyError:
        raise SetupError(f"Unknown mode {mode!r}; expected one of {sorted(DEFAULT_PROMPTS)}") from None


def build_command(prompt: str, config: FresherConfig, project_dir: Path, binary: str = AGENT_BINARY) -> list[str]:
    cmd = [binary, "-p", prompt]

    agents_path = project_dir / CONTROL_DIR / AGENTS_FILE
    if agents_path.exists():
        cmd += ["--append-system-prompt-file", str(agents_path)]

    if config.fresher.dangerous_permissions:
        cmd.append("--dangerously-skip-permissions")

    cmd += [
        "--output-format", "stream-json",
        "--max-turns", str(config.fresher.max_turns),
        "--no-session-persistence",
        "--model", config.fresher.model,
        "--verbose",
    ]
    return cmd


class ClaudeWorker:
    def __init__(
        self,
        config: FresherConfig,
        project_dir: Path,
        handler: StreamHandler | None = None,
        binary: str = AGENT_BINARY,
    ):
        self.config = config
        self.project_dir = project_dir
        self.handler = handler or StreamHandler()
        self.binary = binary

    async def run(self, prompt: str) -> ProcessResult:
        cmd = build_command(prompt, self.config, self.project_dir, self.binary)
        logger.debug(f"[WORKER] Spawning {self.binary} (model={self.config.fresher.model})")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self.project_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=None,
            )
        except OSError as e:
            raise SetupError(f"Failed to start {self.binary}: {e}") from e

        try:
            result = await process_stream(proc.stdout, self.handler)
        except BaseException:
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            raise

        exit_code = await proc.wait()
        result.exit_code = exit_code
        logger.debug(
            f"[WORKER] Exited {exit_code} "
            f"(turns={result.num_turns}, cost={result.cost_usd}, error={result.is_error})"
        )
        return result
