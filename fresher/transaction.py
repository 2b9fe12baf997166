"""
Fresher File Transactions

The only non-idempotent mutations Fresher performs are "move a feature
file into .archive/" and "write impl/ then rename the legacy plan". Both
go through FileTransaction so a failure half-way leaves either the full
result or the original files, never a mix.

Writes are staged next to their destination and promoted with os.replace;
moves are recorded and performed after all writes. On any error, every
completed step is undone in reverse order.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from fresher.errors import FresherError


class TransactionError(FresherError):
    pass


@dataclass
class _Write:
    dest: Path
    staged: Path
    backup: Path | None = None


@dataclass
class _Move:
    src: Path
    dest: Path


class FileTransaction:
    """
    Usage:
        with FileTransaction() as tx:
            tx.write(path, text)
            tx.move(old, new)
        # committed on clean exit, rolled back on exception
    """

    def __init__(self) -> None:
        self._writes: list[_Write] = []
        self._moves: list[_Move] = []
        self._done: list[_Write | _Move] = []
        self._created_dirs: list[Path] = []
        self._committed = False

    # ------------------------------------------------------------------
    # Staging
    # ------------------------------------------------------------------

    def mkdir(self, path: Path) -> None:
        """Create a directory now; removed on rollback if it was new and is still empty."""
        missing = []
        probe = path
        while not probe.exists():
            missing.append(probe)
            probe = probe.parent
        path.mkdir(parents=True, exist_ok=True)
        self._created_dirs.extend(reversed(missing))

    def write(self, dest: Path, content: str) -> None:
        self.mkdir(dest.parent)
        fd, staged = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".staged", dir=dest.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        self._writes.append(_Write(dest=dest, staged=Path(staged)))

    def move(self, src: Path, dest: Path) -> None:
        if not src.exists():
            raise TransactionError(f"Cannot move missing file: {src}")
        if dest.exists():
            raise TransactionError(f"Refusing to overwrite existing file: {dest}")
        self._moves.append(_Move(src=src, dest=dest))

    # ------------------------------------------------------------------
    # Commit / rollback
    # ------------------------------------------------------------------

    def commit(self) -> None:
        try:
            for w in self._writes:
                if w.dest.exists():
                    w.backup = w.dest.with_name(f".{w.dest.name}.bak")
                    os.replace(w.dest, w.backup)
                # Tracked before promotion; rollback restores the backup if the replace fails
                self._done.append(w)
                os.replace(w.staged, w.dest)

            for m in self._moves:
                m.dest.parent.mkdir(parents=True, exist_ok=True)
                os.replace(m.src, m.dest)
                self._done.append(m)
                if not m.dest.exists() or m.src.exists():
                    raise TransactionError(f"Move did not take effect: {m.src} -> {m.dest}")
        except Exception as e:
            self.rollback()
            if isinstance(e, TransactionError):
                raise
            raise TransactionError(f"Transaction failed and was rolled back: {e}") from e

        for w in self._writes:
            if w.backup is not None:
                w.backup.unlink(missing_ok=True)
        self._committed = True
        logger.debug(f"[TX] Committed {len(self._writes)} writes, {len(self._moves)} moves")

    def rollback(self) -> None:
        for step in reversed(self._done):
            try:
                if isinstance(step, _Move):
                    if step.dest.exists() and not step.src.exists():
                        os.replace(step.dest, step.src)
                else:
                    step.dest.unlink(missing_ok=True)
                    if step.backup is not None and step.backup.exists():
                        os.replace(step.backup, step.dest)
            except OSError as e:
                logger.error(f"[TX] Rollback step failed for {step}: {e}")
        self._done.clear()

        for w in self._writes:
            w.staged.unlink(missing_ok=True)

        for d in reversed(self._created_dirs):
            try:
                d.rmdir()
            except OSError:
                logger.debug(f"[TX] Leaving non-empty directory {d}")
        self._created_dirs.clear()
        logger.warning("[TX] Rolled back")

    def __enter__(self) -> "FileTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.commit()
        elif not self._committed:
            self.rollback()
        return False
