# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/core/recovery_manager.py
"""
Resource cleanup for one pipeline run.

Every system resource a run acquires (loop device, mount, open mapping,
chroot bind mount, copied helper binary) is registered here as a
CleanupAction right after it is acquired. `execute_cleanup()` releases
them in reverse registration order, then removes tracked work
directories. It runs at most once, never raises, and logs each failed
step before moving on to the next.

Actions can also be released early (the original root is unmounted as
soon as the backup is done); an action that already ran is skipped by
the final unwind.
"""

from __future__ import annotations

import enum
import os
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional


class Stage(str, enum.Enum):
    """Boundaries of a pipeline run, in order."""

    STARTED = "started"
    LOOP_ATTACHED = "loop-attached"
    BACKED_UP = "backed-up"
    CONTAINER_OPEN = "container-open"
    RESTORED = "restored"
    BOOT_CONFIGURED = "boot-configured"
    FINISHED = "finished"

    @property
    def rank(self) -> int:
        return list(Stage).index(self)


@dataclass
class CleanupAction:
    fn: Callable[[], Any]
    description: str
    done: bool = False
    error: Optional[str] = None
    target: Optional[Path] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def release(self, logger: Any) -> bool:
        """Run the action once. Returns False when it raised."""
        with self._lock:
            if self.done:
                return True
            self.done = True
        try:
            self.fn()
            logger.debug("Released: %s", self.description)
            return True
        except Exception as e:
            self.error = f"{type(e).__name__}: {e}"
            logger.warning("Cleanup step failed (%s): %s", self.description, e)
            return False


class RecoveryManager:
    def __init__(self, logger: Any, *, run_id: Optional[str] = None):
        self.logger = logger
        self.run_id = run_id
        self.cleanup_actions: List[CleanupAction] = []
        self.directories: List[Path] = []
        self.stage: Stage = Stage.STARTED
        self.failures: List[CleanupAction] = []
        self._executed = False
        self._lock = threading.Lock()

    # --- registration -----------------------------------------------------

    def register_cleanup(
        self, fn: Callable[[], Any], description: str, *, target: Optional[Path] = None
    ) -> CleanupAction:
        """`target` is the mount point an unmount action releases."""
        action = CleanupAction(fn=fn, description=description, target=Path(target) if target else None)
        with self._lock:
            self.cleanup_actions.append(action)
        self.logger.debug("Tracking: %s", description)
        return action

    def track_directory(self, path: Path) -> None:
        self.directories.append(Path(path))

    # --- stages -----------------------------------------------------------

    def mark_stage(self, stage: Stage) -> None:
        if stage.rank < self.stage.rank:
            raise ValueError(f"stage order violation: {self.stage.value} -> {stage.value}")
        self.stage = stage
        self.logger.debug("Stage reached: %s", stage.value)

    # --- release ----------------------------------------------------------

    @property
    def pending(self) -> List[CleanupAction]:
        return [a for a in self.cleanup_actions if not a.done]

    def execute_cleanup(self) -> bool:
        """
        Unwind everything still held, newest first.

        Returns True when every step succeeded. Calling it again is a no-op.
        """
        with self._lock:
            if self._executed:
                return not self.failures
            self._executed = True
            actions = list(reversed(self.cleanup_actions))

        pending = [a for a in actions if not a.done]
        if pending:
            self.logger.info("🧹 Releasing %d resource(s) (stage=%s)", len(pending), self.stage.value)
        for action in pending:
            if not action.release(self.logger):
                self.failures.append(action)

        self.cleanup_directories()

        if self.failures:
            self.logger.error(
                "Cleanup finished with %d failed step(s): %s",
                len(self.failures),
                "; ".join(a.description for a in self.failures),
            )
        return not self.failures

    def cleanup_directories(self) -> None:
        """Remove tracked directories, except those something is still mounted in."""
        stuck = [a.target for a in self.cleanup_actions if a.error and a.target is not None]
        for d in reversed(self.directories):
            if not d.exists():
                continue
            held = next((t for t in stuck if t == d or d in t.parents), None) or _mount_under(d)
            if held is not None:
                self.logger.warning("⚠️  Leaving %s in place: %s is still mounted", d, held)
                continue
            try:
                shutil.rmtree(d)
                self.logger.debug("Removed %s", d)
            except OSError as e:
                self.logger.warning("Could not remove directory %s: %s", d, e)
        self.directories.clear()

    def __enter__(self) -> "RecoveryManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.execute_cleanup()
        return False


def _mount_under(root: Path) -> Optional[Path]:
    """First mount point found below `root`, if any."""
    for dirpath, dirnames, _files in os.walk(root):
        for name in list(dirnames):
            p = Path(dirpath) / name
            if os.path.ismount(p):
                return p
    return None
