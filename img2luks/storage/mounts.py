# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/storage/mounts.py
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, List, Optional, Sequence

from ..core.exceptions import ResourceError
from ..core.recovery_manager import CleanupAction, RecoveryManager
from ..core.retry import retry_operation
from ..core.utils import U


def is_mounted(logger: Any, target: Path) -> bool:
    cp = U.run_cmd(logger, ["mountpoint", "-q", str(target)], check=False, capture=True)
    return cp.returncode == 0


def mount(
    logger: Any,
    source: str,
    target: Path,
    *,
    fstype: Optional[str] = None,
    options: Optional[Sequence[str]] = None,
    bind: bool = False,
) -> None:
    target = Path(target)
    target.mkdir(parents=True, exist_ok=True)

    cmd: List[str] = ["mount"]
    if bind:
        cmd.append("--bind")
    if fstype:
        cmd += ["-t", fstype]
    if options:
        cmd += ["-o", ",".join(options)]
    cmd += [str(source), str(target)]

    try:
        U.run_cmd(logger, cmd, capture=True)
    except subprocess.CalledProcessError as e:
        raise ResourceError(msg=f"failed to mount {source} on {target}", cause=e).with_context(
            stderr=(e.stderr or "").strip()
        ) from e


def unmount(logger: Any, target: Path, *, attempts: int = 3) -> None:
    """
    Unmount `target`; a target that is not mounted is fine.

    Busy mounts get a few retries, then a lazy detach so the unwind can
    carry on to the mapping and loop device.
    """
    target = Path(target)
    if not is_mounted(logger, target):
        logger.debug("Not mounted, skipping: %s", target)
        return

    try:
        retry_operation(
            lambda: U.run_cmd(logger, ["umount", str(target)], capture=True),
            max_attempts=attempts,
            base_backoff_s=0.5,
            max_backoff_s=2.0,
            jitter_s=0.0,
            exceptions=subprocess.CalledProcessError,
            operation_name=f"umount {target}",
            logger=logger,
        )
    except subprocess.CalledProcessError:
        logger.warning("⚠️  Lazy unmount of busy %s", target)
        U.run_cmd(logger, ["umount", "-l", str(target)], capture=True)


def mount_tracked(
    logger: Any,
    recovery: RecoveryManager,
    source: str,
    target: Path,
    **kwargs: Any,
) -> CleanupAction:
    """Mount and register the matching unmount with the run's cleanup stack."""
    mount(logger, source, target, **kwargs)
    return recovery.register_cleanup(lambda: unmount(logger, target), f"umount {target}", target=target)
