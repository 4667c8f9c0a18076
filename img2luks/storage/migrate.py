# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/storage/migrate.py
"""
Root filesystem relocation through a staging directory.

The encrypted filesystem only exists after the original partition has
been read and unmounted (luksFormat overwrites it), so content makes two
trips: partition -> staging, staging -> container. rsync does the
mirroring; the flags keep hardlinks, ACLs, xattrs, sparse files and
numeric ownership exactly as they were.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Any, List, Type

from ..core.exceptions import MigrationError, RestoreError
from ..core.utils import U

RSYNC_MIRROR_FLAGS = [
    "-aHAXxS",
    "--numeric-ids",
]


class ContentMigrator:
    def __init__(self, logger: Any, *, progress: bool = False):
        self.logger = logger
        self.progress = progress

    def rsync_cmd(self, src: Path, dst: Path) -> List[str]:
        cmd = ["rsync", *RSYNC_MIRROR_FLAGS]
        if self.progress:
            cmd.append("--info=progress2")
        # trailing slash: copy the contents, not the directory itself
        cmd += [f"{src}/", f"{dst}/"]
        return cmd

    def _mirror(self, src: Path, dst: Path, error_cls: Type[MigrationError], what: str) -> None:
        Path(dst).mkdir(parents=True, exist_ok=True)
        try:
            # progress output goes straight to the terminal; otherwise keep it for the error log
            U.run_cmd(self.logger, self.rsync_cmd(src, dst), capture=not self.progress)
        except (subprocess.CalledProcessError, OSError) as e:
            raise error_cls(msg=f"{what} failed: rsync {src} -> {dst}", cause=e).with_context(
                src=str(src), dst=str(dst)
            ) from e

    def check_space(self, source_mount: Path, staging: Path) -> None:
        used = shutil.disk_usage(source_mount).used
        free = shutil.disk_usage(staging).free
        self.logger.debug("Root uses %s, staging has %s free", U.human_bytes(used), U.human_bytes(free))
        if used > free:
            raise MigrationError(
                msg=f"staging area {staging} too small: need {U.human_bytes(used)}, have {U.human_bytes(free)}"
            )

    def backup(self, source_mount: Path, staging: Path) -> None:
        """Copy the original root out. Nothing destructive has happened yet."""
        staging.mkdir(parents=True, exist_ok=True)
        self.check_space(source_mount, staging)
        self.logger.info("📦 Backing up root filesystem to staging")
        self._mirror(source_mount, staging, MigrationError, "backup")

    def restore(self, staging: Path, target_mount: Path) -> None:
        """Copy staging into the encrypted filesystem."""
        self.logger.info("📥 Restoring root filesystem into encrypted container")
        self._mirror(staging, target_mount, RestoreError, "restore")
