# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/storage/loop.py
from __future__ import annotations

import os
import stat
import subprocess
import time
from pathlib import Path
from typing import Any, List, Optional

from ..core.exceptions import ResourceError
from ..core.retry import retry_operation
from ..core.utils import U

# losetup -d messages that mean there is nothing left to detach
_ALREADY_DETACHED = (
    "no such device",
    "no such file or directory",
    "not a block device",
    "no such device or address",
)


class LoopDevice:
    """
    One loop attachment of one image file, with partition scanning on.

    Device nodes for partitions show up asynchronously after attach, so
    `partition()` looks for both naming schemes, re-reads the partition
    table once if neither is there, and only then gives up.
    """

    def __init__(self, logger: Any, image: Path, *, settle_s: float = 1.0):
        self.logger = logger
        self.image = Path(image)
        self.settle_s = settle_s
        self.device: Optional[str] = None

    @property
    def attached(self) -> bool:
        return self.device is not None

    def attach(self) -> str:
        if self.device is not None:
            raise ResourceError(msg=f"{self.image} is already attached to {self.device}")

        try:
            cp = U.run_cmd(
                self.logger,
                ["losetup", "--find", "--show", "--partscan", str(self.image)],
                capture=True,
            )
        except subprocess.CalledProcessError as e:
            raise ResourceError(msg=f"failed to attach {self.image} to a loop device", cause=e) from e

        device = (cp.stdout or "").strip().splitlines()
        if not device or not device[-1].startswith("/dev/"):
            raise ResourceError(msg=f"losetup returned no device for {self.image}")
        self.device = device[-1]
        self.logger.info("🔗 Attached %s -> %s", self.image.name, self.device)
        return self.device

    @staticmethod
    def _is_block_device(path: str) -> bool:
        try:
            return stat.S_ISBLK(os.stat(path).st_mode)
        except OSError:
            return False

    def partition_candidates(self, number: int) -> List[str]:
        if self.device is None:
            raise ResourceError(msg="loop device is not attached")
        return [f"{self.device}p{number}", f"{self.device}{number}"]

    def _find_partition(self, number: int) -> str:
        for candidate in self.partition_candidates(number):
            if self._is_block_device(candidate):
                return candidate
        raise ResourceError(msg=f"partition {number} not found on {self.device}")

    def _reread_partitions(self) -> None:
        time.sleep(self.settle_s)
        U.run_cmd(self.logger, ["partprobe", str(self.device)], check=False, capture=True)

    def partition(self, number: int) -> str:
        if self.device is None:
            raise ResourceError(msg="loop device is not attached")
        part = retry_operation(
            lambda: self._find_partition(number),
            max_attempts=2,
            base_backoff_s=self.settle_s,
            jitter_s=0.0,
            exceptions=ResourceError,
            operation_name=f"resolve partition {number}",
            logger=self.logger,
            on_retry=lambda _attempt, _err: self._reread_partitions(),
        )
        self.logger.debug("Partition %d -> %s", number, part)
        return part

    def detach(self) -> None:
        if self.device is None:
            return
        device = self.device
        cp = U.run_cmd(self.logger, ["losetup", "-d", device], check=False, capture=True)
        if cp.returncode != 0:
            err = (cp.stderr or "").strip()
            if not any(s in err.lower() for s in _ALREADY_DETACHED):
                raise ResourceError(msg=f"failed to detach {device}: {err or 'rc=' + str(cp.returncode)}")
            self.logger.debug("%s was already detached", device)
        self.device = None
        self.logger.info("🔓 Detached %s", device)
