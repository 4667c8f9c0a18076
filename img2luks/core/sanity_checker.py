# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/core/sanity_checker.py
from __future__ import annotations

import os
import platform
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import PreconditionError
from .options import EncryptOptions, Flavor
from .utils import U

REQUIRED_TOOLS = [
    "blkid",
    "cp",
    "cryptsetup",
    "losetup",
    "mkfs.ext4",
    "mount",
    "mountpoint",
    "partprobe",
    "rsync",
    "umount",
]
RASPIOS_TOOLS = ["chroot"]
QEMU_STATIC = ["qemu-aarch64-static", "qemu-arm-static"]

_MAPPER_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.+-]{0,63}$")


class ErrorKind:
    TOOLS = "tools"
    PERMISSION = "permission"
    DISK = "disk"
    BAD_ARGS = "bad_args"


@dataclass
class SanityIssue:
    kind: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


@dataclass
class SanityReport:
    missing_required: List[str] = field(default_factory=list)
    errors: List[SanityIssue] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    notes: Dict[str, str] = field(default_factory=dict)
    checks_ran: List[str] = field(default_factory=list)

    def ok(self) -> bool:
        return not self.missing_required and not self.errors

    def add_error(self, kind: str, msg: str) -> None:
        self.errors.append(SanityIssue(kind=kind, message=msg))

    def to_dict(self) -> Dict[str, object]:
        return {
            "ok": self.ok(),
            "missing_required": list(self.missing_required),
            "errors": [{"kind": e.kind, "message": e.message} for e in self.errors],
            "warnings": list(self.warnings),
            "notes": dict(self.notes),
            "checks_ran": list(self.checks_ran),
        }


def host_is_arm() -> bool:
    return platform.machine().lower() in ("aarch64", "arm64") or platform.machine().lower().startswith("arm")


class SanityChecker:
    """
    Preconditions checked before any loop device, mount or mapping exists.

    Every problem is collected first and reported together, so one run
    shows the operator the whole list instead of the first missing tool.
    """

    def __init__(
        self,
        logger: Any,
        options: EncryptOptions,
        *,
        input_image: Optional[Path] = None,
        output_image: Optional[Path] = None,
        needed_bytes: Optional[int] = None,
        require_root: bool = True,
    ):
        self.logger = logger
        self.options = options
        self.input_image = Path(input_image) if input_image else None
        self.output_image = Path(output_image) if output_image else None
        self.needed_bytes = needed_bytes
        self.require_root = require_root
        self.report = SanityReport()

    def _add_err(self, kind: str, msg: str) -> None:
        self.report.add_error(kind, msg)

    def check_privileges(self) -> None:
        self.report.checks_ran.append("privileges")
        if self.require_root and os.geteuid() != 0:
            self._add_err(ErrorKind.PERMISSION, "must run as root (loop devices, cryptsetup, mounts)")

    def check_tools(self) -> None:
        self.report.checks_ran.append("tools")
        required = list(REQUIRED_TOOLS)
        if self.options.flavor is Flavor.RASPIOS:
            required.extend(RASPIOS_TOOLS)
        self.report.notes["required_tools"] = ", ".join(sorted(set(required)))

        missing = [t for t in sorted(set(required)) if U.which(t) is None]
        self.report.missing_required.extend(missing)
        if missing:
            self._add_err(ErrorKind.TOOLS, f"missing required tools: {', '.join(missing)}")

        if self.options.flavor is Flavor.RASPIOS and not host_is_arm():
            if not any(U.which(q) for q in QEMU_STATIC):
                self.report.missing_required.append("qemu-user-static")
                self._add_err(
                    ErrorKind.TOOLS,
                    f"cross-architecture chroot needs one of {', '.join(QEMU_STATIC)} (package qemu-user-static)",
                )

    def check_inputs(self) -> None:
        self.report.checks_ran.append("inputs")
        opts = self.options

        if self.input_image is not None:
            if not self.input_image.exists():
                self._add_err(ErrorKind.BAD_ARGS, f"input image not found: {self.input_image}")
            elif not self.input_image.is_file():
                self._add_err(ErrorKind.BAD_ARGS, f"input image is not a regular file: {self.input_image}")

        if self.input_image is not None and self.output_image is not None:
            if self.input_image.resolve() == self.output_image.resolve():
                self._add_err(ErrorKind.BAD_ARGS, "output image must differ from the input image")

        if opts.keyfile is not None and not opts.keyfile.is_file():
            self._add_err(ErrorKind.BAD_ARGS, f"keyfile not found: {opts.keyfile}")

        if opts.enable_ssh:
            if opts.authorized_keys is None:
                self._add_err(ErrorKind.BAD_ARGS, "SSH unlock requires an authorized_keys file")
            elif not opts.authorized_keys.is_file():
                self._add_err(ErrorKind.BAD_ARGS, f"authorized_keys not found: {opts.authorized_keys}")
            if opts.flavor is not Flavor.RASPIOS:
                self.report.warnings.append("SSH unlock is only provisioned for the raspios flavor")

        if not _MAPPER_NAME_RE.match(opts.mapper_name):
            self._add_err(ErrorKind.BAD_ARGS, f"invalid mapper name: {opts.mapper_name!r}")

    def check_disk_space(self) -> None:
        if not self.needed_bytes or self.output_image is None:
            return
        self.report.checks_ran.append("disk_space")
        target = self.output_image.parent
        while not target.exists() and target != target.parent:
            target = target.parent
        free = shutil.disk_usage(target).free
        self.report.notes["output_free"] = U.human_bytes(free)
        if free < self.needed_bytes:
            self._add_err(
                ErrorKind.DISK,
                f"not enough space in {target}: need {U.human_bytes(self.needed_bytes)}, have {U.human_bytes(free)}",
            )

    def run(self) -> SanityReport:
        self.check_privileges()
        self.check_tools()
        self.check_inputs()
        self.check_disk_space()

        for w in self.report.warnings:
            self.logger.warning("⚠️  %s", w)

        if not self.report.ok():
            for e in self.report.errors:
                self.logger.error("Precondition failed: %s", e)
            raise PreconditionError(
                msg="; ".join(e.message for e in self.report.errors),
                context={"checks": ",".join(self.report.checks_ran)},
            )
        self.logger.debug("Preconditions ok (%s)", ", ".join(self.report.checks_ran))
        return self.report
