# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/guest/context.py
"""
Run commands as if inside the target root filesystem.

A GuestContext is a chroot into the mounted encrypted root with the boot
partition and the kernel pseudo-filesystems bound in, plus a static qemu
user emulator when the image was built for another architecture. Every
bind mount and copied file is registered with the run's RecoveryManager,
so an exception anywhere still leaves the host clean; `close()` releases
them early and the final unwind skips what is already gone.
"""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.recovery_manager import CleanupAction, RecoveryManager
from ..core.utils import U
from ..storage.mounts import mount_tracked

# e_machine values from the ELF header
_ELF_MACHINES = {
    0x28: "arm",
    0xB7: "aarch64",
    0x3E: "x86_64",
    0x03: "i386",
}
QEMU_STATIC = {
    "aarch64": "qemu-aarch64-static",
    "arm": "qemu-arm-static",
}
_PROBE_BINARIES = ("usr/bin/bash", "bin/bash", "usr/bin/env", "bin/sh")

GUEST_ENV = {
    "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
    "LANG": "C",
    "LC_ALL": "C",
    "DEBIAN_FRONTEND": "noninteractive",
    "HOME": "/root",
}


def _host_arch() -> str:
    m = platform.machine().lower()
    if m in ("arm64", "aarch64"):
        return "aarch64"
    if m.startswith("arm"):
        return "arm"
    if m in ("amd64", "x86_64"):
        return "x86_64"
    return m


def _resolve_in_root(root: Path, rel: str) -> Path:
    """Follow symlinks without escaping to the host for absolute targets."""
    p = root / rel
    for _ in range(16):
        if not p.is_symlink():
            return p
        target = os.readlink(p)
        p = root / target.lstrip("/") if target.startswith("/") else p.parent / target
    return p


def target_arch(root: Path) -> Optional[str]:
    for rel in _PROBE_BINARIES:
        binary = _resolve_in_root(Path(root), rel)
        try:
            with open(binary, "rb") as f:
                header = f.read(20)
        except OSError:
            continue
        if len(header) < 20 or header[:4] != b"\x7fELF":
            continue
        byteorder = "little" if header[5] == 1 else "big"
        machine = int.from_bytes(header[18:20], byteorder)
        return _ELF_MACHINES.get(machine, f"elf-{machine:#x}")
    return None


class GuestContext:
    def __init__(
        self,
        logger: Any,
        root: Path,
        recovery: RecoveryManager,
        *,
        boot_source: Optional[Path] = None,
    ):
        self.logger = logger
        self.root = Path(root)
        self.recovery = recovery
        self.boot_source = Path(boot_source) if boot_source else None
        self.arch: Optional[str] = None
        self._actions: List[CleanupAction] = []
        self._entered = False

    # --- setup -------------------------------------------------------------

    def boot_target(self) -> Path:
        firmware = self.root / "boot" / "firmware"
        return firmware if firmware.is_dir() else self.root / "boot"

    def _bind(self, source: str, target: Path, **kwargs: Any) -> None:
        self._actions.append(mount_tracked(self.logger, self.recovery, source, target, **kwargs))

    def _install_emulator(self) -> None:
        self.arch = target_arch(self.root)
        host = _host_arch()
        if self.arch is None:
            self.logger.warning("⚠️  Could not detect the image architecture; assuming it runs natively")
            return
        if self.arch == host or (host == "aarch64" and self.arch == "arm"):
            return

        name = QEMU_STATIC.get(self.arch)
        src = U.which(name) if name else None
        if not src:
            self.logger.warning("⚠️  No static qemu emulator for %s images; chroot commands may fail", self.arch)
            return

        dest = self.root / "usr" / "bin" / name
        if dest.exists():
            self.logger.debug("%s already present in image", name)
            return
        shutil.copy2(src, dest)
        self._actions.append(self.recovery.register_cleanup(lambda: dest.unlink(missing_ok=True), f"remove {dest}"))
        self.logger.info("🧬 Using %s for %s chroot", name, self.arch)

    def _install_resolv_conf(self) -> None:
        host_resolv = Path("/etc/resolv.conf")
        if not host_resolv.exists():
            return
        guest_resolv = self.root / "etc" / "resolv.conf"
        saved = guest_resolv.with_name("resolv.conf.img2luks")
        had_original = guest_resolv.exists() or guest_resolv.is_symlink()
        if had_original:
            os.replace(guest_resolv, saved)
        shutil.copyfile(host_resolv, guest_resolv)

        def _restore() -> None:
            guest_resolv.unlink(missing_ok=True)
            if had_original:
                os.replace(saved, guest_resolv)

        self._actions.append(self.recovery.register_cleanup(_restore, "restore guest resolv.conf"))

    def enter(self) -> "GuestContext":
        if self._entered:
            return self
        self._entered = True
        self.logger.info("🧰 Preparing chroot at %s", self.root)

        if self.boot_source is not None:
            self._bind(str(self.boot_source), self.boot_target(), bind=True)
        self._bind("proc", self.root / "proc", fstype="proc")
        self._bind("sysfs", self.root / "sys", fstype="sysfs")
        self._bind("/dev", self.root / "dev", bind=True)
        self._bind("/dev/pts", self.root / "dev" / "pts", bind=True)

        self._install_emulator()
        self._install_resolv_conf()
        return self

    # --- use ---------------------------------------------------------------

    def run(
        self,
        cmd: List[str],
        *,
        check: bool = True,
        capture: bool = False,
        input_text: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        """Run `cmd` inside the target root."""
        full_env = dict(GUEST_ENV)
        if env:
            full_env.update(env)
        return U.run_cmd(
            self.logger,
            ["chroot", str(self.root), *cmd],
            check=check,
            capture=capture,
            input_text=input_text,
            env=full_env,
        )

    # --- teardown ----------------------------------------------------------

    def close(self) -> None:
        for action in reversed(self._actions):
            action.release(self.logger)
        self._actions.clear()
        self._entered = False

    def __enter__(self) -> "GuestContext":
        return self.enter()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False
