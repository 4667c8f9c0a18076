# SPDX-License-Identifier: LGPL-3.0-or-later
"""
In-memory stand-in for the host commands the pipeline shells out to.

Install it with `FakeHost.patched()`; every `U.run_cmd` call is recorded
and answered from a small model of the host: attached loop devices,
mount table and open LUKS mappings. Mounting a partition copies its
seeded files into the mount point and rsync/cp copy real files, so the
boot rewrite runs against real text.
"""
import contextlib
import shutil
import subprocess
import threading
from pathlib import Path
from unittest.mock import patch

from img2luks.core.utils import U
from img2luks.storage.loop import LoopDevice
from img2luks.storage.migrate import ContentMigrator

BOOT_FILES = {
    "cmdline.txt": "console=serial0,115200 console=tty1 root=PARTUUID=abcd1234-02 rootfstype=ext4 fsck.repair=yes rootwait quiet splash\n",
    "config.txt": "[all]\nkernel=kernel8.img\n",
}

ROOT_FILES = {
    "etc/fstab": (
        "proc            /proc           proc    defaults          0       0\n"
        "PARTUUID=abcd1234-01  /boot/firmware  vfat    defaults          0       2\n"
        "PARTUUID=abcd1234-02  /               ext4    defaults,noatime  0       1\n"
    ),
    "etc/hostname": "pi\n",
}


class FakeHost:
    def __init__(self, *, partuuid="abcd1234-02", cipher="aes-xts-plain64"):
        self.calls = []
        self.loops = set()
        self.mounted = {}
        self.mappings = set()
        self.partitions = {"p1": dict(BOOT_FILES), "p2": dict(ROOT_FILES)}
        self.partuuid = partuuid
        self.cipher = cipher
        self.chroot_handler = None
        self._failures = []
        self._next_loop = 0
        self._lock = threading.Lock()

    # --- test controls -------------------------------------------------------

    def fail_on(self, *prefix, rc=1, stderr="simulated failure", when=None):
        """Make commands starting with `prefix` fail (optionally only when `when(cmd)`)."""
        self._failures.append((tuple(prefix), rc, stderr, when))

    @contextlib.contextmanager
    def patched(self):
        with patch.object(U, "run_cmd", self.run), patch.object(
            LoopDevice, "_is_block_device", staticmethod(lambda _p: True)
        ), patch.object(ContentMigrator, "check_space", lambda *a, **k: None):
            yield self

    def commands(self, program):
        return [c for c in self.calls if c and c[0] == program]

    def clean(self):
        return not self.loops and not self.mounted and not self.mappings

    # --- U.run_cmd replacement -------------------------------------------------

    def run(self, logger, cmd, *, check=True, capture=False, **_kw):
        cmd = [str(c) for c in cmd]
        with self._lock:
            self.calls.append(cmd)
            rc, out, err = self._failure(cmd) or self._dispatch(cmd)
        if check and rc != 0:
            raise subprocess.CalledProcessError(rc, cmd, output=out, stderr=err)
        return subprocess.CompletedProcess(cmd, rc, stdout=out, stderr=err)

    def _failure(self, cmd):
        for prefix, rc, stderr, when in self._failures:
            if tuple(cmd[: len(prefix)]) == prefix and (when is None or when(cmd)):
                return rc, "", stderr
        return None

    def _dispatch(self, cmd):
        prog = cmd[0]
        handler = getattr(self, "_" + prog.replace(".", "_").replace("-", "_"), None)
        if handler is None:
            return 0, "", ""
        return handler(cmd)

    def _losetup(self, cmd):
        if "--find" in cmd:
            dev = f"/dev/loop{self._next_loop}"
            self._next_loop += 1
            self.loops.add(dev)
            return 0, dev + "\n", ""
        if cmd[1] == "-d":
            if cmd[2] in self.loops:
                self.loops.discard(cmd[2])
                return 0, "", ""
            return 1, "", f"losetup: {cmd[2]}: failed to use device: No such device"
        return 0, "", ""

    def _mount(self, cmd):
        source, target = cmd[-2], cmd[-1]
        self.mounted[target] = source
        if "--bind" not in cmd:
            for suffix, files in self.partitions.items():
                if source.startswith("/dev/loop") and source.endswith(suffix):
                    for rel, text in files.items():
                        p = Path(target) / rel
                        p.parent.mkdir(parents=True, exist_ok=True)
                        p.write_text(text)
        return 0, "", ""

    def _mountpoint(self, cmd):
        return (0 if cmd[-1] in self.mounted else 1), "", ""

    def _umount(self, cmd):
        target = cmd[-1]
        if self.mounted.pop(target, None) is None:
            return 32, "", f"umount: {target}: not mounted."
        return 0, "", ""

    def _cryptsetup(self, cmd):
        sub = cmd[1]
        if sub == "open":
            self.mappings.add(cmd[-1])
        elif sub == "close":
            self.mappings.discard(cmd[-1])
        elif sub == "status":
            return (0 if cmd[2] in self.mappings else 4), "", ""
        elif sub == "luksDump":
            return 0, f"LUKS header information\nVersion:\t2\n\nData segments:\n  0: crypt\n\tcipher: {self.cipher}\n", ""
        return 0, "", ""

    def _blkid(self, cmd):
        if self.partuuid is None:
            return 2, "", ""
        return 0, self.partuuid + "\n", ""

    def _rsync(self, cmd):
        src, dst = cmd[-2].rstrip("/"), cmd[-1].rstrip("/")
        shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
        return 0, "", ""

    def _cp(self, cmd):
        shutil.copyfile(cmd[-2], cmd[-1])
        return 0, "", ""

    def _chroot(self, cmd):
        if self.chroot_handler is None:
            return 0, "", ""
        return self.chroot_handler(Path(cmd[1]), cmd[2:])
