# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/boot/rewriter.py
"""
Boot configuration of an encrypted working image.

Edits, in order: kernel command line on the boot partition, the root
entry of /etc/fstab, the mapping's line in /etc/crypttab, the unlock
agent files and, under the embedded policy, the keyfile copy. The Pi
firmware config.txt is only touched once an initramfs exists
(`set_initramfs`). Every edited file is kept as `<file>.orig` first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..core.exceptions import BootConfigError
from ..core.file_ops import backup_original, write_text_atomic
from ..core.options import Flavor, UnlockPolicy
from ..core.utils import U
from ..keys.keyfile import Keyfile
from .cmdline import KernelCmdline
from .tables import Change, CrypttabEntry, rewrite_fstab_root, set_initramfs_directive, upsert_crypttab
from .unlock_agent import UnlockAgentInstaller

CMDLINE_CANDIDATES = ("cmdline.txt", "firmware/cmdline.txt")
CONFIG_TXT_CANDIDATES = ("config.txt", "firmware/config.txt")

# flags that hide the passphrase prompt on the console
_RASPIOS_DROP_FLAGS = ("quiet", "splash")


@dataclass
class BootRewriteReport:
    cmdline_path: Optional[Path] = None
    cmdline_before: str = ""
    cmdline_after: str = ""
    crypt_source: str = ""
    changes: Dict[str, List[Change]] = field(default_factory=dict)

    def count(self) -> int:
        return sum(len(v) for v in self.changes.values())


def find_first(base: Path, candidates: Sequence[str]) -> Optional[Path]:
    for rel in candidates:
        p = Path(base) / rel
        if p.is_file():
            return p
    return None


class BootConfigRewriter:
    def __init__(
        self,
        logger: Any,
        *,
        boot_mount: Path,
        root_mount: Path,
        root_partition: str,
        mapper_name: str,
        keyfile: Keyfile,
        crypto: str,
        flavor: Flavor = Flavor.BUILDROOT,
        policy: UnlockPolicy = UnlockPolicy.USB,
    ):
        self.logger = logger
        self.boot_mount = Path(boot_mount)
        self.root_mount = Path(root_mount)
        self.root_partition = root_partition
        self.mapper_name = mapper_name
        self.keyfile = keyfile
        self.crypto = crypto
        self.flavor = Flavor(flavor)
        self.policy = UnlockPolicy(policy)
        self.report = BootRewriteReport()
        self._partuuid: Optional[str] = None
        self._resolved = False

    @property
    def mapper_device(self) -> str:
        return f"/dev/mapper/{self.mapper_name}"

    # --- identifiers --------------------------------------------------------

    def resolve_partuuid(self) -> Optional[str]:
        if not self._resolved:
            self._partuuid = U.output_of(
                self.logger, ["blkid", "-s", "PARTUUID", "-o", "value", self.root_partition]
            )
            self._resolved = True
            if not self._partuuid:
                self.logger.warning(
                    "⚠️  No PARTUUID for %s; falling back to the raw device path, which may not match at boot",
                    self.root_partition,
                )
        return self._partuuid

    def crypt_source(self) -> str:
        """`PARTUUID=...` when blkid knows one, else the raw partition path."""
        partuuid = self.resolve_partuuid()
        return f"PARTUUID={partuuid}" if partuuid else self.root_partition

    # --- kernel command line -------------------------------------------------

    def edit_cmdline(self, cmdline: KernelCmdline) -> KernelCmdline:
        cmdline.set("root", self.mapper_device)
        cmdline.set("cryptdevice", f"{self.crypt_source()}:{self.mapper_name}")
        cmdline.set("luks.crypttab", "no")

        if self.flavor is Flavor.RASPIOS:
            cmdline.remove("ro")
            cmdline.setdefault("rw")
            for flag in _RASPIOS_DROP_FLAGS:
                cmdline.remove(flag)

        if self.policy is UnlockPolicy.EMBEDDED:
            cmdline.set("luks.keyfile", self.keyfile.name)
        else:
            # a USB-only image must not name its key anywhere on the boot partition
            cmdline.remove("luks.keyfile")
        return cmdline

    def rewrite_cmdline(self) -> Path:
        path = find_first(self.boot_mount, CMDLINE_CANDIDATES)
        if path is None:
            raise BootConfigError(
                msg=f"no cmdline.txt on boot partition (looked for {', '.join(CMDLINE_CANDIDATES)})"
            )
        backup_original(path)

        before = path.read_text(encoding="utf-8").strip()
        after = self.edit_cmdline(KernelCmdline.parse(before)).serialize()
        write_text_atomic(path, after + "\n")

        self.report.cmdline_path = path
        self.report.cmdline_before = before
        self.report.cmdline_after = after
        self.report.crypt_source = self.crypt_source()
        self.logger.info("📝 %s: %s", path.name, after)
        return path

    # --- root filesystem tables ----------------------------------------------

    def rewrite_fstab(self) -> None:
        path = self.root_mount / "etc" / "fstab"
        if not path.is_file():
            self.logger.warning("⚠️  %s not found; root is mounted from the kernel cmdline only", "/etc/fstab")
            return
        text, changes = rewrite_fstab_root(path.read_text(encoding="utf-8"), self.mapper_device)
        if not changes:
            self.logger.warning("⚠️  /etc/fstab has no entry for / to update")
            return
        backup_original(path)
        write_text_atomic(path, text)
        self.report.changes["fstab"] = changes
        self.logger.info("📝 fstab: root -> %s", self.mapper_device)

    def write_crypttab(self) -> None:
        path = self.root_mount / "etc" / "crypttab"
        entry = CrypttabEntry.for_root(
            self.mapper_name,
            self.crypt_source(),
            self.keyfile.identifier,
            tries_forever=self.flavor is Flavor.RASPIOS,
        )
        before = ""
        if path.is_file():
            backup_original(path)
            before = path.read_text(encoding="utf-8")
        text, changes = upsert_crypttab(before, entry)
        path.parent.mkdir(parents=True, exist_ok=True)
        write_text_atomic(path, text)
        self.report.changes["crypttab"] = changes
        self.logger.info("📝 crypttab: %s", entry.render())

    def install_unlock_agent(self) -> None:
        agent = UnlockAgentInstaller(self.logger, self.root_mount)
        agent.install(mapper_name=self.mapper_name, crypto=self.crypto, keyfile=self.keyfile)
        if self.policy is UnlockPolicy.EMBEDDED:
            agent.embed_keyfile(self.keyfile)

    # --- firmware config -------------------------------------------------------

    def set_initramfs(self, initramfs_name: str) -> Path:
        path = find_first(self.boot_mount, CONFIG_TXT_CANDIDATES)
        if path is None:
            raise BootConfigError(msg="no config.txt on boot partition; cannot load the initramfs")
        backup_original(path)
        text, changes = set_initramfs_directive(path.read_text(encoding="utf-8"), initramfs_name)
        write_text_atomic(path, text)
        self.report.changes["config.txt"] = changes
        self.logger.info("📝 %s: initramfs %s followkernel", path.name, initramfs_name)
        return path
