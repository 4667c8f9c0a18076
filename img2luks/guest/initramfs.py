# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/guest/initramfs.py
"""
Boot-time RAM disk for images that build their unlock tooling at install
time (Raspberry Pi OS and other Debian derivatives).

Inside the guest context: make sure cryptsetup's initramfs integration is
installed, drop in a hook that carries the unlock agent into the
initramfs, load the cipher's kernel modules early, then run
update-initramfs for every kernel under /lib/modules. Outside it: find
the produced image and point config.txt at it.

Missing packages or a missing initramfs are fatal; an image that cannot
unlock its root must never be produced. SSH unlock is an extra and only
warns when it cannot be set up.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, List, Optional, Sequence

from ..core.exceptions import BootConfigError
from ..core.file_ops import backup_original, write_text_atomic
from ..core.options import UnlockPolicy
from ..keys.keyfile import Keyfile
from ..storage.luks import cipher_family
from .context import GuestContext

CRITICAL_PACKAGES = ["cryptsetup", "cryptsetup-bin", "cryptsetup-initramfs", "initramfs-tools"]
SSH_PACKAGES = ["dropbear-initramfs", "dropbear-bin"]

CIPHER_MODULES = {
    "xchacha": ["algif_skcipher", "xchacha20", "adiantum", "aes_arm", "sha256", "nhpoly1305", "dm-crypt"],
    "aes": ["algif_skcipher", "aes_arm64", "aes_ce_blk", "aes_ce_ccm", "aes_ce_cipher", "sha256_arm64", "cbc", "dm-crypt"],
}

INITRAMFS_CONF_EDITS = {
    "MODULES=dep": "MODULES=most",
    "KEYMAP=n": "KEYMAP=y",
}

DROPBEAR_OPTIONS = '-I 3600 -j -k -s -p 22 -c bash -r /etc/dropbear/dropbear_ed25519_host_key'

ARTIFACT_PATTERNS = ("initrd.img-*", "initrd.img", "initramfs-*", "initramfs.img")
VERSIONED_STEMS = ("initrd.img-", "initramfs-")

HOOK_HEADER = """\
#!/bin/sh -e
# Carries the LUKS unlock agent and its state files into the initramfs.
PREREQS=""
case "$1" in
    prereqs) echo "${PREREQS}"; exit 0;;
esac

. /usr/share/initramfs-tools/hook-functions

copy_exec /usr/sbin/cryptsetup /usr/sbin || true
copy_exec /usr/bin/bash /usr/bin || true
copy_file text /usr/bin/sdmluksunlock /usr/bin/sdmluksunlock || true
copy_file text /etc/mappername /etc/mappername || true
copy_file text /etc/sdmcrypto /etc/sdmcrypto || true
copy_file text /etc/sdmkeyfile /etc/sdmkeyfile || true
"""


def hook_script(embedded_keyfile: Optional[str] = None) -> str:
    lines = [HOOK_HEADER]
    if embedded_keyfile:
        lines.append(
            f"copy_file text /etc/sdm/assets/cryptroot/{embedded_keyfile} /etc/{embedded_keyfile} || true\n"
        )
    lines.append("exit 0\n")
    return "".join(lines)


def append_modules(text: str, modules: Sequence[str]) -> str:
    """Append `modules` not already listed, one per line."""
    present = {ln.strip() for ln in text.splitlines() if ln.strip() and not ln.lstrip().startswith("#")}
    missing = [m for m in modules if m not in present]
    if not missing:
        return text
    if text and not text.endswith("\n"):
        text += "\n"
    return text + "".join(f"{m}\n" for m in missing)


def edit_initramfs_conf(text: str) -> str:
    out: List[str] = []
    for line in text.splitlines():
        for old, new in INITRAMFS_CONF_EDITS.items():
            if line.startswith(old) and line.strip() == old:
                line = new
        out.append(line)
    return "\n".join(out) + ("\n" if out else "")


def find_artifact(dirs: Sequence[Path], versions: Sequence[str] = ()) -> Optional[Path]:
    """
    First initramfs in `dirs`, patterns tried in order per directory.

    With `versions`, only images named for one of those kernels count.
    """
    patterns = [f"{stem}{v}" for v in versions for stem in VERSIONED_STEMS] if versions else ARTIFACT_PATTERNS
    for d in dirs:
        if not Path(d).is_dir():
            continue
        for pattern in patterns:
            hits = sorted(p for p in Path(d).glob(pattern) if p.is_file())
            if hits:
                return hits[0]
    return None


class InitramfsBuilder:
    def __init__(
        self,
        logger: Any,
        guest: GuestContext,
        *,
        crypto: str,
        keyfile: Keyfile,
        policy: UnlockPolicy = UnlockPolicy.USB,
        enable_ssh: bool = False,
        authorized_keys: Optional[Path] = None,
    ):
        self.logger = logger
        self.guest = guest
        self.root = guest.root
        self.crypto = crypto
        self.keyfile = keyfile
        self.policy = UnlockPolicy(policy)
        self.enable_ssh = enable_ssh
        self.authorized_keys = Path(authorized_keys) if authorized_keys else None
        self.ssh_configured = False

    # --- packages ------------------------------------------------------------

    def installed(self, package: str) -> bool:
        cp = self.guest.run(
            ["dpkg-query", "-W", "--showformat=${Status}", package], check=False, capture=True
        )
        return cp.returncode == 0 and "install ok installed" in (cp.stdout or "")

    def _missing(self, packages: Sequence[str]) -> List[str]:
        return [p for p in packages if not self.installed(p)]

    def _apt_install(self, packages: Sequence[str]) -> None:
        self.logger.info("📦 Installing in image: %s", " ".join(packages))
        self.guest.run(["apt-get", "update"], check=False, capture=True)
        self.guest.run(
            ["apt-get", "install", "-y", "--no-install-recommends", *packages],
            check=False,
            capture=True,
        )

    def ensure_packages(self) -> None:
        missing = self._missing(CRITICAL_PACKAGES)
        if missing:
            self._apt_install(missing)
            missing = self._missing(missing)
        if missing:
            raise BootConfigError(
                msg=f"required unlock packages missing in image: {', '.join(missing)}"
            ).with_context(hint="give the chroot network access or preinstall them")
        self.logger.info("✅ Unlock packages present: %s", ", ".join(CRITICAL_PACKAGES))

    # --- initramfs-tools configuration ----------------------------------------

    def write_hooks(self) -> None:
        tools = self.root / "etc" / "initramfs-tools"
        hook = tools / "hooks" / "luks-hooks"
        hook.parent.mkdir(parents=True, exist_ok=True)
        embedded = self.keyfile.name if self.policy is UnlockPolicy.EMBEDDED else None
        write_text_atomic(hook, hook_script(embedded), mode=0o755)

        modules = tools / "modules"
        current = modules.read_text(encoding="utf-8") if modules.exists() else ""
        write_text_atomic(modules, append_modules(current, CIPHER_MODULES[cipher_family(self.crypto)]))

        conf = tools / "initramfs.conf"
        if conf.exists():
            backup_original(conf)
            write_text_atomic(conf, edit_initramfs_conf(conf.read_text(encoding="utf-8")))
        else:
            self.logger.warning("⚠️  %s missing; MODULES/KEYMAP left at package defaults", "initramfs.conf")
        self.logger.info("🪝 initramfs hook and %s modules configured", cipher_family(self.crypto))

    def configure_ssh(self) -> bool:
        """Dropbear in the initramfs for remote unlock; failures only warn."""
        if not self.enable_ssh:
            return False
        try:
            missing = self._missing(SSH_PACKAGES)
            if missing:
                self._apt_install(missing)
                missing = self._missing(missing)
            if missing:
                self.logger.warning("⚠️  SSH unlock skipped, packages missing: %s", ", ".join(missing))
                return False

            if self.authorized_keys is None:
                self.logger.warning("⚠️  SSH unlock skipped, no authorized_keys given")
                return False

            dropbear = self.root / "etc" / "dropbear" / "initramfs"
            dropbear.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self.authorized_keys, dropbear / "authorized_keys")
            (dropbear / "authorized_keys").chmod(0o600)
            write_text_atomic(dropbear / "dropbear.conf", f'DROPBEAR_OPTIONS="{DROPBEAR_OPTIONS}"\n')

            if (self.root / "etc" / "ssh" / "ssh_host_ed25519_key").exists():
                self.guest.run(
                    [
                        "dropbearconvert", "openssh", "dropbear",
                        "/etc/ssh/ssh_host_ed25519_key",
                        "/etc/dropbear/initramfs/dropbear_ed25519_host_key",
                    ],
                    check=False,
                    capture=True,
                )
        except OSError as e:
            self.logger.warning("⚠️  SSH unlock setup failed: %s", e)
            return False

        self.ssh_configured = True
        self.logger.info("🔑 SSH unlock enabled in initramfs (port 22)")
        return True

    # --- build ---------------------------------------------------------------

    def kernel_versions(self) -> List[str]:
        mods = self.root / "lib" / "modules"
        if not mods.is_dir():
            return []
        return sorted(p.name for p in mods.iterdir() if p.is_dir())

    def regenerate(self) -> List[str]:
        """
        update-initramfs per kernel. Returns the versions that were built.

        Any kernel left without a fresh initramfs is fatal: the image may
        still carry the initrd it shipped with, which cannot unlock root.
        """
        versions = self.kernel_versions()
        if not versions:
            self.logger.warning("⚠️  No kernels under /lib/modules; running update-initramfs -u")
            cp = self.guest.run(["update-initramfs", "-u"], check=False, capture=True)
            if cp.returncode != 0:
                raise BootConfigError(msg="update-initramfs -u failed").with_context(
                    rc=cp.returncode, stderr=(cp.stderr or "").strip()[-300:]
                )
            return []

        built: List[str] = []
        failed: List[str] = []
        for kver in versions:
            self.logger.info("⚙️  Building initramfs for %s", kver)
            for cmd in (["update-initramfs", "-c", "-k", kver], ["update-initramfs", "-u", "-k", kver]):
                cp = self.guest.run(cmd, check=False, capture=True)
                if cp.returncode == 0:
                    built.append(kver)
                    break
                self.logger.debug("%s failed rc=%s: %s", " ".join(cmd), cp.returncode, (cp.stderr or "")[-600:])
            else:
                self.logger.error("initramfs for %s could not be built", kver)
                failed.append(kver)
        if failed:
            raise BootConfigError(msg=f"initramfs build failed for kernel(s): {', '.join(failed)}").with_context(
                built=", ".join(built) or "none"
            )
        return built

    def provision(self) -> List[str]:
        self.ensure_packages()
        self.write_hooks()
        self.configure_ssh()
        return self.regenerate()


def locate_initramfs(logger: Any, boot_mount: Path, root_mount: Path, versions: Sequence[str] = ()) -> str:
    """
    Find the initramfs and make sure it sits on the boot partition.

    `versions` are the kernels just built; an image for any other kernel
    is left over from before and is not accepted. Returns the file name
    on the boot partition.
    """
    boot_mount = Path(boot_mount)
    found = find_artifact([boot_mount], versions)
    if found is None:
        found = find_artifact([Path(root_mount) / "boot", Path(root_mount) / "boot" / "firmware"], versions)
        if found is not None:
            shutil.copyfile(found, boot_mount / found.name)
            logger.info("📋 Copied %s to boot partition", found.name)
    if found is None:
        raise BootConfigError(
            msg="initramfs not found after regeneration",
        ).with_context(
            searched=f"{boot_mount}, {root_mount}/boot, {root_mount}/boot/firmware",
            kernels=", ".join(versions) or "any",
        )
    logger.info("✅ initramfs: %s", found.name)
    return found.name
