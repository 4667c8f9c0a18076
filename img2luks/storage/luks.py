# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/storage/luks.py
from __future__ import annotations

import os
import re
import secrets
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.exceptions import ContainerError
from ..core.options import Flavor
from ..core.utils import U

AES_XTS = "aes-xts-plain64"
XCHACHA_ADIANTUM = "xchacha20,aes-adiantum-plain64"

CIPHERS: Dict[str, str] = {
    "aes": AES_XTS,
    "xchacha": XCHACHA_ADIANTUM,
}

FS_LABEL = "rootfs"


def cipher_family(crypto: Optional[str]) -> str:
    """`aes`, `aes-*` and anything unknown are aes; `xchacha` is xchacha."""
    c = (crypto or "").strip().lower()
    if c == "xchacha":
        return "xchacha"
    return "aes"


def select_cipher(crypto: Optional[str], logger: Any = None) -> str:
    c = (crypto or "").strip().lower()
    if logger is not None and c and c != "xchacha" and c != "aes" and not c.startswith("aes-"):
        logger.warning("⚠️  Unknown crypto %r, using %s", crypto, AES_XTS)
    return CIPHERS[cipher_family(c)]


@dataclass(frozen=True)
class KdfProfile:
    """
    LUKS2 key derivation settings.

    Argon2i with a 5 s target for Buildroot images. Raspberry Pi OS gets
    PBKDF2 with a 1 s target: its initramfs cryptsetup must unlock on
    boards with little RAM and no systemd to retry, and Argon2 memory cost
    is tuned on the (much larger) build host.
    """

    name: str
    pbkdf: str
    iter_time_ms: int
    hash: str = "sha256"
    key_size: int = 256

    def args(self) -> List[str]:
        return [
            "--hash", self.hash,
            "--iter-time", str(self.iter_time_ms),
            "--key-size", str(self.key_size),
            "--pbkdf", self.pbkdf,
        ]


KDF_PROFILES: Dict[str, KdfProfile] = {
    "buildroot": KdfProfile(name="buildroot", pbkdf="argon2i", iter_time_ms=5000),
    "raspios": KdfProfile(name="raspios", pbkdf="pbkdf2", iter_time_ms=1000),
}


def kdf_for(flavor: Flavor, override: Optional[str] = None) -> KdfProfile:
    name = (override or flavor.value).strip().lower()
    try:
        return KDF_PROFILES[name]
    except KeyError:
        raise ContainerError(msg=f"unknown KDF profile {name!r} (known: {', '.join(sorted(KDF_PROFILES))})") from None


def run_mapping_name(base: str) -> str:
    """
    Host-side mapping name for one run.

    The pid separates processes; the random token separates batch workers
    that share a process.
    """
    return f"{base}_{os.getpid()}_{secrets.token_hex(3)}"


class LuksContainer:
    """
    The encrypted root partition of one working image.

    Format, open and mkfs must all succeed before anything is written back;
    any failure there is a ContainerError and the run is over.
    """

    def __init__(
        self,
        logger: Any,
        device: str,
        keyfile: Path,
        *,
        cipher: str = AES_XTS,
        kdf: KdfProfile = KDF_PROFILES["buildroot"],
    ):
        self.logger = logger
        self.device = device
        self.keyfile = Path(keyfile)
        self.cipher = cipher
        self.kdf = kdf
        self.mapping_name: Optional[str] = None

    @property
    def mapper_path(self) -> str:
        if self.mapping_name is None:
            raise ContainerError(msg="container is not open")
        return f"/dev/mapper/{self.mapping_name}"

    def _cryptsetup(self, args: List[str], what: str, *, capture: bool = True) -> subprocess.CompletedProcess:
        try:
            return U.run_cmd(self.logger, ["cryptsetup", *args], capture=capture)
        except subprocess.CalledProcessError as e:
            raise ContainerError(msg=f"{what} failed on {self.device}", cause=e).with_context(
                stderr=(e.stderr or "").strip()
            ) from e

    def format_cmd(self) -> List[str]:
        return [
            "luksFormat",
            "--type", "luks2",
            "--cipher", self.cipher,
            *self.kdf.args(),
            "--batch-mode",
            "--key-file", str(self.keyfile),
            self.device,
        ]

    def format(self) -> None:
        self.logger.info("🔐 Formatting %s as LUKS2 (%s, %s %dms)", self.device, self.cipher, self.kdf.pbkdf, self.kdf.iter_time_ms)
        self._cryptsetup(self.format_cmd(), "luksFormat")

    def add_passphrase(self) -> None:
        """Second key slot, typed by the operator. The only prompt in a run."""
        self.logger.info("🔑 Adding a passphrase key slot (you will be prompted)")
        self._cryptsetup(
            ["luksAddKey", "--key-file", str(self.keyfile), self.device],
            "luksAddKey",
            capture=False,
        )

    def open(self, base_name: str) -> str:
        name = run_mapping_name(base_name)
        self._cryptsetup(
            ["open", "--type", "luks2", "--key-file", str(self.keyfile), self.device, name],
            "luksOpen",
        )
        self.mapping_name = name
        self.logger.info("🔓 Opened %s as %s", self.device, self.mapper_path)
        return self.mapper_path

    def make_filesystem(self, *, label: str = FS_LABEL) -> None:
        try:
            U.run_cmd(self.logger, ["mkfs.ext4", "-F", "-L", label, self.mapper_path], capture=True)
        except subprocess.CalledProcessError as e:
            raise ContainerError(msg=f"mkfs.ext4 failed on {self.mapper_path}", cause=e) from e

    def is_open(self) -> bool:
        if self.mapping_name is None:
            return False
        cp = U.run_cmd(self.logger, ["cryptsetup", "status", self.mapping_name], check=False, capture=True)
        return cp.returncode == 0

    def close(self) -> None:
        """Safe to call when the mapping was never opened."""
        if self.mapping_name is None:
            return
        if not self.is_open():
            self.logger.debug("Mapping %s already closed", self.mapping_name)
            self.mapping_name = None
            return
        name = self.mapping_name
        U.run_cmd(self.logger, ["cryptsetup", "close", name], capture=True)
        self.mapping_name = None
        self.logger.info("🔒 Closed mapping %s", name)

    def reported_cipher(self) -> Optional[str]:
        """Cipher string as cryptsetup reports it for segment 0."""
        out = U.output_of(self.logger, ["cryptsetup", "luksDump", self.device])
        if not out:
            return None
        m = re.search(r"^\s*cipher:\s*(\S+)", out, re.MULTILINE)
        return m.group(1) if m else None
