# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/core/options.py
from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_MAPPER = "cryptroot"
DEFAULT_KEY_DIR = Path("./keys")
DEFAULT_CRYPTO = "aes"


class Flavor(str, enum.Enum):
    """How the target image gets its boot-time unlock tooling."""

    # unlock tooling already baked into the image (Buildroot external tree)
    BUILDROOT = "buildroot"
    # initramfs has to be rebuilt inside the image (Raspberry Pi OS)
    RASPIOS = "raspios"


class UnlockPolicy(str, enum.Enum):
    """Where the device looks for its key at boot. One per run."""

    # keyfile only on removable media; nothing in cmdline, nothing in the image
    USB = "usb"
    # keyfile name on the kernel cmdline, keyfile copied into the image
    EMBEDDED = "embedded"


@dataclass
class EncryptOptions:
    crypto: str = DEFAULT_CRYPTO
    mapper_name: str = DEFAULT_MAPPER
    key_dir: Path = DEFAULT_KEY_DIR
    keyfile: Optional[Path] = None
    flavor: Flavor = Flavor.BUILDROOT
    unlock_policy: UnlockPolicy = UnlockPolicy.USB
    add_passphrase: bool = False
    enable_ssh: bool = False
    authorized_keys: Optional[Path] = None
    kdf: Optional[str] = None
    workdir: Optional[Path] = None

    def __post_init__(self) -> None:
        self.key_dir = Path(self.key_dir)
        if self.keyfile is not None:
            self.keyfile = Path(self.keyfile)
        if self.authorized_keys is not None:
            self.authorized_keys = Path(self.authorized_keys)
        if self.workdir is not None:
            self.workdir = Path(self.workdir)
        self.flavor = Flavor(self.flavor)
        self.unlock_policy = UnlockPolicy(self.unlock_policy)
        self.crypto = (self.crypto or DEFAULT_CRYPTO).strip().lower()
        self.mapper_name = (self.mapper_name or DEFAULT_MAPPER).strip()
