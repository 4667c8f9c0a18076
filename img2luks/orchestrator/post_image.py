# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/orchestrator/post_image.py
"""
Buildroot post-image hook.

Buildroot runs BR2_ROOTFS_POST_IMAGE_SCRIPT with BINARIES_DIR set once
the SD card image exists. This finds that image, reads the BR2_LUKS_*
settings (environment first, then the build's .config), encrypts it and
leaves an encryption-info.txt next to it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from ..core.exceptions import PreconditionError
from ..core.logger import Log
from ..core.options import EncryptOptions
from ..core.utils import U
from ..keys.keyfile import KeyfileGenerator
from .pipeline import EncryptionPipeline, EncryptResult

IMAGE_CANDIDATES = ("sdcard.img", "disk.img", "rpi-sdcard.img")
ENCRYPTED_LINK = "sdcard-encrypted.img"
INFO_FILE = "encryption-info.txt"


def read_br2_config(path: Optional[Path]) -> Dict[str, str]:
    """KEY=value pairs from a Buildroot .config; quotes stripped."""
    values: Dict[str, str] = {}
    if path is None or not Path(path).is_file():
        return values
    for line in Path(path).read_text(encoding="utf-8", errors="replace").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"')
    return values


@dataclass
class PostImageSettings:
    enabled: bool
    key_dir: Path
    crypto: str
    keep_unencrypted: bool
    keyfile: Optional[Path]

    @classmethod
    def load(cls, binaries_dir: Path, env: Mapping[str, str], br2_config: Optional[Path]) -> "PostImageSettings":
        conf = read_br2_config(br2_config)

        def get(key: str, default: str = "") -> str:
            return env.get(key) or conf.get(key) or default

        keyfile = get("BR2_LUKS_KEYFILE")
        return cls(
            enabled=get("BR2_LUKS_ENCRYPT", "n") == "y",
            key_dir=Path(get("BR2_LUKS_KEYDIR", str(Path(binaries_dir) / "keys"))),
            crypto=get("BR2_LUKS_CRYPTO", "aes"),
            keep_unencrypted=get("BR2_LUKS_KEEP_UNENCRYPTED", "n") == "y",
            keyfile=Path(keyfile) if keyfile else None,
        )


def find_image(binaries_dir: Path) -> Path:
    for name in IMAGE_CANDIDATES:
        p = Path(binaries_dir) / name
        if p.is_file():
            return p
    raise PreconditionError(
        msg=f"no SD card image in {binaries_dir} (expected one of {', '.join(IMAGE_CANDIDATES)})"
    )


def info_text(result: EncryptResult, crypto: str) -> str:
    key = result.keyfile
    return f"""\
LUKS Encrypted Image Information
=================================
Image:      {result.output_image.name}
Keyfile:    {key.name}
Key ID:     {key.identifier}
Crypto:     {crypto} ({result.reported_cipher or result.cipher})
Mapper:     {result.mapper_name}
Created:    {U.iso_now()}

USB key preparation:
  1. Format a USB drive with FAT32:
     sudo mkfs.vfat -F 32 /dev/sdX1
  2. Copy the keyfile to its root directory:
     sudo mount /dev/sdX1 /mnt
     sudo cp {key.path} /mnt/
     sudo umount /mnt

Burn to SD card:
  sudo dd if={result.output_image} of=/dev/sdX bs=4M status=progress
"""


class PostImageHook:
    def __init__(
        self,
        logger: Any,
        binaries_dir: Path,
        options: EncryptOptions,
        *,
        env: Optional[Mapping[str, str]] = None,
        br2_config: Optional[Path] = None,
        keep_unencrypted: Optional[bool] = None,
    ):
        self.logger = logger
        self.binaries_dir = Path(binaries_dir)
        self.options = options
        self.env = os.environ if env is None else env
        self.settings = PostImageSettings.load(self.binaries_dir, self.env, br2_config)
        if keep_unencrypted is not None:
            self.settings.keep_unencrypted = keep_unencrypted

    def _link(self, target: Path) -> None:
        link = self.binaries_dir / ENCRYPTED_LINK
        if link.name == target.name:
            # sdcard.img kept: the encrypted image already carries the link name
            return
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(target.name)

    def run(self) -> int:
        Log.banner(self.logger, "Buildroot post-image encryption")
        if not self.binaries_dir.is_dir():
            raise PreconditionError(msg=f"images directory not found: {self.binaries_dir}")
        s = self.settings
        if not s.enabled:
            self.logger.info("LUKS encryption not enabled (set BR2_LUKS_ENCRYPT=y to enable)")
            return 0

        image = find_image(self.binaries_dir)
        self.logger.info("🖼️  Found image: %s", image)
        base = image.name[: -len(".img")]
        output = self.binaries_dir / f"{base}-encrypted.img"

        gen = KeyfileGenerator(self.logger, s.key_dir)
        keyfile = None
        if s.keyfile is not None and s.keyfile.is_file():
            keyfile = gen.adopt(s.keyfile, copy_into_key_dir=True)
        elif s.keyfile is not None:
            self.logger.warning("⚠️  BR2_LUKS_KEYFILE %s not found; generating a new key", s.keyfile)

        if s.keep_unencrypted:
            keep = self.binaries_dir / f"{base}-unencrypted.img"
            self.logger.info("Keeping original as %s", keep.name)
            U.run_cmd(self.logger, ["cp", "--sparse=always", str(image), str(keep)], fatal=True)

        options = replace(self.options, crypto=s.crypto, key_dir=s.key_dir, keyfile=None)
        result = EncryptionPipeline(self.logger, image, output, options, keyfile=keyfile).run()

        if not s.keep_unencrypted:
            self.logger.info("Replacing %s with the encrypted image", image.name)
            os.replace(output, image)
            result.output_image = image
        self._link(result.output_image)
        (self.binaries_dir / INFO_FILE).write_text(info_text(result, s.crypto), encoding="utf-8")
        final = result.output_image

        Log.ok(self.logger, f"Created {final} (keyfile {result.keyfile.path})")
        return 0
