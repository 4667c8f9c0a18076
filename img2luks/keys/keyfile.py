# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/keys/keyfile.py
"""
Per-image LUKS keyfiles.

A keyfile is 256 bytes from the OS CSPRNG, stored as `<id>.lek` in a key
directory that lives outside the image, readable by the owner only. The
identifier doubles as the key reference written into crypttab, so the
unlock agent can find `<id>.lek` on a USB stick at boot.
"""

from __future__ import annotations

import hashlib
import os
import secrets
import shutil
import stat
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional

from ..core.exceptions import Fatal, PreconditionError

KEYFILE_EXT = ".lek"
KEYFILE_BYTES = 256
KEYFILE_MODE = 0o600
_KERNEL_UUID = Path("/proc/sys/kernel/random/uuid")


@dataclass(frozen=True)
class Keyfile:
    path: Path
    identifier: str
    generated: bool = False

    @property
    def name(self) -> str:
        return self.path.name

    @classmethod
    def from_path(cls, path: Path, *, generated: bool = False) -> "Keyfile":
        path = Path(path)
        return cls(path=path, identifier=path.stem, generated=generated)


def _id_from_uuid_module() -> Optional[str]:
    return str(uuid.uuid4())


def _id_from_kernel() -> Optional[str]:
    value = _KERNEL_UUID.read_text(encoding="ascii").strip().lower()
    return value or None


def _id_from_hash() -> Optional[str]:
    h = hashlib.sha256(os.urandom(32) + str(time.time_ns()).encode()).hexdigest()
    return f"{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


def _id_fallback() -> str:
    return f"key-{int(time.time())}-{os.getpid()}-{secrets.token_hex(8)}"


ID_SOURCES: List[Callable[[], Optional[str]]] = [
    _id_from_uuid_module,
    _id_from_kernel,
    _id_from_hash,
]


def new_identifier(logger: Any = None) -> str:
    """First identifier any source can produce; never fails."""
    for source in ID_SOURCES:
        try:
            value = source()
        except (OSError, ValueError, NotImplementedError) as e:
            if logger is not None:
                logger.debug("Key id source %s unavailable: %s", source.__name__, e)
            continue
        if value:
            return value
    return _id_fallback()


class KeyfileGenerator:
    def __init__(
        self,
        logger: Any,
        key_dir: Path,
        *,
        ext: str = KEYFILE_EXT,
        size: int = KEYFILE_BYTES,
        max_attempts: int = 5,
    ):
        self.logger = logger
        self.key_dir = Path(key_dir)
        self.ext = ext
        self.size = size
        self.max_attempts = max_attempts

    def _prepare_dir(self) -> None:
        try:
            self.key_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as e:
            raise Fatal(code=1, msg=f"cannot create key directory {self.key_dir}: {e}", cause=e) from e
        if not self.key_dir.is_dir():
            raise Fatal(code=1, msg=f"key directory is not a directory: {self.key_dir}")
        if not os.access(self.key_dir, os.W_OK | os.X_OK):
            raise Fatal(code=1, msg=f"key directory is not writable: {self.key_dir}")

    def generate(self) -> Keyfile:
        """Create a fresh keyfile; the identifier never reuses an existing file."""
        self._prepare_dir()

        for _ in range(self.max_attempts):
            identifier = new_identifier(self.logger)
            path = self.key_dir / f"{identifier}{self.ext}"
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, KEYFILE_MODE)
            except FileExistsError:
                self.logger.debug("Key id collision on %s, retrying", path.name)
                continue
            except OSError as e:
                raise Fatal(code=1, msg=f"cannot create keyfile in {self.key_dir}: {e}", cause=e) from e

            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(secrets.token_bytes(self.size))
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(path, KEYFILE_MODE)
            except OSError as e:
                path.unlink(missing_ok=True)
                raise Fatal(code=1, msg=f"cannot write keyfile {path}: {e}", cause=e) from e

            self.logger.info("🔑 Generated keyfile %s", path)
            return Keyfile(path=path, identifier=identifier, generated=True)

        raise Fatal(code=1, msg=f"could not pick a unique key id in {self.key_dir} after {self.max_attempts} attempts")

    def adopt(self, path: Path, *, copy_into_key_dir: bool = False) -> Keyfile:
        """
        Use an operator-supplied keyfile instead of generating one.

        The identifier is the file's stem. With copy_into_key_dir the file
        is copied (0600) next to the generated ones so the key directory
        stays the single place to look.
        """
        path = Path(path)
        if not path.is_file():
            raise PreconditionError(msg=f"keyfile not found: {path}")

        st = path.stat()
        if st.st_size < self.size:
            self.logger.warning("⚠️  Keyfile %s holds only %d bytes (expected >= %d)", path, st.st_size, self.size)
        if stat.S_IMODE(st.st_mode) & 0o077:
            self.logger.warning("⚠️  Keyfile %s is readable by group/others (mode %o)", path, stat.S_IMODE(st.st_mode))

        if copy_into_key_dir:
            self._prepare_dir()
            dest = self.key_dir / path.name
            if dest.resolve() != path.resolve():
                shutil.copyfile(path, dest)
                os.chmod(dest, KEYFILE_MODE)
                self.logger.info("🔑 Copied keyfile to %s", dest)
            path = dest

        return Keyfile.from_path(path)

    @staticmethod
    def discard(keyfile: Keyfile, logger: Any) -> None:
        """Remove a keyfile this run generated. Supplied keyfiles are kept."""
        if not keyfile.generated:
            return
        keyfile.path.unlink(missing_ok=True)
        logger.info("🗑️  Removed unused keyfile %s", keyfile.path)
