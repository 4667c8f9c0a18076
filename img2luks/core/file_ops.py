# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/core/file_ops.py
"""
Atomic file operations for boot configuration files.

Boot files are rewritten through a temp file in the same directory and
renamed into place, so a crash never leaves a truncated cmdline.txt or
fstab behind. Originals are kept next to the file as `<name>.orig`.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

ORIG_SUFFIX = ".orig"


@contextmanager
def atomic_write(
    target_path: Path,
    *,
    suffix: str = ".part",
    dir: Optional[Path] = None,
    delete_on_error: bool = True,
) -> Generator[Path, None, None]:
    """
    Context manager for atomic file writes using temporary file + rename.

    Yields the temp path; on success it is renamed over target_path. On any
    exception the temp file is removed and the exception propagates.

    Example:
        with atomic_write(Path("/mnt/boot/cmdline.txt")) as tmp:
            tmp.write_text(line)
    """
    target_path = Path(target_path)
    temp_dir = Path(dir) if dir else target_path.parent
    temp_dir.mkdir(parents=True, exist_ok=True)

    fd, temp_name = tempfile.mkstemp(
        suffix=suffix,
        prefix=f".{target_path.name}.",
        dir=str(temp_dir),
    )
    temp_path = Path(temp_name)

    try:
        os.close(fd)
        yield temp_path
        os.replace(temp_path, target_path)
    except BaseException:
        if delete_on_error:
            temp_path.unlink(missing_ok=True)
        raise


def write_text_atomic(path: Path, text: str, *, mode: Optional[int] = None) -> None:
    """
    Replace `path` with `text` atomically.

    The permission bits of an existing file are carried over unless `mode`
    is given; new files default to 0644. vfat boot partitions reject chmod,
    which is ignored there.
    """
    path = Path(path)
    with atomic_write(path) as tmp:
        tmp.write_text(text, encoding="utf-8")
        try:
            if mode is not None:
                os.chmod(tmp, mode)
            elif path.exists():
                shutil.copymode(path, tmp)
            else:
                os.chmod(tmp, 0o644)
        except PermissionError:
            pass


def backup_original(path: Path) -> Optional[Path]:
    """
    Copy `path` to `path.orig` once.

    An existing `.orig` is never overwritten: it already holds the
    pristine file from an earlier pass. Returns the backup path, or None
    when `path` does not exist.
    """
    path = Path(path)
    if not path.exists():
        return None
    backup = path.with_name(path.name + ORIG_SUFFIX)
    if not backup.exists():
        shutil.copy2(path, backup)
    return backup
