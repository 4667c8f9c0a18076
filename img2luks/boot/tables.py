# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/boot/tables.py
"""
Line-oriented boot tables: fstab, crypttab and the Pi firmware config.txt.

Each function takes the current file text and returns the new text plus
a list of Change records; reading, backing up and writing the files is
the rewriter's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

UNLOCK_AGENT_PATH = "/usr/bin/sdmluksunlock"


@dataclass(frozen=True)
class Change:
    line_no: int
    old: str
    new: str
    reason: str


def _lines(text: str) -> List[str]:
    return (text or "").splitlines()


def _join(lines: List[str]) -> str:
    return "\n".join(lines) + "\n" if lines else ""


# ---------------------------------------------------------------------------
# fstab
# ---------------------------------------------------------------------------

def rewrite_fstab_root(text: str, mapper_device: str) -> Tuple[str, List[Change]]:
    """
    Point the `/` entry at `mapper_device`.

    Only the device column changes; mount options, dump and pass are kept.
    Returns the original text untouched when there is no `/` entry.
    """
    out: List[str] = []
    changes: List[Change] = []

    for idx, line in enumerate(_lines(text), 1):
        s = line.strip()
        if not s or s.startswith("#"):
            out.append(line)
            continue

        cols = s.split()
        if len(cols) < 2 or cols[1] != "/":
            out.append(line)
            continue

        if cols[0] == mapper_device:
            out.append(line)
            continue

        new_line = "\t".join([mapper_device] + cols[1:])
        out.append(new_line)
        changes.append(Change(idx, line, new_line, f"root {cols[0]} -> {mapper_device}"))

    return _join(out), changes


# ---------------------------------------------------------------------------
# crypttab
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CrypttabEntry:
    name: str
    device: str
    key: str
    options: Tuple[str, ...]

    @classmethod
    def for_root(
        cls,
        name: str,
        device: str,
        key: Optional[str],
        *,
        tries_forever: bool = False,
    ) -> "CrypttabEntry":
        opts = ["luks", "discard"]
        if tries_forever:
            opts.append("tries=0")
        if key:
            opts.append(f"keyscript={UNLOCK_AGENT_PATH}")
        return cls(name=name, device=device, key=key or "none", options=tuple(opts))

    def render(self) -> str:
        return f"{self.name}\t{self.device} {self.key} {','.join(self.options)}"


def upsert_crypttab(text: str, entry: CrypttabEntry) -> Tuple[str, List[Change]]:
    """
    Replace the line for `entry.name`, or append it.

    Entries for other mappings are left alone.
    """
    out: List[str] = []
    changes: List[Change] = []
    rendered = entry.render()
    placed = False

    for idx, line in enumerate(_lines(text), 1):
        s = line.strip()
        cols = s.split()
        if s and not s.startswith("#") and cols and cols[0] == entry.name:
            if placed:
                changes.append(Change(idx, line, "", "duplicate entry dropped"))
                continue
            out.append(rendered)
            placed = True
            if line != rendered:
                changes.append(Change(idx, line, rendered, "entry replaced"))
            continue
        out.append(line)

    if not placed:
        out.append(rendered)
        changes.append(Change(len(out), "", rendered, "entry added"))

    return _join(out), changes


# ---------------------------------------------------------------------------
# config.txt
# ---------------------------------------------------------------------------

def set_initramfs_directive(text: str, initramfs_name: str) -> Tuple[str, List[Change]]:
    """Drop every `initramfs ...` line, append exactly one for `initramfs_name`."""
    out: List[str] = []
    changes: List[Change] = []
    for idx, line in enumerate(_lines(text), 1):
        if line.lstrip().startswith("initramfs "):
            changes.append(Change(idx, line, "", "old initramfs directive removed"))
            continue
        out.append(line)

    directive = f"initramfs {initramfs_name} followkernel"
    out.append(directive)
    changes.append(Change(len(out), "", directive, "initramfs directive added"))
    return _join(out), changes
