# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/boot/cmdline.py
"""
Kernel command line as an ordered parameter list.

cmdline.txt is a single line of `key=value` and bare-flag tokens. It is
parsed into (key, value) pairs, edited by key, and serialized back in
the original order with new parameters appended, so repeated edits
never duplicate or garble a directive. Keys that legitimately repeat
(`console=`) are kept as separate entries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

Param = Tuple[str, Optional[str]]


@dataclass
class KernelCmdline:
    params: List[Param] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> "KernelCmdline":
        params: List[Param] = []
        for token in (text or "").split():
            if "=" in token:
                key, value = token.split("=", 1)
                params.append((key, value))
            else:
                params.append((token, None))
        return cls(params)

    def __contains__(self, key: str) -> bool:
        return any(k == key for k, _ in self.params)

    def __iter__(self) -> Iterator[Param]:
        return iter(self.params)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for k, v in self.params:
            if k == key:
                return v
        return default

    def get_all(self, key: str) -> List[Optional[str]]:
        return [v for k, v in self.params if k == key]

    def set(self, key: str, value: Optional[str] = None) -> None:
        """Replace the first `key` in place, drop any repeats; append if absent."""
        out: List[Param] = []
        placed = False
        for k, v in self.params:
            if k != key:
                out.append((k, v))
            elif not placed:
                out.append((key, value))
                placed = True
        if not placed:
            out.append((key, value))
        self.params = out

    def setdefault(self, key: str, value: Optional[str] = None) -> bool:
        """Append `key` only when it is absent. Returns True when added."""
        if key in self:
            return False
        self.params.append((key, value))
        return True

    def remove(self, key: str) -> int:
        before = len(self.params)
        self.params = [(k, v) for k, v in self.params if k != key]
        return before - len(self.params)

    def serialize(self) -> str:
        return " ".join(k if v is None else f"{k}={v}" for k, v in self.params)

    def __str__(self) -> str:
        return self.serialize()
