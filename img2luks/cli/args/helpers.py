# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/cli/args/helpers.py
from __future__ import annotations

import argparse
from typing import Any, Optional


def _require(v: Any) -> bool:
    """True if v is meaningfully present (empty/whitespace-only strings count as missing)."""
    if v is None:
        return False
    if isinstance(v, str):
        return v.strip() != ""
    return True


def _merged_cmd(args: argparse.Namespace) -> Optional[str]:
    v = getattr(args, "cmd", None)
    if _require(v):
        return str(v).strip().lower()
    return None
