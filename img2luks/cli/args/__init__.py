# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/cli/args/__init__.py
"""Command-line parsing for img2luks: parser, option groups, validators."""
from __future__ import annotations

from .builder import HelpFormatter
from .groups import COMMANDS
from .parser import build_parser, parse_args_with_config
from .validators import validate_args

__all__ = [
    "COMMANDS",
    "HelpFormatter",
    "build_parser",
    "parse_args_with_config",
    "validate_args",
]
