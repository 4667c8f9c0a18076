# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/cli/args/builder.py
from __future__ import annotations

import argparse

from ...core.logger import c
from ..help_texts import BATCH_EXAMPLE, FEATURE_SUMMARY, YAML_EXAMPLE


class HelpFormatter(argparse.RawDescriptionHelpFormatter, argparse.ArgumentDefaultsHelpFormatter):
    """Raw epilog plus defaults in option help."""


def _build_epilog() -> str:
    return (
        c("Operations:\n", "cyan", ["bold"])
        + c(FEATURE_SUMMARY, "cyan")
        + c("\nBatch examples:\n", "cyan", ["bold"])
        + c(BATCH_EXAMPLE, "cyan")
        + c("\nYAML examples:\n", "cyan", ["bold"])
        + c(YAML_EXAMPLE, "cyan")
    )
