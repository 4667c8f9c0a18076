# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
from __future__ import annotations

import argparse
import os
from pathlib import Path

from ...core.exceptions import PreconditionError
from .groups import COMMANDS
from .helpers import _merged_cmd, _require


def _need_file(value: object, flag: str) -> None:
    if not _require(value):
        raise PreconditionError(msg=f"missing required {flag}")
    if not Path(str(value)).expanduser().is_file():
        raise PreconditionError(msg=f"{flag} file not found: {value}")


def _validate_common(args: argparse.Namespace) -> None:
    if _require(args.keyfile):
        _need_file(args.keyfile, "--keyfile")
    if args.ssh and _require(args.authorized_keys):
        _need_file(args.authorized_keys, "--authorized-keys")
    if args.ssh and args.flavor != "raspios":
        raise PreconditionError(msg="--ssh needs --flavor raspios (the initramfs is only rebuilt there)")


def _validate_cmd_encrypt(args: argparse.Namespace) -> None:
    _need_file(args.input, "--input")
    if _require(args.output) and Path(args.output).expanduser().resolve() == Path(args.input).expanduser().resolve():
        raise PreconditionError(msg="--output must differ from --input (in-place conversion is not supported)")


def _validate_cmd_batch(args: argparse.Namespace) -> None:
    _need_file(args.input, "--input")
    if args.count is None:
        raise PreconditionError(msg="cmd=batch: missing required --count (or YAML `count:`)")
    if int(args.count) < 1:
        raise PreconditionError(msg=f"--count must be >= 1 (got {args.count})")
    if int(args.parallel) < 1:
        raise PreconditionError(msg=f"--parallel must be >= 1 (got {args.parallel})")
    if _require(args.keyfile):
        raise PreconditionError(msg="cmd=batch generates one key per image; --keyfile is not allowed")
    if args.passphrase and int(args.parallel) > 1:
        raise PreconditionError(msg="cmd=batch: --passphrase prompts on the terminal; use --parallel 1")


def _validate_cmd_post_image(args: argparse.Namespace) -> None:
    binaries = args.binaries_dir or os.environ.get("BINARIES_DIR")
    if not _require(binaries):
        raise PreconditionError(msg="cmd=post-image: set --binaries-dir or $BINARIES_DIR")


def validate_args(args: argparse.Namespace) -> None:
    """Per-command checks that need no filesystem writes."""
    cmd = _merged_cmd(args)
    if not _require(cmd):
        raise PreconditionError(msg=f"missing operation: set --cmd or YAML `cmd:` ({', '.join(COMMANDS)})")

    validators = {
        "encrypt": _validate_cmd_encrypt,
        "batch": _validate_cmd_batch,
        "post-image": _validate_cmd_post_image,
        "keygen": lambda _a: None,
    }
    fn = validators.get(cmd)
    if fn is None:
        raise PreconditionError(msg=f"unknown cmd={cmd!r} (supported: {', '.join(COMMANDS)})")
    _validate_common(args)
    fn(args)
    args.cmd = cmd
