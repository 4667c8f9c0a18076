# SPDX-License-Identifier: LGPL-3.0-or-later
#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

import signal
import sys
import traceback
from typing import Optional

from img2luks.cli.args import parse_args_with_config
from img2luks.core.exceptions import Fatal, format_exception_for_cli
from img2luks.orchestrator.orchestrator import Orchestrator


def _print_stderr(msg: str) -> None:
    print(msg, file=sys.stderr)


def _safe_log(logger, level: str, msg: str) -> None:
    if logger is None:
        _print_stderr(msg)
        return
    fn = getattr(logger, level, None)
    if callable(fn):
        fn(msg)
    else:
        _print_stderr(msg)


def _sigterm(_signum, _frame) -> None:
    # unwinds through the same cleanup path as Ctrl+C
    raise KeyboardInterrupt()


def main() -> None:
    logger: Optional[object] = None
    signal.signal(signal.SIGTERM, _sigterm)

    # Phase 1: parse
    try:
        args, _conf, logger = parse_args_with_config()
    except Fatal as e:
        _safe_log(logger, "error", f"💥 {format_exception_for_cli(e)}")
        raise SystemExit(e.code)
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted by user (Ctrl+C).")
        raise SystemExit(130)

    # Phase 2: run
    try:
        rc = Orchestrator(logger, args).run()
    except Fatal as e:
        _safe_log(logger, "error", f"💥 {format_exception_for_cli(e)}")
        _safe_log(logger, "debug", traceback.format_exc())
        rc = e.code
    except KeyboardInterrupt:
        _safe_log(logger, "warning", "Interrupted; cleanup finished.")
        rc = 130
    except Exception as e:
        _safe_log(logger, "error", f"💥 UNHANDLED {type(e).__name__}: {e}")
        _safe_log(logger, "debug", traceback.format_exc())
        rc = 1

    raise SystemExit(rc)


if __name__ == "__main__":
    main()
