# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/core/utils.py
from __future__ import annotations

import datetime as _dt
import json
import shlex
import shutil
import subprocess
from typing import Any, Dict, List, Optional

from .exceptions import Fatal


class U:
    @staticmethod
    def which(prog: str) -> Optional[str]:
        return shutil.which(prog)

    @staticmethod
    def iso_now() -> str:
        """Local time with offset, second precision (like `date -Iseconds`)."""
        return _dt.datetime.now().astimezone().isoformat(timespec="seconds")

    @staticmethod
    def human_bytes(n: Optional[int]) -> str:
        if n is None:
            return "unknown"
        x = float(n)
        for unit in ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]:
            if x < 1024 or unit == "PiB":
                return f"{x:.2f} {unit}" if unit != "B" else f"{int(x)} {unit}"
            x /= 1024
        return f"{n} B"

    @staticmethod
    def json_dump(obj: Any) -> str:
        return json.dumps(obj, indent=2, sort_keys=True, default=str)

    @staticmethod
    def _pretty_cmd(cmd: List[str]) -> str:
        return " ".join(shlex.quote(str(x)) for x in cmd)

    @staticmethod
    def run_cmd(
        logger: Any,
        cmd: List[str],
        *,
        check: bool = True,
        capture: bool = False,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
        input_text: Optional[str] = None,
        fatal: bool = False,
    ) -> subprocess.CompletedProcess:
        """
        Run a command.

        - capture=True uses subprocess.run(capture_output=True, text=True)
        - fatal=True wraps failures into Fatal (otherwise re-raises subprocess exceptions)
        """
        cmd = [str(x) for x in cmd]
        pretty = U._pretty_cmd(cmd)
        logger.debug("Running: %s", pretty)

        try:
            return subprocess.run(
                cmd,
                check=check,
                capture_output=capture,
                text=True,
                env=env,
                timeout=timeout,
                input=input_text,
            )

        except subprocess.CalledProcessError as e:
            stdout = (e.stdout or e.output or "").strip()
            stderr = (e.stderr or "").strip()
            if stdout or stderr:
                logger.error(
                    "Command failed: %s%s%s",
                    pretty,
                    f"\nstdout:\n{stdout}" if stdout else "",
                    f"\nstderr:\n{stderr}" if stderr else "",
                )
            else:
                logger.error("Command failed: %s (rc=%s)", pretty, e.returncode)

            if fatal:
                raise Fatal(code=e.returncode or 1, msg=f"Command failed: {pretty}", cause=e) from e
            raise

        except subprocess.TimeoutExpired as e:
            logger.error("Command timed out: %s (timeout=%ss)", pretty, timeout)
            if fatal:
                raise Fatal(code=124, msg=f"Command timed out: {pretty}", cause=e) from e
            raise

        except OSError as e:
            logger.error("Command error: %s (%s)", pretty, e)
            if fatal:
                raise Fatal(code=1, msg=f"Command error: {pretty}: {e}", cause=e) from e
            raise

    @staticmethod
    def output_of(logger: Any, cmd: List[str]) -> Optional[str]:
        """stdout of a command, stripped, or None when it fails."""
        try:
            cp = U.run_cmd(logger, cmd, check=False, capture=True)
        except OSError:
            return None
        if cp.returncode != 0:
            return None
        out = (cp.stdout or "").strip()
        return out or None
