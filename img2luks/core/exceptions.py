# SPDX-License-Identifier: LGPL-3.0-or-later
# img2luks/core/exceptions.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


def _safe_int(x: Any, default: int = 1) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _clamp_exit_code(code: int) -> int:
    if code < 0:
        return 1
    if code > 255:
        return 255
    return code


def _one_line(s: str, limit: int = 600) -> str:
    s = (s or "").strip().replace("\r", " ").replace("\n", " ")
    s = " ".join(s.split())
    return s if len(s) <= limit else (s[: limit - 3] + "...")


_SECRET_KEY_PARTS = (
    "pass",
    "password",
    "passphrase",
    "secret",
    "token",
    "private",
    "material",
)


def _is_secret_key(k: str) -> bool:
    ks = (k or "").lower()
    return any(p in ks for p in _SECRET_KEY_PARTS)


def _format_context_compact(ctx: Dict[str, Any]) -> str:
    parts = []
    for k in sorted(ctx.keys()):
        v = ctx.get(k)
        if _is_secret_key(str(k)):
            parts.append(f"{k}=<redacted>")
        else:
            parts.append(f"{k}={v!r}")
    return ", ".join(parts)


@dataclass(eq=False)
class Img2LuksError(Exception):
    """
    Base project error with:
      - stable fields for reporting/JSON
      - readable __str__ (what users see)
      - exit code carried to main()
    """
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.code = _clamp_exit_code(_safe_int(self.code, default=1))
        self.msg = _one_line(self.msg) or self.__class__.__name__
        super().__init__(self.msg)
        self.args = (self.msg,)

    def with_context(self, **ctx: Any) -> "Img2LuksError":
        if self.context is None:
            self.context = {}
        self.context.update(ctx)
        return self

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        base = self.msg or self.__class__.__name__
        parts = [base]

        if include_context and self.context:
            parts.append(f"[{_one_line(_format_context_compact(self.context), limit=600)}]")

        if include_cause and self.cause is not None:
            parts.append(f"(cause: {type(self.cause).__name__}: {_one_line(str(self.cause))})")

        return " ".join(parts)

    def __str__(self) -> str:
        return self.user_message(include_context=False, include_cause=False)

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.__class__.__name__,
            "code": self.code,
            "message": self.msg,
            "context": self.context or {},
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _one_line(str(self.cause))}
        return d


class Fatal(Img2LuksError):
    """
    User-facing fatal error (exit code is honored by top-level main()).
    """
    pass


@dataclass(eq=False)
class PreconditionError(Fatal):
    """Missing tools, missing input, insufficient privilege or bad arguments.

    Raised before any system resource has been acquired.
    """
    code: int = 2


@dataclass(eq=False)
class ResourceError(Fatal):
    """Loop attach, partition resolution or mount failed."""
    code: int = 3


@dataclass(eq=False)
class ContainerError(Fatal):
    """Formatting, opening or creating the filesystem on the container failed.

    The working image is half-migrated at this point and must be discarded.
    """
    code: int = 4


@dataclass(eq=False)
class MigrationError(Fatal):
    """Copying the root filesystem into staging failed."""
    code: int = 5
    critical: bool = False


@dataclass(eq=False)
class RestoreError(MigrationError):
    """Copying staging into the encrypted filesystem failed.

    The unencrypted content of the working image only exists in staging now.
    """
    code: int = 6
    critical: bool = True


@dataclass(eq=False)
class BootConfigError(Fatal):
    """Boot files missing, unlock packages missing or initramfs not produced."""
    code: int = 7


def wrap_fatal(msg: str, exc: Optional[BaseException] = None, code: int = 1, **context: Any) -> Fatal:
    return Fatal(code=code, msg=msg, cause=exc, context=context or None)


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """
    One-liner output for CLI.

    verbose=0: just message
    verbose=1: message + compact context (if any)
    verbose>=2: message + context + cause
    """
    if isinstance(e, Img2LuksError):
        text = e.user_message(
            include_context=(verbose >= 1),
            include_cause=(verbose >= 2),
        )
        if isinstance(e, MigrationError) and e.critical:
            text = f"CRITICAL: {text}"
        return text

    if verbose >= 2:
        return f"{type(e).__name__}: {_one_line(str(e))}"
    return _one_line(str(e)) or type(e).__name__
