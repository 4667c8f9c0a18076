# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the error hierarchy, exit codes and secret redaction."""
from __future__ import annotations

import pytest
from img2luks.core.exceptions import (
    BootConfigError,
    ContainerError,
    Fatal,
    Img2LuksError,
    MigrationError,
    PreconditionError,
    ResourceError,
    RestoreError,
    format_exception_for_cli,
    wrap_fatal,
)


@pytest.mark.unit
class TestExceptionHierarchy:
    def test_base_exception_creation(self):
        err = Img2LuksError(code=1, msg="Test error")

        assert err.code == 1
        assert err.msg == "Test error"
        assert err.cause is None
        assert str(err) == "Test error"

    @pytest.mark.parametrize(
        "cls,code",
        [
            (PreconditionError, 2),
            (ResourceError, 3),
            (ContainerError, 4),
            (MigrationError, 5),
            (RestoreError, 6),
            (BootConfigError, 7),
        ],
    )
    def test_each_failure_kind_has_its_exit_code(self, cls, code):
        err = cls(msg="boom")
        assert isinstance(err, Fatal)
        assert err.code == code

    def test_restore_error_is_critical_migration_error(self):
        err = RestoreError(msg="rsync back failed")
        assert isinstance(err, MigrationError)
        assert err.critical is True
        assert MigrationError(msg="x").critical is False

    def test_exit_code_is_clamped(self):
        assert Fatal(code=999, msg="x").code == 255
        assert Fatal(code=-3, msg="x").code == 1

    def test_message_is_single_line(self):
        err = Fatal(code=1, msg="line one\nline two")
        assert err.msg == "line one line two"


@pytest.mark.unit
class TestContextAndFormatting:
    def test_with_context_is_chainable(self):
        err = ContainerError(msg="luksOpen failed").with_context(device="/dev/loop0p2")
        assert err.context == {"device": "/dev/loop0p2"}

    def test_secret_context_is_redacted(self):
        err = Fatal(code=1, msg="bad").with_context(passphrase="hunter2", device="/dev/loop0")
        text = err.user_message(include_context=True)
        assert "hunter2" not in text
        assert "passphrase=<redacted>" in text
        assert "device='/dev/loop0'" in text

    def test_cause_shown_only_when_asked(self):
        err = wrap_fatal("copy failed", OSError("disk full"), code=5, path="/tmp/x")
        assert "disk full" not in format_exception_for_cli(err)
        assert "disk full" in format_exception_for_cli(err, verbose=2)
        assert err.to_dict(include_cause=True)["cause"]["type"] == "OSError"

    def test_critical_errors_are_flagged_for_the_operator(self):
        assert format_exception_for_cli(RestoreError(msg="restore failed")).startswith("CRITICAL: ")
        assert not format_exception_for_cli(MigrationError(msg="backup failed")).startswith("CRITICAL")

    def test_plain_exceptions(self):
        assert format_exception_for_cli(ValueError("nope")) == "nope"
        assert format_exception_for_cli(ValueError("nope"), verbose=2) == "ValueError: nope"
