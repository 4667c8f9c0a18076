# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

from unittest.mock import Mock, patch

import pytest
from img2luks.core.exceptions import PreconditionError
from img2luks.core.options import EncryptOptions
from img2luks.core.sanity_checker import REQUIRED_TOOLS, SanityChecker
from img2luks.core.utils import U


def _checker(tmp_path, **kw):
    src = tmp_path / "sdcard.img"
    src.write_bytes(b"\0" * 1024)
    opts = kw.pop("options", EncryptOptions(key_dir=tmp_path / "keys"))
    return SanityChecker(
        Mock(),
        opts,
        input_image=kw.pop("input_image", src),
        output_image=kw.pop("output_image", tmp_path / "out.img"),
        require_root=False,
        **kw,
    )


@pytest.mark.unit
class TestSanityChecker:
    def test_all_good(self, tmp_path):
        with patch.object(U, "which", return_value="/usr/bin/x"):
            report = _checker(tmp_path).run()
        assert report.ok()
        assert "tools" in report.checks_ran

    def test_reports_every_missing_tool_at_once(self, tmp_path):
        with patch.object(U, "which", side_effect=lambda t: None if t in ("rsync", "cryptsetup") else "/bin/" + t):
            with pytest.raises(PreconditionError) as ei:
                _checker(tmp_path).run()
        assert ei.value.code == 2
        assert "cryptsetup" in ei.value.msg and "rsync" in ei.value.msg

    def test_missing_input_and_bad_mapper_are_both_reported(self, tmp_path):
        opts = EncryptOptions(mapper_name="bad name/")
        with patch.object(U, "which", return_value="/usr/bin/x"):
            checker = _checker(tmp_path, options=opts, input_image=tmp_path / "nope.img")
            with pytest.raises(PreconditionError):
                checker.run()
        kinds = sorted(e.kind for e in checker.report.errors)
        assert kinds == ["bad_args", "bad_args"]

    def test_refuses_in_place_conversion(self, tmp_path):
        src = tmp_path / "sdcard.img"
        with patch.object(U, "which", return_value="/usr/bin/x"):
            with pytest.raises(PreconditionError, match="differ"):
                _checker(tmp_path, output_image=src).run()

    def test_raspios_needs_chroot_and_emulator_off_arm(self, tmp_path):
        opts = EncryptOptions(flavor="raspios")
        with patch.object(U, "which", side_effect=lambda t: None if t.startswith(("qemu", "chroot")) else "/x"), patch(
            "img2luks.core.sanity_checker.host_is_arm", return_value=False
        ):
            checker = _checker(tmp_path, options=opts)
            with pytest.raises(PreconditionError):
                checker.run()
        assert "chroot" in checker.report.missing_required
        assert "qemu-user-static" in checker.report.missing_required

    def test_not_enough_space(self, tmp_path):
        with patch.object(U, "which", return_value="/usr/bin/x"):
            checker = _checker(tmp_path, needed_bytes=1 << 62)
            with pytest.raises(PreconditionError, match="not enough space"):
                checker.run()

    def test_required_tool_list_covers_the_pipeline(self):
        for tool in ("cryptsetup", "losetup", "rsync", "blkid", "mkfs.ext4"):
            assert tool in REQUIRED_TOOLS
