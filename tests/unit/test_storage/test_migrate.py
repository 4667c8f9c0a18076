# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import os
from collections import namedtuple
from unittest.mock import patch

import pytest
from fakes.fake_host import FakeHost
from fakes.fake_logger import FakeLogger
from img2luks.core.exceptions import MigrationError, RestoreError
from img2luks.storage.migrate import ContentMigrator

_Usage = namedtuple("_Usage", "total used free")


@pytest.mark.unit
class TestRsyncCommand:
    def test_mirror_flags_and_trailing_slashes(self, tmp_path):
        cmd = ContentMigrator(FakeLogger()).rsync_cmd(tmp_path / "a", tmp_path / "b")
        assert cmd == ["rsync", "-aHAXxS", "--numeric-ids", f"{tmp_path}/a/", f"{tmp_path}/b/"]

    def test_progress_flag(self, tmp_path):
        cmd = ContentMigrator(FakeLogger(), progress=True).rsync_cmd(tmp_path / "a", tmp_path / "b")
        assert "--info=progress2" in cmd


@pytest.mark.unit
class TestBackupRestore:
    def test_round_trip_keeps_content(self, tmp_path):
        src, staging, dst = tmp_path / "orig", tmp_path / "staging", tmp_path / "enc"
        (src / "etc").mkdir(parents=True)
        (src / "etc" / "hostname").write_text("pi\n")
        os.symlink("hostname", src / "etc" / "name-link")

        host = FakeHost()
        with host.patched():
            m = ContentMigrator(FakeLogger())
            m.backup(src, staging)
            m.restore(staging, dst)

        assert (dst / "etc" / "hostname").read_text() == "pi\n"
        assert os.readlink(dst / "etc" / "name-link") == "hostname"
        assert len(host.commands("rsync")) == 2

    def test_backup_failure_is_migration_error(self, tmp_path):
        host = FakeHost()
        host.fail_on("rsync", rc=23)
        (tmp_path / "orig").mkdir()
        with host.patched(), pytest.raises(MigrationError) as ei:
            ContentMigrator(FakeLogger()).backup(tmp_path / "orig", tmp_path / "staging")
        assert ei.value.code == 5
        assert not ei.value.critical

    def test_restore_failure_is_critical(self, tmp_path):
        host = FakeHost()
        host.fail_on("rsync", rc=11)
        (tmp_path / "staging").mkdir()
        with host.patched(), pytest.raises(RestoreError) as ei:
            ContentMigrator(FakeLogger()).restore(tmp_path / "staging", tmp_path / "enc")
        assert ei.value.code == 6
        assert ei.value.critical

    def test_space_check_runs_before_copy(self, tmp_path):
        usage = {str(tmp_path / "orig"): _Usage(10, 8, 2), str(tmp_path / "staging"): _Usage(10, 9, 1)}
        (tmp_path / "orig").mkdir()
        with patch("img2luks.storage.migrate.shutil.disk_usage", side_effect=lambda p: usage[str(p)]):
            with pytest.raises(MigrationError, match="too small"):
                ContentMigrator(FakeLogger()).backup(tmp_path / "orig", tmp_path / "staging")
