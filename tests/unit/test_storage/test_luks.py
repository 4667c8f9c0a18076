# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import os
from pathlib import Path

import pytest
from fakes.fake_host import FakeHost
from fakes.fake_logger import FakeLogger
from img2luks.core.exceptions import ContainerError
from img2luks.core.options import Flavor
from img2luks.storage.luks import (
    AES_XTS,
    KDF_PROFILES,
    XCHACHA_ADIANTUM,
    LuksContainer,
    kdf_for,
    run_mapping_name,
    select_cipher,
)


@pytest.mark.unit
class TestCipherSelection:
    @pytest.mark.parametrize("crypto", ["aes", "AES", "aes-xts", "aes-cbc-essiv", None, ""])
    def test_aes_family(self, crypto):
        assert select_cipher(crypto) == AES_XTS

    def test_xchacha(self):
        assert select_cipher("xchacha") == XCHACHA_ADIANTUM

    def test_unknown_warns_and_falls_back(self):
        log = FakeLogger()
        assert select_cipher("serpent", log) == AES_XTS
        assert any("serpent" in m for m in log.messages("warning"))

    def test_known_values_do_not_warn(self):
        log = FakeLogger()
        select_cipher("aes-xts-plain64", log)
        select_cipher("xchacha", log)
        assert log.messages("warning") == []


@pytest.mark.unit
class TestKdfProfiles:
    def test_flavor_defaults(self):
        assert kdf_for(Flavor.BUILDROOT) == KDF_PROFILES["buildroot"]
        assert kdf_for(Flavor.RASPIOS).pbkdf == "pbkdf2"
        assert kdf_for(Flavor.RASPIOS).iter_time_ms == 1000

    def test_override(self):
        assert kdf_for(Flavor.BUILDROOT, "raspios").pbkdf == "pbkdf2"

    def test_unknown_override(self):
        with pytest.raises(ContainerError):
            kdf_for(Flavor.BUILDROOT, "scrypt")


@pytest.mark.unit
class TestMappingNames:
    def test_names_carry_pid_and_are_distinct(self):
        names = {run_mapping_name("cryptroot") for _ in range(200)}
        assert len(names) == 200
        assert all(n.startswith(f"cryptroot_{os.getpid()}_") for n in names)


@pytest.mark.unit
class TestLuksContainer:
    def _container(self, **kw):
        return LuksContainer(FakeLogger(), "/dev/loop0p2", Path("/keys/abc.lek"), cipher=AES_XTS, **kw)

    def test_format_command(self):
        cmd = self._container().format_cmd()
        assert cmd[:3] == ["luksFormat", "--type", "luks2"]
        assert cmd[cmd.index("--cipher") + 1] == AES_XTS
        assert cmd[cmd.index("--pbkdf") + 1] == "argon2i"
        assert cmd[cmd.index("--iter-time") + 1] == "5000"
        assert cmd[cmd.index("--key-size") + 1] == "256"
        assert cmd[cmd.index("--hash") + 1] == "sha256"
        assert "--batch-mode" in cmd
        assert cmd[-3:] == ["--key-file", "/keys/abc.lek", "/dev/loop0p2"]

    def test_open_mkfs_close(self):
        host = FakeHost()
        with host.patched():
            c = self._container()
            c.format()
            path = c.open("cryptroot")
            assert path.startswith("/dev/mapper/cryptroot_")
            assert c.is_open()
            c.make_filesystem()
            assert c.reported_cipher() == AES_XTS
            c.close()
            c.close()
        assert host.mappings == set()
        assert ["mkfs.ext4", "-F", "-L", "rootfs", path] in host.calls
        assert len(host.commands("cryptsetup")) == 6  # format, open, status, luksDump, status, close

    def test_close_without_open_is_noop(self):
        host = FakeHost()
        with host.patched():
            self._container().close()
        assert host.calls == []

    def test_format_failure_is_container_error(self):
        host = FakeHost()
        host.fail_on("cryptsetup", "luksFormat", stderr="device busy")
        with host.patched(), pytest.raises(ContainerError) as ei:
            self._container().format()
        assert ei.value.code == 4
        assert ei.value.context["stderr"] == "device busy"

    def test_mapper_path_needs_open(self):
        with pytest.raises(ContainerError):
            _ = self._container().mapper_path

    def test_passphrase_slot_prompts_on_terminal(self):
        host = FakeHost()
        with host.patched():
            self._container().add_passphrase()
        assert host.calls == [["cryptsetup", "luksAddKey", "--key-file", "/keys/abc.lek", "/dev/loop0p2"]]

