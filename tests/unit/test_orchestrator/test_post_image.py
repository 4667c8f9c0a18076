# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from fakes.fake_host import FakeHost
from fakes.fake_logger import FakeLogger
from img2luks.core.exceptions import PreconditionError
from img2luks.core.options import EncryptOptions
from img2luks.orchestrator.post_image import (
    ENCRYPTED_LINK,
    INFO_FILE,
    PostImageHook,
    PostImageSettings,
    find_image,
    read_br2_config,
)


@pytest.fixture
def images(tmp_path):
    d = tmp_path / "images"
    d.mkdir()
    return d


@pytest.fixture
def host():
    h = FakeHost()
    with h.patched(), patch("img2luks.orchestrator.pipeline.SanityChecker"):
        yield h


def _hook(images, env, **kw):
    return PostImageHook(FakeLogger(), images, EncryptOptions(), env=env, **kw)


@pytest.mark.unit
class TestSettings:
    def test_reads_quoted_config_values(self, tmp_path):
        conf = tmp_path / ".config"
        conf.write_text('# comment\nBR2_LUKS_ENCRYPT=y\nBR2_LUKS_CRYPTO="xchacha"\n# BR2_FOO is not set\n')
        assert read_br2_config(conf) == {"BR2_LUKS_ENCRYPT": "y", "BR2_LUKS_CRYPTO": "xchacha"}

    def test_missing_config_is_empty(self, tmp_path):
        assert read_br2_config(tmp_path / "nope") == {}
        assert read_br2_config(None) == {}

    def test_environment_wins(self, tmp_path, images):
        conf = tmp_path / ".config"
        conf.write_text('BR2_LUKS_ENCRYPT=y\nBR2_LUKS_CRYPTO="xchacha"\n')
        s = PostImageSettings.load(images, {"BR2_LUKS_CRYPTO": "aes"}, conf)
        assert s.enabled
        assert s.crypto == "aes"
        assert s.key_dir == images / "keys"
        assert not s.keep_unencrypted

    def test_image_discovery_order(self, images):
        (images / "rpi-sdcard.img").write_bytes(b"x")
        (images / "disk.img").write_bytes(b"x")
        assert find_image(images).name == "disk.img"

    def test_no_image(self, images):
        with pytest.raises(PreconditionError):
            find_image(images)


@pytest.mark.unit
class TestHook:
    def test_disabled_does_nothing(self, host, images):
        (images / "sdcard.img").write_bytes(os.urandom(4096))
        assert _hook(images, {}).run() == 0
        assert host.calls == []
        assert not (images / INFO_FILE).exists()

    def test_replaces_original_by_default(self, host, images):
        (images / "sdcard.img").write_bytes(os.urandom(4096))
        env = {"BR2_LUKS_ENCRYPT": "y", "BR2_LUKS_CRYPTO": "xchacha"}

        assert _hook(images, env).run() == 0

        link = images / ENCRYPTED_LINK
        assert link.is_symlink() and os.readlink(link) == "sdcard.img"
        assert not (images / "sdcard-unencrypted.img").exists()
        keys = list((images / "keys").glob("*.lek"))
        assert len(keys) == 1
        info = (images / INFO_FILE).read_text()
        assert info.startswith("LUKS Encrypted Image Information\n")
        assert "Image:      sdcard.img" in info
        assert f"Keyfile:    {keys[0].name}" in info
        assert "Crypto:     xchacha" in info
        assert "mkfs.vfat -F 32" in info
        assert "bs=4M status=progress" in info
        assert host.clean()

    def test_keep_unencrypted(self, host, images):
        original = os.urandom(4096)
        (images / "disk.img").write_bytes(original)
        env = {"BR2_LUKS_ENCRYPT": "y", "BR2_LUKS_KEEP_UNENCRYPTED": "y"}

        assert _hook(images, env).run() == 0

        assert (images / "disk-unencrypted.img").read_bytes() == original
        assert ["cp", "--sparse=always", str(images / "disk.img"), str(images / "disk-unencrypted.img")] in host.commands("cp")
        assert (images / "disk-encrypted.img").exists()
        assert os.readlink(images / ENCRYPTED_LINK) == "disk-encrypted.img"

    def test_keep_flag_from_cli_overrides(self, host, images):
        (images / "sdcard.img").write_bytes(os.urandom(4096))
        env = {"BR2_LUKS_ENCRYPT": "y"}

        _hook(images, env, keep_unencrypted=True).run()

        assert (images / "sdcard-unencrypted.img").exists()
        assert (images / "sdcard-encrypted.img").is_file()
        assert not (images / "sdcard-encrypted.img").is_symlink()

    def test_supplied_keyfile_is_copied_into_key_dir(self, host, images, tmp_path):
        (images / "sdcard.img").write_bytes(os.urandom(4096))
        key = tmp_path / "release.lek"
        key.write_bytes(b"k" * 256)
        env = {"BR2_LUKS_ENCRYPT": "y", "BR2_LUKS_KEYFILE": str(key), "BR2_LUKS_KEYDIR": str(tmp_path / "kd")}

        _hook(images, env).run()

        assert (tmp_path / "kd" / "release.lek").read_bytes() == key.read_bytes()
        fmt = [c for c in host.commands("cryptsetup") if c[1] == "luksFormat"][0]
        assert fmt[fmt.index("--key-file") + 1] == str(tmp_path / "kd" / "release.lek")

    def test_missing_images_dir(self, host, tmp_path):
        with pytest.raises(PreconditionError):
            _hook(tmp_path / "absent", {"BR2_LUKS_ENCRYPT": "y"}).run()
