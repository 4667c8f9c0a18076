# SPDX-License-Identifier: LGPL-3.0-or-later
"""
Unit Tests for CLI Configuration Loading

YAML loading, merging, expansion and the two-phase parse.
"""

import tempfile
import unittest
import unittest.mock
from pathlib import Path

import yaml
from fakes.fake_logger import FakeLogger
from img2luks.cli.args import build_parser, parse_args_with_config
from img2luks.config import Config
from img2luks.config.config_loader import deep_merge
from img2luks.core.exceptions import PreconditionError


class TestConfigLoader(unittest.TestCase):
    def setUp(self):
        self.logger = FakeLogger()
        self._td = tempfile.TemporaryDirectory()
        self.td = Path(self._td.name)

    def tearDown(self):
        self._td.cleanup()

    def _write(self, name, data):
        p = self.td / name
        p.write_text(yaml.safe_dump(data) if not isinstance(data, str) else data, encoding="utf-8")
        return p

    def test_dashes_become_underscores(self):
        p = self._write("a.yaml", {"output-dir": "out", "nested": {"dry-run": True}})
        self.assertEqual(Config.load_one(self.logger, p), {"output_dir": "out", "nested": {"dry_run": True}})

    def test_later_files_win(self):
        a = self._write("a.yaml", {"crypto": "aes", "count": 2, "extra": {"x": 1, "y": 1}})
        b = self._write("b.yaml", {"crypto": "xchacha", "extra": {"y": 2}})
        merged = Config.load_many(self.logger, [a, b])
        self.assertEqual(merged, {"crypto": "xchacha", "count": 2, "extra": {"x": 1, "y": 2}})

    def test_deep_merge_does_not_mutate(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"c": 2}})
        self.assertEqual(base, {"a": {"b": 1}})

    def test_empty_file_warns(self):
        p = self._write("empty.yaml", "")
        self.assertEqual(Config.load_one(self.logger, p), {})
        self.assertTrue(self.logger.messages("warning"))

    def test_invalid_yaml(self):
        p = self._write("bad.yaml", "crypto: [unterminated\n")
        with self.assertRaises(PreconditionError):
            Config.load_one(self.logger, p)

    def test_top_level_list_rejected(self):
        p = self._write("list.yaml", "- a\n- b\n")
        with self.assertRaises(PreconditionError):
            Config.load_one(self.logger, p)

    def test_expand_directory_and_glob(self):
        d = self.td / "conf.d"
        d.mkdir()
        (d / "20.yaml").write_text("a: 1\n")
        (d / "10.yml").write_text("b: 1\n")
        (d / "notes.txt").write_text("ignored\n")
        self.assertEqual([p.name for p in Config.expand_configs(self.logger, [str(d)])], ["10.yml", "20.yaml"])
        self.assertEqual(len(Config.expand_configs(self.logger, [str(d / "*.yaml")])), 1)

    def test_expand_missing(self):
        with self.assertRaises(PreconditionError):
            Config.expand_configs(self.logger, [str(self.td / "nope.yaml")])
        with self.assertRaises(PreconditionError):
            Config.expand_configs(self.logger, [str(self.td / "*.nothing")])

    def test_unknown_keys_are_ignored_with_warning(self):
        parser = build_parser()
        Config.apply_as_defaults(self.logger, parser, {"crypto": "xchacha", "vm_name": "x"})
        self.assertEqual(parser.get_default("crypto"), "xchacha")
        self.assertTrue(any("vm_name" in m for m in self.logger.messages("warning")))


class TestTwoPhaseParse(unittest.TestCase):
    def setUp(self):
        self.logger = FakeLogger()
        self._td = tempfile.TemporaryDirectory()
        self.td = Path(self._td.name)
        self.image = self.td / "sdcard.img"
        self.image.write_bytes(b"\0" * 512)

    def tearDown(self):
        self._td.cleanup()

    def _parse(self, *argv):
        return parse_args_with_config(argv=list(argv), logger=self.logger)

    def _cfg(self, text):
        p = self.td / "cfg.yaml"
        p.write_text(text, encoding="utf-8")
        return p

    def test_config_supplies_required_values(self):
        cfg = self._cfg(f"cmd: batch\ninput: {self.image}\ncount: 3\nparallel: 2\n")
        args, conf, _ = self._parse("--config", str(cfg))
        self.assertEqual(args.cmd, "batch")
        self.assertEqual(args.count, 3)
        self.assertEqual(args.parallel, 2)
        self.assertIn("count", conf)

    def test_cli_overrides_config(self):
        cfg = self._cfg(f"cmd: encrypt\ninput: {self.image}\ncrypto: aes\n")
        args, _, _ = self._parse("--config", str(cfg), "--crypto", "xchacha")
        self.assertEqual(args.crypto, "xchacha")

    def test_cmd_is_normalized(self):
        args, _, _ = self._parse("--cmd", "KEYGEN")
        self.assertEqual(args.cmd, "keygen")

    def test_missing_cmd(self):
        with self.assertRaises(PreconditionError):
            self._parse("--input", str(self.image))

    def test_unknown_cmd(self):
        with self.assertRaises(PreconditionError):
            self._parse("--cmd", "convert")

    def test_encrypt_needs_existing_input(self):
        with self.assertRaises(PreconditionError):
            self._parse("--cmd", "encrypt", "--input", str(self.td / "missing.img"))

    def test_encrypt_refuses_in_place(self):
        with self.assertRaises(PreconditionError):
            self._parse("--cmd", "encrypt", "--input", str(self.image), "--output", str(self.image))

    def test_batch_needs_count(self):
        with self.assertRaises(PreconditionError):
            self._parse("--cmd", "batch", "--input", str(self.image))

    def test_batch_rejects_zero_count(self):
        with self.assertRaises(PreconditionError):
            self._parse("--cmd", "batch", "--input", str(self.image), "--count", "0")

    def test_batch_rejects_keyfile(self):
        key = self.td / "k.lek"
        key.write_bytes(b"k" * 256)
        with self.assertRaises(PreconditionError):
            self._parse("--cmd", "batch", "--input", str(self.image), "--count", "2", "--keyfile", str(key))

    def test_batch_passphrase_needs_single_worker(self):
        base = ("--cmd", "batch", "--input", str(self.image), "--count", "2", "--passphrase")
        with self.assertRaises(PreconditionError):
            self._parse(*base, "--parallel", "2")
        args, _, _ = self._parse(*base, "--parallel", "1")
        self.assertTrue(args.passphrase)

    def test_ssh_needs_raspios(self):
        with self.assertRaises(PreconditionError):
            self._parse("--cmd", "encrypt", "--input", str(self.image), "--ssh")

    def test_post_image_needs_binaries_dir(self):
        with unittest.mock.patch.dict("os.environ", {}, clear=True):
            with self.assertRaises(PreconditionError):
                self._parse("--cmd", "post-image")
        args, _, _ = self._parse("--cmd", "post-image", "--binaries-dir", str(self.td))
        self.assertEqual(args.cmd, "post-image")

    def test_dump_config_exits(self):
        cfg = self._cfg("cmd: keygen\n")
        with self.assertRaises(SystemExit) as cm:
            self._parse("--config", str(cfg), "--dump-config")
        self.assertEqual(cm.exception.code, 0)


if __name__ == "__main__":
    unittest.main()
