# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/orchestrator/orchestrator.py

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Optional

from ..core.logger import Log
from ..core.options import EncryptOptions
from ..keys.keyfile import KeyfileGenerator
from .batch import BatchOrchestrator
from .pipeline import EncryptionPipeline, default_output_for
from .post_image import PostImageHook


def _path(v: Optional[str]) -> Optional[Path]:
    return Path(v).expanduser() if v else None


class Orchestrator:
    """Turns parsed CLI arguments into one operation and returns its exit code."""

    def __init__(self, logger: logging.Logger, args: argparse.Namespace):
        self.logger = logger
        self.args = args

    def options(self) -> EncryptOptions:
        a = self.args
        return EncryptOptions(
            crypto=a.crypto,
            mapper_name=a.mapper,
            key_dir=Path(a.keydir).expanduser(),
            keyfile=_path(a.keyfile),
            flavor=a.flavor,
            unlock_policy=a.unlock_policy,
            add_passphrase=bool(a.passphrase),
            enable_ssh=bool(a.ssh),
            authorized_keys=_path(a.authorized_keys),
            kdf=a.kdf,
            workdir=_path(a.workdir),
        )

    def run(self) -> int:
        handlers = {
            "encrypt": self._encrypt,
            "batch": self._batch,
            "post-image": self._post_image,
            "keygen": self._keygen,
        }
        self.logger.debug("cmd=%s", self.args.cmd)
        return handlers[self.args.cmd]()

    def _encrypt(self) -> int:
        src = Path(self.args.input).expanduser()
        out = _path(self.args.output) or default_output_for(src)
        opts = self.options()
        result = EncryptionPipeline(
            self.logger,
            src,
            out,
            opts,
            progress=bool(self.args.progress),
        ).run()
        self.logger.info("⏱️  Done in %.1fs", result.duration_s)
        if not opts.add_passphrase:
            Log.warn(self.logger, f"Keep {result.keyfile.path} safe: it is the only way to unlock {out.name}")
        return 0

    def _batch(self) -> int:
        report = BatchOrchestrator(
            self.logger,
            Path(self.args.input).expanduser(),
            int(self.args.count),
            self.options(),
            prefix=self.args.prefix,
            output_dir=Path(self.args.output_dir).expanduser(),
            manifest=_path(self.args.manifest),
            parallel=int(self.args.parallel),
            dry_run=bool(self.args.dry_run),
        ).run()
        return report.exit_code

    def _post_image(self) -> int:
        binaries = Path(self.args.binaries_dir or os.environ["BINARIES_DIR"]).expanduser()
        br2_config = self.args.br2_config or os.environ.get("BR2_CONFIG") or ".config"
        return PostImageHook(
            self.logger,
            binaries,
            self.options(),
            br2_config=Path(br2_config),
            keep_unencrypted=self.args.keep_unencrypted,
        ).run()

    def _keygen(self) -> int:
        key = KeyfileGenerator(self.logger, Path(self.args.keydir).expanduser()).generate()
        print(key.path)
        return 0
