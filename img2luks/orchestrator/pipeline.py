# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/orchestrator/pipeline.py
"""
Single-image encryption pipeline.

    copy source -> attach loop -> mount root -> rsync to staging -> umount
    -> luksFormat/open/mkfs -> mount mapping -> rsync back
    -> mount boot -> rewrite boot config (chroot + initramfs for raspios)
    -> unwind

Each run owns its working image, loop device, mapping name and temp
directory. Everything acquired goes on the run's RecoveryManager and is
released exactly once in reverse order, on success and on every failure.
A run that fails leaves no working image behind.
"""

from __future__ import annotations

import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from ..boot.rewriter import BootConfigRewriter, BootRewriteReport
from ..core.exceptions import Fatal, ResourceError
from ..core.logger import Log
from ..core.options import EncryptOptions, Flavor
from ..core.recovery_manager import RecoveryManager, Stage
from ..core.sanity_checker import SanityChecker
from ..core.utils import U
from ..guest.context import GuestContext
from ..guest.initramfs import InitramfsBuilder, locate_initramfs
from ..keys.keyfile import Keyfile, KeyfileGenerator
from ..storage.loop import LoopDevice
from ..storage.luks import LuksContainer, kdf_for, select_cipher
from ..storage.migrate import ContentMigrator
from ..storage.mounts import mount_tracked

BOOT_PARTITION = 1
ROOT_PARTITION = 2

StageHook = Callable[[Stage], None]


@dataclass
class EncryptResult:
    input_image: Path
    output_image: Path
    keyfile: Keyfile
    mapper_name: str
    cipher: str
    reported_cipher: Optional[str] = None
    crypt_source: str = ""
    initramfs: Optional[str] = None
    ssh_unlock: bool = False
    duration_s: float = 0.0
    boot: BootRewriteReport = field(default_factory=BootRewriteReport)


class EncryptionPipeline:
    def __init__(
        self,
        logger: Any,
        input_image: Path,
        output_image: Path,
        options: EncryptOptions,
        *,
        keyfile: Optional[Keyfile] = None,
        stage_hook: Optional[StageHook] = None,
        check_preconditions: bool = True,
        progress: bool = False,
    ):
        self.logger = logger
        self.input_image = Path(input_image)
        self.output_image = Path(output_image)
        self.options = options
        self.keyfile = keyfile
        self.stage_hook = stage_hook
        self.check_preconditions = check_preconditions
        self.progress = progress
        self.recovery = RecoveryManager(logger)
        self.cipher = select_cipher(options.crypto, logger)
        self.kdf = kdf_for(options.flavor, options.kdf)

    # --- helpers -------------------------------------------------------------

    def _reached(self, stage: Stage) -> None:
        self.recovery.mark_stage(stage)
        if self.stage_hook is not None:
            self.stage_hook(stage)

    def _resolve_keyfile(self) -> Keyfile:
        if self.keyfile is not None:
            return self.keyfile
        gen = KeyfileGenerator(self.logger, self.options.key_dir)
        if self.options.keyfile is not None:
            return gen.adopt(self.options.keyfile)
        return gen.generate()

    def _copy_source(self) -> None:
        self.output_image.parent.mkdir(parents=True, exist_ok=True)
        Log.step(self.logger, f"Copying {self.input_image.name} -> {self.output_image.name}")
        U.run_cmd(
            self.logger,
            ["cp", "--sparse=always", str(self.input_image), str(self.output_image)],
            fatal=True,
        )

    def _discard_output(self) -> None:
        if self.output_image.exists():
            self.output_image.unlink()
            self.logger.warning("⚠️  Discarded partial image %s", self.output_image)

    # --- run -----------------------------------------------------------------

    def run(self) -> EncryptResult:
        started = time.monotonic()
        opts = self.options

        if self.check_preconditions:
            SanityChecker(
                self.logger,
                opts,
                input_image=self.input_image,
                output_image=self.output_image,
                needed_bytes=self.input_image.stat().st_size if self.input_image.exists() else None,
            ).run()

        Log.banner(self.logger, f"Encrypting {self.input_image.name}")
        keyfile = self._resolve_keyfile()
        result = EncryptResult(
            input_image=self.input_image,
            output_image=self.output_image,
            keyfile=keyfile,
            mapper_name=opts.mapper_name,
            cipher=self.cipher,
        )

        ok = False
        try:
            self._copy_source()
            self._encrypt(keyfile, result)
            ok = True
        finally:
            self.recovery.execute_cleanup()
            if not ok:
                self._discard_output()
                if self.keyfile is None:
                    KeyfileGenerator.discard(keyfile, self.logger)

        in_size = self.input_image.stat().st_size
        out_size = self.output_image.stat().st_size
        if in_size != out_size:
            raise Fatal(code=1, msg=f"output size {out_size} differs from input size {in_size}")

        result.duration_s = time.monotonic() - started
        self.recovery.mark_stage(Stage.FINISHED)
        Log.ok(self.logger, f"Encrypted image: {self.output_image}")
        self.logger.info("🔑 Keyfile: %s (id %s)", keyfile.path, keyfile.identifier)
        return result

    def _encrypt(self, keyfile: Keyfile, result: EncryptResult) -> None:
        opts = self.options
        rec = self.recovery

        workdir = Path(tempfile.mkdtemp(prefix="img2luks-", dir=str(opts.workdir) if opts.workdir else None))
        rec.track_directory(workdir)
        orig_root = workdir / "orig_root"
        boot_mount = workdir / "boot"
        enc_root = workdir / "encrypted_root"
        staging = workdir / "rootfs_backup"
        for d in (orig_root, boot_mount, enc_root, staging):
            d.mkdir(mode=0o700)

        # loop device
        loop = LoopDevice(self.logger, self.output_image)
        loop.attach()
        rec.register_cleanup(loop.detach, f"detach loop {loop.device}")
        self._reached(Stage.LOOP_ATTACHED)

        boot_part = loop.partition(BOOT_PARTITION)
        root_part = loop.partition(ROOT_PARTITION)
        self.logger.info("💽 boot=%s root=%s", boot_part, root_part)

        # backup
        migrator = ContentMigrator(self.logger, progress=self.progress)
        orig_mount = mount_tracked(self.logger, rec, root_part, orig_root, options=["ro"])
        migrator.backup(orig_root, staging)
        orig_mount.release(self.logger)
        if orig_mount.error:
            raise ResourceError(msg=f"could not unmount original root before formatting: {orig_mount.error}")
        self._reached(Stage.BACKED_UP)

        # container
        container = LuksContainer(self.logger, root_part, keyfile.path, cipher=self.cipher, kdf=self.kdf)
        container.format()
        if opts.add_passphrase:
            container.add_passphrase()
        rec.register_cleanup(container.close, "close LUKS mapping")
        container.open(opts.mapper_name)
        container.make_filesystem()
        result.reported_cipher = container.reported_cipher()
        self._reached(Stage.CONTAINER_OPEN)

        # restore
        mount_tracked(self.logger, rec, container.mapper_path, enc_root)
        migrator.restore(staging, enc_root)
        self._reached(Stage.RESTORED)

        # boot configuration
        mount_tracked(self.logger, rec, boot_part, boot_mount)
        rewriter = BootConfigRewriter(
            self.logger,
            boot_mount=boot_mount,
            root_mount=enc_root,
            root_partition=root_part,
            mapper_name=opts.mapper_name,
            keyfile=keyfile,
            crypto=opts.crypto,
            flavor=opts.flavor,
            policy=opts.unlock_policy,
        )
        # agent files first: the initramfs hook copies them
        rewriter.install_unlock_agent()
        if opts.flavor is Flavor.RASPIOS:
            with GuestContext(self.logger, enc_root, rec, boot_source=boot_mount) as guest:
                builder = InitramfsBuilder(
                    self.logger,
                    guest,
                    crypto=opts.crypto,
                    keyfile=keyfile,
                    policy=opts.unlock_policy,
                    enable_ssh=opts.enable_ssh,
                    authorized_keys=opts.authorized_keys,
                )
                built = builder.provision()
                result.ssh_unlock = builder.ssh_configured
            result.initramfs = locate_initramfs(self.logger, boot_mount, enc_root, built)
            rewriter.set_initramfs(result.initramfs)

        rewriter.rewrite_cmdline()
        rewriter.rewrite_fstab()
        rewriter.write_crypttab()
        result.boot = rewriter.report
        result.crypt_source = rewriter.report.crypt_source
        U.run_cmd(self.logger, ["sync"], check=False)
        self._reached(Stage.BOOT_CONFIGURED)


def default_output_for(input_image: Path) -> Path:
    """`foo.img` -> `foo-encrypted.img` next to it."""
    input_image = Path(input_image)
    stem = input_image.name[:-4] if input_image.name.endswith(".img") else input_image.name
    return input_image.with_name(f"{stem}-encrypted.img")

