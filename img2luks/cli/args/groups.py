# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
from __future__ import annotations

import argparse

from ...core.options import DEFAULT_CRYPTO, DEFAULT_MAPPER, Flavor, UnlockPolicy
from ...orchestrator.batch import DEFAULT_OUTPUT_DIR, DEFAULT_PREFIX
from ...storage.luks import CIPHERS, KDF_PROFILES

COMMANDS = ("encrypt", "batch", "post-image", "keygen")


def _add_global_config_logging(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Global config/logging (two-phase parse relies on these)
    # ------------------------------------------------------------------
    from ... import __version__

    p.add_argument(
        "--config",
        action="append",
        default=[],
        help="YAML config file (repeatable; later overrides earlier).",
    )
    p.add_argument("--dump-config", action="store_true", help="Print merged config and exit.")
    p.add_argument("--dump-args", action="store_true", help="Print final parsed args and exit.")
    p.add_argument("--version", action="version", version=__version__)
    p.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity: -v, -vv, -vvv (trace)")
    p.add_argument("-q", "--quiet", action="count", default=0, help="Less output: -q warnings, -qq errors")
    p.add_argument("--log-file", dest="log_file", default=None, help="Write a full debug log to this file.")
    p.add_argument("--json-logs", dest="json_logs", action="store_true", help="Emit NDJSON log lines on stderr.")


def _add_project_control(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--cmd",
        dest="cmd",
        default=None,
        help=f"Operation (normally from YAML `cmd:`): {', '.join(COMMANDS)}",
    )


def _add_input_paths(p: argparse.ArgumentParser) -> None:
    p.add_argument("--input", dest="input", default=None, help="Source disk image (left untouched).")
    p.add_argument(
        "--output",
        dest="output",
        default=None,
        help="Encrypted image to write (default: <input>-encrypted.img).",
    )


def _add_luks_knobs(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # LUKS container
    # ------------------------------------------------------------------
    p.add_argument(
        "--crypto",
        dest="crypto",
        default=DEFAULT_CRYPTO,
        help=f"Cipher family ({', '.join(sorted(CIPHERS))}); aes-* spellings mean aes.",
    )
    p.add_argument("--mapper", dest="mapper", default=DEFAULT_MAPPER, help="Boot-time mapper name.")
    p.add_argument("--keydir", dest="keydir", default="./keys", help="Where generated keyfiles go.")
    p.add_argument("--keyfile", dest="keyfile", default=None, help="Use this existing keyfile instead of generating one.")
    p.add_argument(
        "--flavor",
        dest="flavor",
        default=Flavor.BUILDROOT.value,
        choices=[f.value for f in Flavor],
        help="buildroot: unlock tooling already in the image. raspios: rebuild the initramfs in the image.",
    )
    p.add_argument(
        "--unlock-policy",
        dest="unlock_policy",
        default=UnlockPolicy.USB.value,
        choices=[u.value for u in UnlockPolicy],
        help="usb: key only on removable media. embedded: key also stored inside the image.",
    )
    p.add_argument(
        "--passphrase",
        dest="passphrase",
        action="store_true",
        help="Also add an interactive recovery passphrase (prompts on the terminal).",
    )
    p.add_argument(
        "--kdf",
        dest="kdf",
        default=None,
        choices=sorted(KDF_PROFILES),
        help="KDF profile override (default follows --flavor).",
    )
    p.add_argument("--workdir", dest="workdir", default=None, help="Parent for scratch mount points and staging.")
    p.add_argument("--progress", dest="progress", action="store_true", help="Show rsync transfer progress.")


def _add_ssh_knobs(p: argparse.ArgumentParser) -> None:
    p.add_argument("--ssh", dest="ssh", action="store_true", help="raspios: add dropbear SSH unlock to the initramfs.")
    p.add_argument(
        "--authorized-keys",
        dest="authorized_keys",
        default=None,
        help="Public key file allowed to unlock over SSH.",
    )


def _add_batch_knobs(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Batch (cmd=batch)
    # ------------------------------------------------------------------
    p.add_argument("--count", dest="count", type=int, default=None, help="Number of images to produce.")
    p.add_argument("--prefix", dest="prefix", default=DEFAULT_PREFIX, help="Image name prefix.")
    p.add_argument("--output-dir", dest="output_dir", default=str(DEFAULT_OUTPUT_DIR), help="Batch output directory.")
    p.add_argument("--manifest", dest="manifest", default=None, help="CSV manifest (default: <output-dir>/manifest.csv).")
    p.add_argument("--parallel", dest="parallel", type=int, default=1, help="Images encrypted concurrently.")
    p.add_argument("--dry-run", dest="dry_run", action="store_true", help="Only print what would be created.")


def _add_post_image_knobs(p: argparse.ArgumentParser) -> None:
    # ------------------------------------------------------------------
    # Buildroot post-image hook (cmd=post-image)
    # ------------------------------------------------------------------
    p.add_argument(
        "--binaries-dir",
        dest="binaries_dir",
        default=None,
        help="Buildroot images directory (default: $BINARIES_DIR).",
    )
    p.add_argument(
        "--br2-config",
        dest="br2_config",
        default=None,
        help="Buildroot .config to read BR2_LUKS_* from (default: $BR2_CONFIG or ./.config).",
    )
    p.add_argument(
        "--keep-unencrypted",
        dest="keep_unencrypted",
        action="store_true",
        default=None,
        help="Keep the plain image as <base>-unencrypted.img.",
    )
