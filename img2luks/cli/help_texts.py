# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/cli/help_texts.py
from __future__ import annotations

# Pure help text for the argparse epilog. Keep it copy/paste runnable.

YAML_EXAMPLE = r"""# img2luks configuration examples (YAML)
#
# Run:
#   sudo img2luks --config encrypt.yaml
#
# Merge multiple configs (later overrides earlier):
#   sudo img2luks --config base.yaml --config pi-fleet.yaml
#
# Keys are the long option names with '-' written as '_'.
# Anything given on the command line wins over the YAML.

# --- single image ----------------------------------------------------------
cmd: encrypt
input: output/images/sdcard.img
output: output/images/sdcard-encrypted.img   # default: <input>-encrypted.img
crypto: aes                # aes | xchacha
mapper: cryptroot
keydir: ./keys
flavor: buildroot          # buildroot | raspios
unlock_policy: usb         # usb | embedded
passphrase: false          # also add an interactive recovery passphrase

# --- batch -----------------------------------------------------------------
# cmd: batch
# input: sdcard.img
# count: 50
# prefix: device_
# output_dir: ./encrypted
# manifest: ./encrypted/manifest.csv
# parallel: 4
# dry_run: true

# --- Raspberry Pi OS with SSH unlock ---------------------------------------
# cmd: encrypt
# flavor: raspios
# ssh: true
# authorized_keys: ~/.ssh/id_ed25519.pub
"""

FEATURE_SUMMARY = r"""  • encrypt     copy an SD card image and move its root partition into LUKS2
  • batch       N images from one base image, one fresh key each, CSV manifest
  • post-image  Buildroot BR2_ROOTFS_POST_IMAGE_SCRIPT hook (BR2_LUKS_* settings)
  • keygen      create a keyfile only
  • boot config cmdline.txt, fstab, crypttab and the USB unlock agent rewritten in place
  • raspios     initramfs rebuilt inside the image (qemu-user-static on x86 hosts)
"""

BATCH_EXAMPLE = r"""  sudo img2luks --cmd batch --input sdcard.img --count 10 --parallel 4
  sudo img2luks --cmd batch --input sdcard.img --count 10 --dry-run
"""
