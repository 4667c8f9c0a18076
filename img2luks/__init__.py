# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/__init__.py
"""
img2luks - LUKS2 root filesystem encryption for SD card images

Takes a finished Raspberry Pi style disk image (boot partition 1, root
partition 2), moves the root filesystem into a LUKS2 container and
rewrites the boot configuration so the device unlocks itself from a USB
keyfile at boot.

Usage as a library:

    from img2luks import EncryptionPipeline, EncryptOptions

    opts = EncryptOptions(crypto="aes", flavor="buildroot")
    result = EncryptionPipeline(logger, "sdcard.img", "sdcard-encrypted.img", opts).run()
    print(result.keyfile.path)
"""

__version__ = "0.1.0"

from .core import EncryptOptions, Fatal, Flavor, UnlockPolicy
from .orchestrator import BatchOrchestrator, EncryptionPipeline, EncryptResult, PostImageHook

__all__ = [
    "__version__",
    "EncryptOptions",
    "Flavor",
    "UnlockPolicy",
    "Fatal",
    "EncryptionPipeline",
    "EncryptResult",
    "BatchOrchestrator",
    "PostImageHook",
]
