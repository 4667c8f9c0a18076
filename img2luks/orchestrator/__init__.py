# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/orchestrator/__init__.py
from .batch import BatchOrchestrator, BatchReport
from .manifest import ManifestEntry, ManifestWriter, read_manifest
from .orchestrator import Orchestrator
from .pipeline import EncryptionPipeline, EncryptResult
from .post_image import PostImageHook

__all__ = [
    "Orchestrator",
    "EncryptionPipeline",
    "EncryptResult",
    "BatchOrchestrator",
    "BatchReport",
    "ManifestEntry",
    "ManifestWriter",
    "read_manifest",
    "PostImageHook",
]
