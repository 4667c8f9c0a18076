# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/orchestrator/manifest.py
"""
Batch manifest: which key opens which image.

Workers never touch the file. They put finished entries on a queue and
one writer thread appends them, a whole line per write followed by a
flush, so a crash can lose the last row but never interleave two.
"""

from __future__ import annotations

import csv
import threading
from dataclasses import dataclass
from pathlib import Path
from queue import Queue
from typing import Any, List, Optional

MANIFEST_HEADER = ["image_file", "keyfile_uuid", "keyfile_path", "created_at"]

_STOP = object()


@dataclass(frozen=True)
class ManifestEntry:
    image_file: str
    keyfile_uuid: str
    keyfile_path: str
    created_at: str

    def row(self) -> List[str]:
        return [self.image_file, self.keyfile_uuid, self.keyfile_path, self.created_at]


class ManifestWriter:
    def __init__(self, logger: Any, path: Path):
        self.logger = logger
        self.path = Path(path)
        self.queue: "Queue[Any]" = Queue()
        self.written = 0
        self.recorded: List[str] = []
        self.error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "ManifestWriter":
        """Truncate the manifest, write the header and start the writer thread."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", newline="", encoding="utf-8") as f:
            csv.writer(f).writerow(MANIFEST_HEADER)
        self._thread = threading.Thread(target=self._run, name="manifest-writer", daemon=True)
        self._thread.start()
        self.logger.debug("Manifest writer started: %s", self.path)
        return self

    def submit(self, entry: ManifestEntry) -> None:
        self.queue.put(entry)

    def _run(self) -> None:
        with open(self.path, "a", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            while True:
                item = self.queue.get()
                try:
                    if item is _STOP:
                        return
                    if self.error is not None:
                        continue
                    try:
                        writer.writerow(item.row())
                        f.flush()
                        self.written += 1
                        self.recorded.append(item.image_file)
                    except OSError as e:
                        self.error = e
                        self.logger.error("💥 Manifest write failed (%s): %s", self.path, e)
                finally:
                    self.queue.task_done()

    def close(self) -> int:
        """Drain the queue, stop the thread, return the number of rows written."""
        if self._thread is None:
            return self.written
        self.queue.put(_STOP)
        self._thread.join()
        self._thread = None
        self.logger.info("🧾 Manifest: %s (%d rows)", self.path, self.written)
        return self.written

    def __enter__(self) -> "ManifestWriter":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False


def read_manifest(path: Path) -> List[ManifestEntry]:
    with open(path, newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if header != MANIFEST_HEADER:
            raise ValueError(f"unexpected manifest header in {path}: {header}")
        return [ManifestEntry(*row) for row in reader if row]
