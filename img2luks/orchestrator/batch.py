# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/orchestrator/batch.py
"""
Batch encryption: N copies of one base image, one fresh key each.

Units run on a thread pool (each is a chain of blocking subprocesses, so
threads are enough). Each unit reports its own keyfile back with its
result, and only completed units reach the manifest. A failing unit is
logged under its own name and never stops its siblings.
"""

from __future__ import annotations

import concurrent.futures
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional

from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn, TimeRemainingColumn

from ..core.exceptions import PreconditionError
from ..core.logger import Log
from ..core.options import EncryptOptions
from ..core.sanity_checker import SanityChecker
from ..core.utils import U
from ..keys.keyfile import Keyfile
from .manifest import ManifestEntry, ManifestWriter
from .pipeline import EncryptionPipeline

DEFAULT_PREFIX = "device_"
DEFAULT_OUTPUT_DIR = Path("./encrypted")
DEFAULT_MANIFEST = "manifest.csv"


@dataclass(frozen=True)
class BatchUnit:
    index: int
    name: str
    output: Path


@dataclass
class UnitResult:
    unit: BatchUnit
    ok: bool
    keyfile: Optional[Keyfile] = None
    error: Optional[str] = None
    duration_s: float = 0.0


@dataclass
class BatchReport:
    results: List[UnitResult] = field(default_factory=list)
    manifest: Optional[Path] = None
    dry_run: bool = False
    unrecorded: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> List[UnitResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[UnitResult]:
        return [r for r in self.results if not r.ok]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed or self.unrecorded else 0


def index_width(count: int) -> int:
    return max(3, len(str(count)))


def unit_name(prefix: str, index: int, count: int) -> str:
    return f"{prefix}{index:0{index_width(count)}d}"


class BatchOrchestrator:
    def __init__(
        self,
        logger: Any,
        base_image: Path,
        count: int,
        options: EncryptOptions,
        *,
        prefix: str = DEFAULT_PREFIX,
        output_dir: Path = DEFAULT_OUTPUT_DIR,
        manifest: Optional[Path] = None,
        parallel: int = 1,
        dry_run: bool = False,
        pipeline_factory: Callable[..., EncryptionPipeline] = EncryptionPipeline,
    ):
        if count < 1:
            raise PreconditionError(msg=f"count must be >= 1 (got {count})")
        if parallel < 1:
            raise PreconditionError(msg=f"parallel must be >= 1 (got {parallel})")
        if options.keyfile is not None:
            raise PreconditionError(msg="batch mode generates one key per image; --keyfile is not allowed")
        if options.add_passphrase and parallel > 1:
            raise PreconditionError(msg="--passphrase prompts on the terminal; use --parallel 1")

        self.logger = logger
        self.base_image = Path(base_image)
        self.count = count
        self.options = options
        self.prefix = prefix
        self.output_dir = Path(output_dir)
        self.manifest_path = Path(manifest) if manifest else self.output_dir / DEFAULT_MANIFEST
        self.parallel = parallel
        self.dry_run = dry_run
        self.pipeline_factory = pipeline_factory

    def plan(self) -> List[BatchUnit]:
        units = []
        for i in range(1, self.count + 1):
            name = unit_name(self.prefix, i, self.count)
            units.append(BatchUnit(index=i, name=name, output=self.output_dir / f"{name}.img"))
        return units

    def _check(self, units: List[BatchUnit]) -> None:
        base = self.base_image.resolve()
        for u in units:
            if u.output.resolve() == base:
                raise PreconditionError(msg=f"batch output {u.output} would overwrite the base image")
        size = self.base_image.stat().st_size if self.base_image.exists() else None
        SanityChecker(
            self.logger,
            self.options,
            input_image=self.base_image,
            output_image=units[0].output,
            needed_bytes=size * len(units) if size else None,
        ).run()

    def _run_unit(self, unit: BatchUnit, manifest: ManifestWriter) -> UnitResult:
        log = Log.bind(self.logger, unit=unit.name)
        started = time.monotonic()
        try:
            pipeline = self.pipeline_factory(
                log,
                self.base_image,
                unit.output,
                self.options,
                check_preconditions=False,
            )
            result = pipeline.run()
        except Exception as e:
            Log.fail(log, f"{unit.name} failed: {e}")
            log.debug("unit failure details", exc_info=True)
            return UnitResult(unit=unit, ok=False, error=str(e) or type(e).__name__,
                              duration_s=time.monotonic() - started)

        manifest.submit(
            ManifestEntry(
                image_file=unit.output.name,
                keyfile_uuid=result.keyfile.identifier,
                keyfile_path=str(result.keyfile.path),
                created_at=U.iso_now(),
            )
        )
        return UnitResult(unit=unit, ok=True, keyfile=result.keyfile, duration_s=time.monotonic() - started)

    def run(self) -> BatchReport:
        units = self.plan()
        Log.banner(self.logger, f"Batch: {self.count} x {self.base_image.name}")

        if self.dry_run:
            for u in units:
                self.logger.info("Would create: %s", u.output)
            self.logger.info("Keys would go to %s, manifest to %s", self.options.key_dir, self.manifest_path)
            return BatchReport(results=[UnitResult(unit=u, ok=True) for u in units], dry_run=True)

        self._check(units)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        workers = min(self.parallel, len(units))
        self.logger.info("🧵 %d unit(s), %d worker(s)", len(units), workers)

        results: List[Optional[UnitResult]] = [None] * len(units)
        with ManifestWriter(self.logger, self.manifest_path) as manifest, Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            transient=True,
        ) as progress:
            task = progress.add_task("Encrypting images", total=len(units))
            executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="unit")
            try:
                futures = {executor.submit(self._run_unit, u, manifest): i for i, u in enumerate(units)}
                for future in concurrent.futures.as_completed(futures):
                    idx = futures[future]
                    results[idx] = future.result()
                    progress.update(task, advance=1)
            except KeyboardInterrupt:
                self.logger.warning("⚠️  Interrupted; waiting for running units to unwind")
                executor.shutdown(wait=True, cancel_futures=True)
                raise
            finally:
                executor.shutdown(wait=True)

        report = BatchReport(results=[r for r in results if r is not None], manifest=self.manifest_path)
        recorded = set(manifest.recorded)
        report.unrecorded = [r.unit.output.name for r in report.succeeded if r.unit.output.name not in recorded]
        self._summarize(report)
        return report

    def _summarize(self, report: BatchReport) -> None:
        self.logger.info("📊 Batch done: %d ok, %d failed", len(report.succeeded), len(report.failed))
        for r in report.failed:
            Log.fail(self.logger, f"{r.unit.name}: {r.error}")
        for name in report.unrecorded:
            Log.fail(self.logger, f"{name}: encrypted but missing from {self.manifest_path}; its key is in {self.options.key_dir}")
        if report.succeeded:
            self.logger.info("Images in %s, keys in %s", self.output_dir, self.options.key_dir)
