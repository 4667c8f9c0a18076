# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# img2luks/config/config_loader.py
"""
YAML config files for img2luks.

Several --config files may be given; they are merged left to right, later
files winning. Nested mappings merge key by key, everything else is
replaced. The merged mapping becomes argparse defaults, so explicit CLI
flags still override it.

    cmd: batch
    input: build/sdcard.img
    count: 25
    crypto: xchacha
    parallel: 4
"""
from __future__ import annotations

import argparse
import glob
import os
from pathlib import Path
from typing import Any, Dict, List, Sequence

import yaml

from ..core.exceptions import PreconditionError

CONFIG_SUFFIXES = (".yaml", ".yml", ".json")


def _norm_key(k: Any) -> str:
    return str(k).strip().replace("-", "_")


def _normalize(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {_norm_key(k): _normalize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_normalize(v) for v in obj]
    return obj


def deep_merge(base: Dict[str, Any], over: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in over.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = v
    return out


class Config:
    @staticmethod
    def expand_configs(logger: Any, cfgs: Sequence[str]) -> List[Path]:
        """Expand ~, globs and directories (their *.yaml/*.yml/*.json, sorted)."""
        out: List[Path] = []
        for raw in cfgs:
            pattern = os.path.expanduser(os.path.expandvars(str(raw)))
            matches = sorted(glob.glob(pattern)) if glob.has_magic(pattern) else [pattern]
            if not matches:
                raise PreconditionError(msg=f"config pattern matched nothing: {raw}")
            for m in matches:
                p = Path(m)
                if p.is_dir():
                    found = sorted(x for x in p.iterdir() if x.suffix.lower() in CONFIG_SUFFIXES)
                    logger.debug("Config dir %s: %d file(s)", p, len(found))
                    out.extend(found)
                elif p.is_file():
                    out.append(p)
                else:
                    raise PreconditionError(msg=f"config file not found: {p}")
        return out

    @staticmethod
    def load_one(logger: Any, path: Path) -> Dict[str, Any]:
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise PreconditionError(msg=f"invalid config {path}: {e}", cause=e)
        if data is None:
            logger.warning("⚠️  Config %s is empty", path)
            return {}
        if not isinstance(data, dict):
            raise PreconditionError(msg=f"config {path}: top level must be a mapping, got {type(data).__name__}")
        logger.debug("Loaded config %s (%d key(s))", path, len(data))
        return _normalize(data)

    @staticmethod
    def load_many(logger: Any, paths: Sequence[Path]) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for p in paths:
            merged = deep_merge(merged, Config.load_one(logger, p))
        return merged

    @staticmethod
    def apply_as_defaults(logger: Any, parser: argparse.ArgumentParser, conf: Dict[str, Any]) -> None:
        """Set parser defaults from config keys that name an option dest."""
        dests = {a.dest for a in parser._actions if a.dest != argparse.SUPPRESS}
        defaults: Dict[str, Any] = {}
        for k, v in conf.items():
            if k in dests:
                defaults[k] = v
            else:
                logger.warning("⚠️  Ignoring unknown config key: %s", k)
        if defaults:
            parser.set_defaults(**defaults)
