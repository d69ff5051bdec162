#!/usr/bin/env python3
"""
Stage completion markers.

A stage is complete iff its marker exists on the filesystem when the stage
is entered. Markers are never cached: a re-run days after a partial
failure must see the current state of the run directory.

Known limitation: a directory marker counts as present even when empty,
so a crash after the directory was created but before it was populated
looks like a completed stage. Delete the directory to force a re-run.
"""

import fnmatch
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger("neurotbss.tbss")

DIRECTORY = 'directory'
FILE = 'file'
GLOB = 'glob'


class LocalFilesystem:
    """Filesystem queries used by the gate."""

    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def listdir(self, path: Path) -> Iterable[str]:
        path = Path(path)
        if not path.is_dir():
            return []
        return [p.name for p in path.iterdir()]


@dataclass(frozen=True)
class StageMarker:
    """
    Filesystem evidence that a stage finished.

    ``kind`` is one of 'directory', 'file' or 'glob'. Glob markers are
    present when at least one entry of ``path`` matches ``pattern`` and
    does not contain ``exclude``.
    """
    stage: str
    path: Path
    kind: str = DIRECTORY
    pattern: Optional[str] = None
    exclude: Optional[str] = None

    def describe(self) -> str:
        if self.kind == GLOB:
            return f"{self.path}/{self.pattern}"
        return str(self.path)


def directory_marker(stage: str, path: Path) -> StageMarker:
    return StageMarker(stage=stage, path=Path(path), kind=DIRECTORY)


def file_marker(stage: str, path: Path) -> StageMarker:
    return StageMarker(stage=stage, path=Path(path), kind=FILE)


def glob_marker(stage: str, directory: Path, pattern: str,
                exclude: Optional[str] = None) -> StageMarker:
    return StageMarker(stage=stage, path=Path(directory), kind=GLOB,
                       pattern=pattern, exclude=exclude)


class StageGate:
    """Decides skip-vs-run for a stage from its marker."""

    def __init__(self, fs=None):
        self.fs = fs if fs is not None else LocalFilesystem()

    def is_stage_complete(self, marker: StageMarker) -> bool:
        if marker.kind in (DIRECTORY, FILE):
            return self.fs.exists(marker.path)

        if marker.kind == GLOB:
            for name in self.fs.listdir(marker.path):
                if not fnmatch.fnmatchcase(name, marker.pattern):
                    continue
                if marker.exclude and marker.exclude in name:
                    continue
                return True
            return False

        raise ValueError(f"Unknown marker kind: {marker.kind}")

    def should_run(self, marker: StageMarker) -> bool:
        """Like is_stage_complete, inverted, with the skip logged."""
        if self.is_stage_complete(marker):
            logger.info(f"[{marker.stage}] already completed ({marker.describe()}), skipping")
            return False
        return True


def is_stage_complete(marker: StageMarker, fs=None) -> bool:
    """Check a marker against the local (or given) filesystem."""
    return StageGate(fs).is_stage_complete(marker)
