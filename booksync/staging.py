"""Stage copies of the Apple Books databases.

Apple Books keeps its databases open while running, so booksync never reads
them in place. Each database is copied into a staging directory and queries
run against the copy.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

log = logging.getLogger(__name__)

# SQLite write-ahead log and shared-memory files that travel with a database
_SIDECAR_SUFFIXES = ("-wal", "-shm")


def resolve_source(base: Path, directory: str, pattern: str) -> Path:
    """Return the first file matching base/directory/pattern.

    Raises FileNotFoundError if nothing matches.
    """
    matches = sorted((Path(base) / directory).glob(pattern))
    files = [m for m in matches if m.is_file()]
    if not files:
        raise FileNotFoundError(
            f"No file matching '{pattern}' in {Path(base) / directory}"
        )
    return files[0]


def copy_file(src: Path, dst: Path) -> None:
    """Copy a regular file, creating the destination directory if needed."""
    if not src.is_file():
        raise OSError(f"{src} is not a regular file")
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dst)
    for suffix in _SIDECAR_SUFFIXES:
        side_src = src.with_name(src.name + suffix)
        side_dst = dst.with_name(dst.name + suffix)
        if side_src.is_file():
            shutil.copyfile(side_src, side_dst)
        elif side_dst.exists():
            side_dst.unlink()
    log.info("Copied %s to %s", src, dst)


def _is_stale(src: Path, dst: Path) -> bool:
    if not dst.exists():
        return True
    newest = src.stat().st_mtime
    for suffix in _SIDECAR_SUFFIXES:
        side = src.with_name(src.name + suffix)
        if side.is_file():
            newest = max(newest, side.stat().st_mtime)
    return newest > dst.stat().st_mtime


@dataclass(frozen=True)
class StagedDatabases:
    """Live Apple Books databases and their copies in the staging directory."""

    annotation_source: Path
    library_source: Path
    staging_dir: Path

    @property
    def annotation_copy(self) -> Path:
        return self.staging_dir / self.annotation_source.name

    @property
    def library_copy(self) -> Path:
        return self.staging_dir / self.library_source.name

    def _pairs(self) -> Tuple[Tuple[Path, Path], ...]:
        return (
            (self.annotation_source, self.annotation_copy),
            (self.library_source, self.library_copy),
        )

    def prepare(self) -> bool:
        """Copy both databases if either copy is missing.

        Returns True if anything was copied.
        """
        if self.annotation_copy.exists() and self.library_copy.exists():
            log.info("Using existing database copies in %s", self.staging_dir)
            return False
        log.info("Database copies not found in %s, copying from source", self.staging_dir)
        for src, dst in self._pairs():
            copy_file(src, dst)
        return True

    def refresh(self) -> int:
        """Re-copy any database whose live file changed after its copy was made.

        Returns the number of databases copied.
        """
        copied = 0
        for src, dst in self._pairs():
            if _is_stale(src, dst):
                copy_file(src, dst)
                copied += 1
        return copied


def locate(
    source_base: Path,
    annotation_dir: str,
    annotation_file: str,
    library_dir: str,
    library_file: str,
    staging_dir: Path,
) -> StagedDatabases:
    """Find the live databases and describe where their copies go."""
    annotation_source = resolve_source(source_base, annotation_dir, annotation_file)
    library_source = resolve_source(source_base, library_dir, library_file)
    log.info("Resolved annotation DB: %s", annotation_source)
    log.info("Resolved library DB: %s", library_source)
    return StagedDatabases(
        annotation_source=annotation_source,
        library_source=library_source,
        staging_dir=Path(staging_dir),
    )
