# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
File and directory state capture.

A file snapshot is its raw bytes. A directory snapshot is an uncompressed tar
archive with sorted members and zeroed timestamps/ownership, so an unchanged
tree always produces the same hash.

Transient files (temp files, locks, editor swap files) are excluded when
capturing and never written back when restoring, even if an older snapshot
still contains them.
"""

import fnmatch
import io
import logging
import os
import stat
import tarfile
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from melody.core.atomic import atomic_write
from melody.core.capture.base import StateCapture, os_errors
from melody.core.exceptions import CorruptSnapshotError, IOFailureError, PathNotFoundError
from melody.core.models import OperationOutcome, StateSnapshot
from melody.core.paths import DirectoryPath, FilePath

logger = logging.getLogger("melody.capture.files")

DEFAULT_EXCLUDE_PATTERNS: Tuple[str, ...] = (
    "*.tmp",
    "*.temp",
    "*.lock",
    "*.lck",
    "~$*",
    "*.swp",
    "Thumbs.db",
    ".DS_Store",
    "*.melody-tmp",
)


class ExclusionFilter:
    """Glob filter applied to archive-relative POSIX paths."""

    def __init__(self, patterns: Iterable[str] = (), include_defaults: bool = True):
        merged: List[str] = list(DEFAULT_EXCLUDE_PATTERNS) if include_defaults else []
        for pattern in patterns:
            normalized = pattern.replace("\\", "/").strip()
            if normalized and normalized not in merged:
                merged.append(normalized)
        self.patterns = tuple(merged)

    def excluded(self, relative: str) -> bool:
        """True if the member or any directory above it matches a pattern."""
        parts = PurePosixPath(relative).parts
        for depth in range(1, len(parts) + 1):
            prefix = "/".join(parts[:depth])
            for pattern in self.patterns:
                if fnmatch.fnmatch(prefix, pattern) or fnmatch.fnmatch(parts[depth - 1], pattern):
                    return True
        return False


def _tar_info(name: str, kind: bytes, mode: int, size: int = 0) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = kind
    info.mode = mode
    info.size = size
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


class FileCapture(StateCapture):
    """Captures single files and directory trees."""

    # ========== Capture ==========

    def capture(
        self,
        path: Union[FilePath, DirectoryPath],
        exclude_patterns: Sequence[str] = (),
        **options,
    ) -> StateSnapshot:
        if isinstance(path, DirectoryPath):
            return self._capture_directory(path, ExclusionFilter(exclude_patterns))
        return self._capture_file(path)

    def _capture_file(self, path: FilePath) -> StateSnapshot:
        with os_errors(path, "File capture"):
            target = path.fs_path
            data = target.read_bytes()
            mode = stat.S_IMODE(target.stat().st_mode)

        logger.debug(f"Captured file {path} ({len(data)} bytes)")
        return StateSnapshot.create(path, data, metadata={"kind": "file", "mode": mode, "size": len(data)})

    def _capture_directory(self, path: DirectoryPath, exclusions: ExclusionFilter) -> StateSnapshot:
        root = path.fs_path
        buffer = io.BytesIO()
        members = 0
        skipped_links: List[str] = []

        with os_errors(path, "Directory capture"):
            if not root.exists():
                raise PathNotFoundError("Directory does not exist", path=path)
            if not root.is_dir():
                raise IOFailureError("Path is not a directory", path=path)

            with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as archive:
                for relative, full in self._walk(root, exclusions, skipped_links):
                    st = full.stat()
                    mode = stat.S_IMODE(st.st_mode)
                    if full.is_dir():
                        archive.addfile(_tar_info(relative, tarfile.DIRTYPE, mode))
                    else:
                        data = full.read_bytes()
                        archive.addfile(_tar_info(relative, tarfile.REGTYPE, mode, len(data)), io.BytesIO(data))
                    members += 1

        if skipped_links:
            logger.warning(f"Skipped {len(skipped_links)} symbolic link(s) under {path}")

        logger.debug(f"Captured directory {path} ({members} members)")
        return StateSnapshot.create(
            path,
            buffer.getvalue(),
            metadata={
                "kind": "directory",
                "members": members,
                "exclude_patterns": list(exclusions.patterns),
                "skipped_links": skipped_links,
            },
        )

    def _walk(self, root: Path, exclusions: ExclusionFilter, skipped_links: List[str]):
        """Yield (relative posix name, path) in a stable order, pruning excluded dirs."""

        def _raise(error: OSError):
            raise error

        for current, dirs, files in os.walk(root, onerror=_raise):
            base = Path(current)
            rel_base = base.relative_to(root).as_posix()
            rel_base = "" if rel_base == "." else rel_base + "/"

            kept_dirs = []
            for name in sorted(dirs):
                relative = rel_base + name
                full = base / name
                if full.is_symlink():
                    skipped_links.append(relative)
                elif not exclusions.excluded(relative):
                    kept_dirs.append(name)
            dirs[:] = kept_dirs

            for name in kept_dirs:
                yield rel_base + name, base / name

            for name in sorted(files):
                relative = rel_base + name
                full = base / name
                if full.is_symlink():
                    skipped_links.append(relative)
                    continue
                if exclusions.excluded(relative):
                    continue
                yield relative, full

    # ========== Restore ==========

    def restore(self, snapshot: StateSnapshot, exclude_patterns: Sequence[str] = (), **options) -> OperationOutcome:
        self.check_restorable(snapshot)
        path = snapshot.source_path
        if isinstance(path, DirectoryPath):
            recorded = snapshot.metadata.get("exclude_patterns") or []
            return self._restore_directory(snapshot, ExclusionFilter([*recorded, *exclude_patterns]))
        if isinstance(path, FilePath):
            return self._restore_file(snapshot)
        raise CorruptSnapshotError("Snapshot does not describe a file or directory", path=path)

    def _restore_file(self, snapshot: StateSnapshot) -> OperationOutcome:
        path = snapshot.source_path
        target = path.fs_path
        mode = snapshot.metadata.get("mode")

        with os_errors(path, "File restore"):
            if target.is_file() and target.read_bytes() == snapshot.payload:
                return OperationOutcome.skip("File already matches snapshot", path=path, written=0)
            atomic_write(target, snapshot.payload, mode=mode)

        logger.info(f"Restored file {path} ({len(snapshot.payload)} bytes)")
        return OperationOutcome.ok("File restored", path=path, written=1)

    def _restore_directory(self, snapshot: StateSnapshot, exclusions: ExclusionFilter) -> OperationOutcome:
        path = snapshot.source_path
        root = path.fs_path
        entries = self._read_archive(snapshot)

        written = 0
        unchanged = 0
        excluded = 0
        with os_errors(path, "Directory restore"):
            root.mkdir(parents=True, exist_ok=True)
            for name, info, data in entries:
                if exclusions.excluded(name):
                    excluded += 1
                    continue
                target = root.joinpath(*PurePosixPath(name).parts)
                if info.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if target.is_file() and target.read_bytes() == data:
                    unchanged += 1
                    continue
                atomic_write(target, data, mode=info.mode)
                written += 1

        logger.info(f"Restored directory {path}: {written} written, {unchanged} unchanged, {excluded} excluded")
        details = {"written": written, "unchanged": unchanged, "excluded": excluded}
        if written == 0:
            return OperationOutcome.skip("Directory already matches snapshot", path=path, **details)
        return OperationOutcome.ok(f"Restored {written} file(s)", path=path, **details)

    def _read_archive(self, snapshot: StateSnapshot) -> List[Tuple[str, tarfile.TarInfo, bytes]]:
        """Validate and load every member before anything is written."""
        path = snapshot.source_path
        entries: List[Tuple[str, tarfile.TarInfo, bytes]] = []
        try:
            with tarfile.open(fileobj=io.BytesIO(snapshot.payload), mode="r:") as archive:
                for info in archive.getmembers():
                    name = self._safe_member_name(info.name)
                    if name is None:
                        raise CorruptSnapshotError(f"Unsafe archive member '{info.name}'", path=path)
                    if info.isdir():
                        entries.append((name, info, b""))
                    elif info.isreg():
                        extracted = archive.extractfile(info)
                        entries.append((name, info, extracted.read() if extracted else b""))
                    else:
                        raise CorruptSnapshotError(f"Unsupported archive member type '{info.name}'", path=path)
        except tarfile.TarError as e:
            raise CorruptSnapshotError(f"Directory archive is unreadable: {e}", path=path, cause=e)
        return entries

    @staticmethod
    def _safe_member_name(name: str) -> Optional[str]:
        member = PurePosixPath(name.replace("\\", "/"))
        if member.is_absolute() or not member.parts or ".." in member.parts:
            return None
        if ":" in member.parts[0]:
            return None
        return member.as_posix()
