# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Melody State Store

One JSON document per configuration item, named deterministically from the
item's canonical path, so a later restore finds the snapshot again without an
index. Writes go through atomic_write; a crash leaves either the previous
snapshot or the new one.

The store assumes a single writer per state directory.
"""

import json
import logging
from pathlib import Path
from typing import List, Union

from melody.core.atomic import atomic_write
from melody.core.exceptions import CorruptSnapshotError, IOFailureError, PathNotFoundError
from melody.core.models import StateSnapshot
from melody.core.paths import ConfigPath, state_file_name

logger = logging.getLogger("melody.store")

SNAPSHOT_FILE_MODE = 0o600


class StateStore:
    """Directory of snapshot documents"""

    def __init__(self, state_dir: Union[str, Path]):
        self.state_dir = Path(state_dir)

    def path_for(self, path: ConfigPath) -> Path:
        """Snapshot file location for a configuration item."""
        return self.state_dir / state_file_name(path)

    def exists(self, path: ConfigPath) -> bool:
        return self.path_for(path).is_file()

    def save(self, snapshot: StateSnapshot) -> Path:
        """
        Persist a snapshot, replacing any previous one for the same item.

        Returns:
            Path of the written snapshot file
        """
        target = self.path_for(snapshot.source_path)
        document = json.dumps(snapshot.to_dict(), indent=2, sort_keys=True)
        try:
            atomic_write(target, document.encode("utf-8"), mode=SNAPSHOT_FILE_MODE)
        except OSError as e:
            raise IOFailureError(
                f"Cannot write snapshot: {e}", path=snapshot.source_path, details={"file": str(target)}, cause=e
            )

        logger.debug(f"Saved snapshot of {snapshot.source_path} to {target.name}")
        return target

    def load(self, path: ConfigPath) -> StateSnapshot:
        """
        Load the snapshot recorded for an item.

        Raises:
            PathNotFoundError: nothing was captured for this item
            CorruptSnapshotError: the file is not a valid snapshot document
        """
        target = self.path_for(path)
        if not target.is_file():
            raise PathNotFoundError("No snapshot recorded for item", path=path, details={"file": str(target)})

        snapshot = self.load_file(target)
        if state_file_name(snapshot.source_path) != target.name:
            raise CorruptSnapshotError(
                f"Snapshot describes {snapshot.source_path}", path=path, details={"file": str(target)}
            )
        return snapshot

    @staticmethod
    def load_file(target: Union[str, Path]) -> StateSnapshot:
        """Read a snapshot document from an explicit file."""
        target = Path(target)
        try:
            data = json.loads(target.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise PathNotFoundError(f"Snapshot file not found: {target}", cause=e)
        except OSError as e:
            raise IOFailureError(f"Cannot read snapshot file {target}: {e}", cause=e)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptSnapshotError(f"Snapshot file is not valid JSON: {target}", cause=e)

        if not isinstance(data, dict):
            raise CorruptSnapshotError(f"Snapshot file is not a JSON object: {target}")
        return StateSnapshot.from_dict(data)

    def list_snapshots(self) -> List[Path]:
        """All snapshot files in the store, sorted by name."""
        if not self.state_dir.is_dir():
            return []
        return sorted(p for p in self.state_dir.glob("*.json") if p.is_file())
