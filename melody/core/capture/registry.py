# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Registry state capture.

Payload layout (canonical JSON, sorted keys, values ordered by name):

    {
      "key": "HKCU:\\Software\\Test",
      "recursive": false,
      "values": [{"name": "Enabled", "type": "REG_DWORD", "data": 1}],
      "subkeys": {"Child": {"values": [...], "subkeys": {...}}}
    }
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from melody.core.capture.base import StateCapture, os_errors
from melody.core.exceptions import CorruptSnapshotError, PathNotFoundError
from melody.core.models import OperationOutcome, StateSnapshot
from melody.core.paths import Hive, RegistryPath
from melody.core.registry_backend import RegistryBackend, RegistryValue, default_backend

logger = logging.getLogger("melody.capture.registry")


def _sorted_values(values: List[RegistryValue]) -> List[Dict[str, Any]]:
    return [v.to_dict() for v in sorted(values, key=lambda v: (v.name.casefold(), v.name))]


def _encode(document: Dict[str, Any]) -> bytes:
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class RegistryCapture(StateCapture):
    """Reads and re-applies registry values through a RegistryBackend."""

    def __init__(self, backend: Optional[RegistryBackend] = None):
        self.backend = backend or default_backend()

    # ========== Capture ==========

    def capture(self, path: RegistryPath, recursive: bool = False, **options) -> StateSnapshot:
        with os_errors(path, "Registry capture"):
            if path.value_name is not None:
                value = self.backend.get_value(path.hive, path.subkey, path.value_name)
                if value is None:
                    raise PathNotFoundError("Registry value does not exist", path=path)
                document = {"key": str(path), "recursive": False, "values": [value.to_dict()]}
            else:
                document = self._read_tree(path.hive, path.subkey, recursive)
                document["key"] = str(path)
                document["recursive"] = recursive

        payload = _encode(document)
        logger.debug(f"Captured {len(document['values'])} value(s) from {path}")
        return StateSnapshot.create(path, payload, metadata={"recursive": recursive})

    def _read_tree(self, hive: Hive, subkey: str, recursive: bool) -> Dict[str, Any]:
        node: Dict[str, Any] = {"values": _sorted_values(self.backend.read_values(hive, subkey))}
        if recursive:
            children = {}
            for child in sorted(self.backend.list_subkeys(hive, subkey), key=str.casefold):
                child_key = f"{subkey}\\{child}" if subkey else child
                children[child] = self._read_tree(hive, child_key, recursive)
            node["subkeys"] = children
        return node

    # ========== Restore ==========

    def restore(self, snapshot: StateSnapshot, **options) -> OperationOutcome:
        self.check_restorable(snapshot)
        path = snapshot.source_path
        if not isinstance(path, RegistryPath):
            raise CorruptSnapshotError("Snapshot does not describe a registry key", path=path)

        keys, plan = self._plan(path, snapshot.payload)

        created = 0
        applied = 0
        unchanged = 0
        with os_errors(path, "Registry restore"):
            for subkey in keys:
                if not self.backend.key_exists(path.hive, subkey):
                    self.backend.create_key(path.hive, subkey)
                    created += 1
            for subkey, value in plan:
                current = self.backend.get_value(path.hive, subkey, value.name)
                if current is not None and current.type == value.type and current.data == value.data:
                    unchanged += 1
                    continue
                self.backend.set_value(path.hive, subkey, value)
                applied += 1

        logger.info(f"Registry restore {path}: {created} key(s) created, {applied} applied, {unchanged} unchanged")
        if applied == 0 and created == 0:
            return OperationOutcome.skip(
                "Registry already matches snapshot", path=path, applied=0, created=0, unchanged=unchanged
            )
        message = f"Applied {applied} registry value(s)"
        if created:
            message += f", created {created} key(s)"
        return OperationOutcome.ok(message, path=path, applied=applied, created=created, unchanged=unchanged)

    def _plan(self, path: RegistryPath, payload: bytes) -> Tuple[List[str], List[Tuple[str, RegistryValue]]]:
        """Decode the whole payload up front so a bad record writes nothing."""
        try:
            document = json.loads(payload.decode("utf-8"))
            keys: List[str] = []
            plan: List[Tuple[str, RegistryValue]] = []
            self._flatten(path.subkey, document, keys, plan)
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise CorruptSnapshotError(f"Registry payload is unreadable: {e}", path=path, cause=e)

        if path.value_name is not None:
            return [], [(k, v) for k, v in plan if v.name.casefold() == path.value_name.casefold()]
        return keys, plan

    def _flatten(
        self,
        subkey: str,
        node: Dict[str, Any],
        keys: List[str],
        plan: List[Tuple[str, RegistryValue]],
    ) -> None:
        # Parents before children
        keys.append(subkey)
        for record in node.get("values", []):
            plan.append((subkey, RegistryValue.from_dict(record)))
        for child, child_node in sorted(node.get("subkeys", {}).items()):
            child_key = f"{subkey}\\{child}" if subkey else child
            self._flatten(child_key, child_node, keys, plan)
