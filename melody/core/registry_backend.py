# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Registry access backends.

WinRegBackend talks to the real Windows registry through ``winreg``.
MemoryRegistryBackend keeps hives in a dictionary for tests and for callers
that inject it explicitly; it can simulate keys the current user may not open.
UnavailableRegistryBackend is the default off Windows and fails every call.

Backends report failures with the builtin OS exceptions (FileNotFoundError,
PermissionError, OSError), exactly as winreg does; the capture layer maps
them onto engine errors.
"""

import base64
import errno
import logging
import platform
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from melody.core.paths import Hive, RegistryPath, classify

logger = logging.getLogger("melody.registry")

# winreg type codes, fixed by the Windows API
TYPE_CODES = {
    "REG_NONE": 0,
    "REG_SZ": 1,
    "REG_EXPAND_SZ": 2,
    "REG_BINARY": 3,
    "REG_DWORD": 4,
    "REG_MULTI_SZ": 7,
    "REG_QWORD": 11,
}

# Any other type keeps its numeric code and raw bytes
_NUMBERED_TYPE = re.compile(r"^REG_TYPE_(\d+)$")


def is_value_type(type_name: str) -> bool:
    return type_name in TYPE_CODES or _NUMBERED_TYPE.match(type_name) is not None


def type_code(type_name: str) -> int:
    """The winreg type code for a name, ``REG_TYPE_<n>`` included."""
    if type_name in TYPE_CODES:
        return TYPE_CODES[type_name]
    match = _NUMBERED_TYPE.match(type_name)
    if match is None:
        raise ValueError(f"Unsupported registry value type: {type_name}")
    return int(match.group(1))


@dataclass(frozen=True)
class RegistryValue:
    """A single name/type/data triple"""

    name: str
    type: str
    data: Any

    def __post_init__(self):
        if not is_value_type(self.type):
            raise ValueError(f"Unsupported registry value type: {self.type}")
        if isinstance(self.data, list):
            object.__setattr__(self, "data", tuple(self.data))

    def to_dict(self) -> Dict[str, Any]:
        data = self.data
        if isinstance(data, (bytes, bytearray)):
            data = {"base64": base64.b64encode(bytes(data)).decode("ascii")}
        elif isinstance(data, tuple):
            data = list(data)
        return {"name": self.name, "type": self.type, "data": data}

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> "RegistryValue":
        data = record.get("data")
        if isinstance(data, dict) and "base64" in data:
            data = base64.b64decode(data["base64"])
        return cls(name=record["name"], type=record["type"], data=data)


def value_from_native(name: str, data: Any, code: int) -> RegistryValue:
    """Build a RegistryValue from the (data, type code) pair winreg returns."""
    for type_name, known in TYPE_CODES.items():
        if known == code:
            if type_name == "REG_BINARY" and data is None:
                data = b""
            return RegistryValue(name=name, type=type_name, data=data)
    return RegistryValue(name=name, type=f"REG_TYPE_{code}", data=bytes(data or b""))


class RegistryBackend(ABC):
    """Minimal registry surface needed for capture and restore"""

    @abstractmethod
    def key_exists(self, hive: Hive, subkey: str) -> bool:
        ...

    @abstractmethod
    def read_values(self, hive: Hive, subkey: str) -> List[RegistryValue]:
        """All values directly under a key. FileNotFoundError if absent."""

    @abstractmethod
    def list_subkeys(self, hive: Hive, subkey: str) -> List[str]:
        """Names of direct child keys."""

    @abstractmethod
    def get_value(self, hive: Hive, subkey: str, name: str) -> Optional[RegistryValue]:
        """A single value, or None if the key or value is absent."""

    @abstractmethod
    def create_key(self, hive: Hive, subkey: str) -> None:
        """Create a key and its missing parents. No-op if it exists."""

    @abstractmethod
    def set_value(self, hive: Hive, subkey: str, value: RegistryValue) -> None:
        """Write a value, creating the key when needed."""


# ============================================================================
# Windows registry
# ============================================================================


class WinRegBackend(RegistryBackend):
    """Real registry via the standard winreg module (Windows only)."""

    def __init__(self):
        import winreg

        self._winreg = winreg
        self._roots = {
            Hive.HKLM: winreg.HKEY_LOCAL_MACHINE,
            Hive.HKCU: winreg.HKEY_CURRENT_USER,
            Hive.HKCR: winreg.HKEY_CLASSES_ROOT,
            Hive.HKU: winreg.HKEY_USERS,
            Hive.HKCC: winreg.HKEY_CURRENT_CONFIG,
        }

    def _open(self, hive: Hive, subkey: str):
        return self._winreg.OpenKey(self._roots[hive], subkey, 0, self._winreg.KEY_READ)

    def key_exists(self, hive: Hive, subkey: str) -> bool:
        try:
            with self._open(hive, subkey):
                return True
        except FileNotFoundError:
            return False

    def read_values(self, hive: Hive, subkey: str) -> List[RegistryValue]:
        values = []
        with self._open(hive, subkey) as key:
            _, value_count, _ = self._winreg.QueryInfoKey(key)
            for index in range(value_count):
                name, data, code = self._winreg.EnumValue(key, index)
                values.append(value_from_native(name, data, code))
        return values

    def list_subkeys(self, hive: Hive, subkey: str) -> List[str]:
        with self._open(hive, subkey) as key:
            subkey_count, _, _ = self._winreg.QueryInfoKey(key)
            return [self._winreg.EnumKey(key, index) for index in range(subkey_count)]

    def get_value(self, hive: Hive, subkey: str, name: str) -> Optional[RegistryValue]:
        try:
            with self._open(hive, subkey) as key:
                data, code = self._winreg.QueryValueEx(key, name)
        except FileNotFoundError:
            return None
        return value_from_native(name, data, code)

    def create_key(self, hive: Hive, subkey: str) -> None:
        with self._winreg.CreateKeyEx(self._roots[hive], subkey, 0, self._winreg.KEY_WRITE):
            pass

    def set_value(self, hive: Hive, subkey: str, value: RegistryValue) -> None:
        data = value.data
        if isinstance(data, tuple):
            data = list(data)
        with self._winreg.CreateKeyEx(self._roots[hive], subkey, 0, self._winreg.KEY_SET_VALUE) as key:
            self._winreg.SetValueEx(key, value.name, 0, type_code(value.type), data)


# ============================================================================
# No registry
# ============================================================================


class UnavailableRegistryBackend(RegistryBackend):
    """Stands in for the registry where there is none. Every call fails."""

    @staticmethod
    def _unavailable(hive: Hive, subkey: str) -> OSError:
        return OSError(errno.ENOSYS, "Registry unavailable on this platform", f"{hive.value}:\\{subkey}")

    def key_exists(self, hive: Hive, subkey: str) -> bool:
        raise self._unavailable(hive, subkey)

    def read_values(self, hive: Hive, subkey: str) -> List[RegistryValue]:
        raise self._unavailable(hive, subkey)

    def list_subkeys(self, hive: Hive, subkey: str) -> List[str]:
        raise self._unavailable(hive, subkey)

    def get_value(self, hive: Hive, subkey: str, name: str) -> Optional[RegistryValue]:
        raise self._unavailable(hive, subkey)

    def create_key(self, hive: Hive, subkey: str) -> None:
        raise self._unavailable(hive, subkey)

    def set_value(self, hive: Hive, subkey: str, value: RegistryValue) -> None:
        raise self._unavailable(hive, subkey)


# ============================================================================
# In-memory registry
# ============================================================================


def _key_id(hive: Hive, subkey: str) -> Tuple[Hive, str]:
    return hive, subkey.strip("\\").casefold()


class MemoryRegistryBackend(RegistryBackend):
    """
    Dictionary-backed registry.

    Keys and value names are case-insensitive, like the real registry.

    Usage:
        backend = MemoryRegistryBackend({
            "HKCU:\\Software\\Test": {"Enabled": ("REG_DWORD", 1)},
        })
        backend.deny("HKLM:\\SOFTWARE\\Locked")
    """

    def __init__(self, seed: Optional[Dict[str, Dict[str, Tuple[str, Any]]]] = None):
        # key id -> (display subkey, {folded value name: RegistryValue})
        self._keys: Dict[Tuple[Hive, str], Tuple[str, Dict[str, RegistryValue]]] = {}
        self._denied: Set[Tuple[Hive, str]] = set()
        self.writes = 0

        for raw_key, values in (seed or {}).items():
            path = self._parse(raw_key)
            self._ensure_key(path.hive, path.subkey)
            for name, (type_name, data) in values.items():
                self._store(path.hive, path.subkey, RegistryValue(name, type_name, data))

    @staticmethod
    def _parse(raw_key: str) -> RegistryPath:
        path = classify(raw_key, probe=False)
        if not isinstance(path, RegistryPath):
            raise ValueError(f"Not a registry key: {raw_key}")
        return path

    def deny(self, raw_key: str) -> None:
        """Make a key (and everything below it) inaccessible."""
        path = self._parse(raw_key)
        self._denied.add(_key_id(path.hive, path.subkey))

    def _check_access(self, hive: Hive, subkey: str) -> None:
        key_id = _key_id(hive, subkey)
        for denied_hive, denied in self._denied:
            if denied_hive != hive:
                continue
            if key_id[1] == denied or key_id[1].startswith(denied + "\\"):
                raise PermissionError(13, "Access is denied", f"{hive.value}:\\{subkey}")

    def _ensure_key(self, hive: Hive, subkey: str) -> Dict[str, RegistryValue]:
        parts = [p for p in subkey.strip("\\").split("\\") if p]
        # Parents exist implicitly, like CreateKeyEx
        for depth in range(1, len(parts) + 1):
            partial = "\\".join(parts[:depth])
            self._keys.setdefault(_key_id(hive, partial), (partial, {}))
        return self._keys.setdefault(_key_id(hive, subkey), (subkey.strip("\\"), {}))[1]

    def _store(self, hive: Hive, subkey: str, value: RegistryValue) -> None:
        self._ensure_key(hive, subkey)[value.name.casefold()] = value

    def _lookup(self, hive: Hive, subkey: str) -> Dict[str, RegistryValue]:
        self._check_access(hive, subkey)
        entry = self._keys.get(_key_id(hive, subkey))
        if entry is None:
            raise FileNotFoundError(2, "The system cannot find the file specified", f"{hive.value}:\\{subkey}")
        return entry[1]

    def key_exists(self, hive: Hive, subkey: str) -> bool:
        return _key_id(hive, subkey) in self._keys

    def read_values(self, hive: Hive, subkey: str) -> List[RegistryValue]:
        return list(self._lookup(hive, subkey).values())

    def list_subkeys(self, hive: Hive, subkey: str) -> List[str]:
        self._lookup(hive, subkey)
        parent = _key_id(hive, subkey)[1]
        prefix = parent + "\\" if parent else ""
        children = []
        for (key_hive, folded), (display, _) in self._keys.items():
            if key_hive != hive or not folded.startswith(prefix) or folded == parent:
                continue
            remainder = folded[len(prefix):]
            if remainder and "\\" not in remainder:
                children.append(display.split("\\")[-1])
        return sorted(children)

    def get_value(self, hive: Hive, subkey: str, name: str) -> Optional[RegistryValue]:
        try:
            values = self._lookup(hive, subkey)
        except FileNotFoundError:
            return None
        return values.get(name.casefold())

    def create_key(self, hive: Hive, subkey: str) -> None:
        self._check_access(hive, subkey)
        if not self.key_exists(hive, subkey):
            self._ensure_key(hive, subkey)
            self.writes += 1

    def set_value(self, hive: Hive, subkey: str, value: RegistryValue) -> None:
        self._check_access(hive, subkey)
        self._store(hive, subkey, value)
        self.writes += 1

    def dump(self) -> Dict[str, List[Dict[str, Any]]]:
        """All keys and values, for assertions."""
        return {
            f"{hive.value}:\\{display}": [v.to_dict() for v in values.values()]
            for (hive, _), (display, values) in sorted(self._keys.items(), key=lambda kv: (kv[0][0].value, kv[0][1]))
        }


def default_backend() -> RegistryBackend:
    """The real registry on Windows. Elsewhere every registry call fails."""
    if platform.system() == "Windows":
        return WinRegBackend()
    logger.debug("No Windows registry on this platform")
    return UnavailableRegistryBackend()
