# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Configuration path classification.

A raw template path is either a registry key (``HKCU:\\Software\\Test``) or an
absolute filesystem path, possibly written with the environment references
used by backup templates (``$env:APPDATA``, ``%SystemRoot%``, ``~``).

classify() turns it into an immutable ConfigPath value:

    RegistryPath(hive, subkey, value_name)
    FilePath(path)
    DirectoryPath(path)
"""

import hashlib
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Dict, Mapping, Optional, Union

from melody.core.exceptions import InvalidPathError


class Hive(str, Enum):
    """Top-level registry namespaces"""

    HKLM = "HKLM"
    HKCU = "HKCU"
    HKCR = "HKCR"
    HKU = "HKU"
    HKCC = "HKCC"

    @property
    def long_name(self) -> str:
        return _LONG_NAMES[self]

    @property
    def machine_wide(self) -> bool:
        # HKU holds every user's hive; writing there is an admin operation
        return self is not Hive.HKCU


_LONG_NAMES = {
    Hive.HKLM: "HKEY_LOCAL_MACHINE",
    Hive.HKCU: "HKEY_CURRENT_USER",
    Hive.HKCR: "HKEY_CLASSES_ROOT",
    Hive.HKU: "HKEY_USERS",
    Hive.HKCC: "HKEY_CURRENT_CONFIG",
}

_HIVE_ALIASES: Dict[str, Hive] = {}
for _hive, _long in _LONG_NAMES.items():
    _HIVE_ALIASES[_hive.value] = _hive
    _HIVE_ALIASES[_long] = _hive

# "HKLM:\..." / "HKEY_LOCAL_MACHINE\..." / "Registry::HKEY_LOCAL_MACHINE\..."
_REGISTRY_RE = re.compile(
    r"^(?:Registry::)?(?P<hive>HK[A-Z_]*)(?::\\?|\\|:?$)(?P<rest>.*)$", re.IGNORECASE
)

_ENV_PATTERNS = (
    re.compile(r"\$env:(?P<name>[A-Za-z_][A-Za-z0-9_()]*)", re.IGNORECASE),
    re.compile(r"%(?P<name>[A-Za-z_][A-Za-z0-9_()]*)%"),
    re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)\}"),
)


# ============================================================================
# ConfigPath variants
# ============================================================================


@dataclass(frozen=True)
class RegistryPath:
    hive: Hive
    subkey: str
    value_name: Optional[str] = None

    kind = "registry"

    @property
    def key(self) -> str:
        """Key path without the hive, backslash separated."""
        return self.subkey

    def with_value(self, value_name: Optional[str]) -> "RegistryPath":
        return RegistryPath(self.hive, self.subkey, value_name)

    def __str__(self) -> str:
        text = f"{self.hive.value}:\\{self.subkey}" if self.subkey else f"{self.hive.value}:\\"
        if self.value_name is not None:
            text += f"::{self.value_name}"
        return text


def _native(path: str) -> Path:
    """The path as a local filesystem Path. Paths rooted for another OS are refused."""
    native = Path(path)
    if not native.is_absolute():
        raise InvalidPathError("Path is not absolute on this platform", path=path)
    return native


@dataclass(frozen=True)
class FilePath:
    path: str

    kind = "file"

    @property
    def fs_path(self) -> Path:
        return _native(self.path)

    def __str__(self) -> str:
        return self.path


@dataclass(frozen=True)
class DirectoryPath:
    path: str

    kind = "directory"

    @property
    def fs_path(self) -> Path:
        return _native(self.path)

    def __str__(self) -> str:
        return self.path


ConfigPath = Union[RegistryPath, FilePath, DirectoryPath]


# ============================================================================
# Classification
# ============================================================================


def expand_variables(raw: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Expand $env:NAME, %NAME%, ${NAME} and a leading ~.

    Raises InvalidPathError when a referenced variable is not set.
    """
    env = os.environ if environ is None else environ
    lookup = {k.upper(): v for k, v in env.items()}

    def _replace(match: "re.Match[str]") -> str:
        name = match.group("name")
        if name in env:
            return env[name]
        if name.upper() in lookup:
            return lookup[name.upper()]
        raise InvalidPathError(f"Unresolved environment variable '{name}'", path=raw)

    expanded = raw
    for pattern in _ENV_PATTERNS:
        expanded = pattern.sub(_replace, expanded)

    if expanded == "~" or expanded.startswith(("~/", "~\\")):
        home = env.get("HOME") or env.get("USERPROFILE") or str(Path.home())
        expanded = home + expanded[1:]

    return expanded


def is_absolute(path: str) -> bool:
    """Absolute in POSIX terms, or drive-rooted / UNC in Windows terms."""
    if PurePosixPath(path).is_absolute() and not path.startswith("//"):
        return True
    return PureWindowsPath(path).is_absolute()


def _parse_registry(raw: str) -> Optional[RegistryPath]:
    match = _REGISTRY_RE.match(raw)
    if not match:
        return None

    alias = match.group("hive").upper()
    hive = _HIVE_ALIASES.get(alias)
    if hive is None:
        raise InvalidPathError(f"Unrecognized registry hive '{match.group('hive')}'", path=raw)

    rest = match.group("rest").replace("/", "\\").strip("\\")
    subkey = re.sub(r"\\{2,}", r"\\", rest)
    return RegistryPath(hive=hive, subkey=subkey)


def classify(
    raw: str,
    probe: bool = True,
    kind: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ConfigPath:
    """
    Classify a raw configuration path.

    Args:
        raw: Path as written in a template
        probe: Look at the filesystem to tell files from directories
        kind: "file" or "directory" hint from the template; overrides the probe
        environ: Environment used for variable expansion (defaults to os.environ)

    Returns:
        RegistryPath, FilePath or DirectoryPath

    Raises:
        InvalidPathError: empty, relative, unresolved variable or unknown hive
    """
    if raw is None or not str(raw).strip():
        raise InvalidPathError("Path is empty", path=raw)

    text = str(raw).strip()

    registry = _parse_registry(text)
    if registry is not None:
        return registry

    expanded = expand_variables(text, environ)
    if not is_absolute(expanded):
        raise InvalidPathError("Path must be absolute", path=raw)

    normalized = _normalize_fs(expanded)

    if kind == "directory":
        return DirectoryPath(normalized)
    if kind == "file":
        return FilePath(normalized)
    if kind is not None:
        raise InvalidPathError(f"Unknown path kind '{kind}'", path=raw)

    # Advisory only; the path may change before it is used
    if probe and os.path.isdir(normalized):
        return DirectoryPath(normalized)
    return FilePath(normalized)


def _normalize_fs(path: str) -> str:
    if PureWindowsPath(path).drive and not PurePosixPath(path).is_absolute():
        return str(PureWindowsPath(path))
    return os.path.normpath(path)


# ============================================================================
# Canonical forms and state-file naming
# ============================================================================


def canonical(path: ConfigPath) -> str:
    """Stable textual form of a ConfigPath."""
    return str(path)


def _identity_key(path: ConfigPath) -> str:
    if isinstance(path, RegistryPath):
        # Registry keys and value names are case-insensitive
        return f"registry|{canonical(path).casefold()}"
    text = canonical(path)
    if PureWindowsPath(text).drive:
        text = text.casefold()
    return f"{path.kind}|{text}"


def state_file_name(path: ConfigPath) -> str:
    """Deterministic, collision-free file name for a path's snapshot."""
    identity = _identity_key(path)
    digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()[:32]
    slug = re.sub(r"[^A-Za-z0-9]+", "_", canonical(path)).strip("_")[-48:] or "root"
    return f"{path.kind}-{slug}-{digest}.json"


def path_to_dict(path: ConfigPath) -> Dict[str, Any]:
    if isinstance(path, RegistryPath):
        return {
            "kind": "registry",
            "hive": path.hive.value,
            "subkey": path.subkey,
            "value_name": path.value_name,
        }
    return {"kind": path.kind, "path": path.path}


def path_from_dict(data: Dict[str, Any]) -> ConfigPath:
    kind = data.get("kind")
    if kind == "registry":
        try:
            hive = Hive(data["hive"])
        except (KeyError, ValueError) as e:
            raise InvalidPathError(f"Bad registry path record: {data}", cause=e)
        return RegistryPath(hive, data.get("subkey", ""), data.get("value_name"))
    if kind == "file":
        return FilePath(data["path"])
    if kind == "directory":
        return DirectoryPath(data["path"])
    raise InvalidPathError(f"Unknown path kind '{kind}'")
