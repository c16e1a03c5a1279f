# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Capture/restore strategies, one per ConfigPath kind."""

from typing import Optional

from melody.core.capture.base import StateCapture, os_errors
from melody.core.capture.files import DEFAULT_EXCLUDE_PATTERNS, ExclusionFilter, FileCapture
from melody.core.capture.registry import RegistryCapture
from melody.core.paths import ConfigPath, RegistryPath
from melody.core.registry_backend import RegistryBackend


def get_capture(path: ConfigPath, registry: Optional[RegistryBackend] = None) -> StateCapture:
    """Pick the strategy for a path."""
    if isinstance(path, RegistryPath):
        return RegistryCapture(registry)
    return FileCapture()


__all__ = [
    "DEFAULT_EXCLUDE_PATTERNS",
    "ExclusionFilter",
    "FileCapture",
    "RegistryCapture",
    "StateCapture",
    "get_capture",
    "os_errors",
]
