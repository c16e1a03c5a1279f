# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Melody Core - Init file

Exports the capture/restore engine and its building blocks.
"""

from .analyzer import analyze
from .config import MelodyConfig, get_config, load_config
from .elevation import (
    DirectLauncher,
    ElevatedTask,
    ElevationCoordinator,
    OperationType,
    default_launcher,
)
from .encryption import MachineKey, unwrap, wrap
from .engine import StateEngine, TemplateRunReport
from .exceptions import ErrorKind, MelodyError
from .models import OperationOutcome, PrivilegeRequirement, StateSnapshot
from .paths import DirectoryPath, FilePath, Hive, RegistryPath, classify
from .privilege import PrivilegeContext, is_elevated
from .store import StateStore
from .template import Template, load_template, parse_template

__all__ = [
    "DirectLauncher",
    "DirectoryPath",
    "ElevatedTask",
    "ElevationCoordinator",
    "ErrorKind",
    "FilePath",
    "Hive",
    "MachineKey",
    "MelodyConfig",
    "MelodyError",
    "OperationOutcome",
    "OperationType",
    "PrivilegeContext",
    "PrivilegeRequirement",
    "RegistryPath",
    "StateEngine",
    "StateSnapshot",
    "StateStore",
    "Template",
    "TemplateRunReport",
    "analyze",
    "classify",
    "default_launcher",
    "get_config",
    "is_elevated",
    "load_config",
    "load_template",
    "parse_template",
    "unwrap",
    "wrap",
]
