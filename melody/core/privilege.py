# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Privilege resolution.

is_elevated() asks the OS on every call. Callers capture the answer once in a
PrivilegeContext and pass it explicitly to the analyzer, the coordinator and
the engine, which keeps those components testable without touching the real
process token.
"""

import logging
import os
import platform
from dataclasses import dataclass
from typing import Optional

from melody.core.exceptions import PrivilegeCheckError

logger = logging.getLogger("melody.privilege")


def _windows_is_admin() -> bool:
    import ctypes

    try:
        shell32 = ctypes.windll.shell32  # type: ignore[attr-defined]
        return bool(shell32.IsUserAnAdmin())
    except (AttributeError, OSError) as e:
        raise PrivilegeCheckError("Cannot query Windows token membership", cause=e)


def _posix_is_root() -> bool:
    try:
        return os.geteuid() == 0
    except (AttributeError, OSError) as e:
        raise PrivilegeCheckError("Cannot query effective user id", cause=e)


def is_elevated() -> bool:
    """
    Whether the current process holds administrative rights.

    Windows: member of the built-in Administrators role with an elevated token.
    POSIX: effective uid 0.

    Raises:
        PrivilegeCheckError: the security subsystem could not be queried
    """
    if platform.system() == "Windows":
        return _windows_is_admin()
    return _posix_is_root()


@dataclass(frozen=True)
class PrivilegeContext:
    """Privilege state captured at a point in time"""

    elevated: bool
    platform: str = platform.system()

    @classmethod
    def current(cls) -> "PrivilegeContext":
        elevated = is_elevated()
        logger.debug(f"Resolved privilege context: elevated={elevated}")
        return cls(elevated=elevated, platform=platform.system())

    @classmethod
    def unprivileged(cls) -> "PrivilegeContext":
        return cls(elevated=False)

    @classmethod
    def administrator(cls) -> "PrivilegeContext":
        return cls(elevated=True)

    @property
    def is_windows(self) -> bool:
        return self.platform == "Windows"


def resolve_context(context: Optional[PrivilegeContext] = None) -> PrivilegeContext:
    """Return the given context or query the current one."""
    return context if context is not None else PrivilegeContext.current()
