# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Shared contract and error mapping for capture strategies."""

import errno
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator

from melody.core.exceptions import (
    AccessDeniedError,
    CorruptSnapshotError,
    DecryptError,
    DecryptReason,
    IOFailureError,
    MelodyError,
    PathNotFoundError,
)
from melody.core.models import OperationOutcome, StateSnapshot
from melody.core.paths import ConfigPath


class StateCapture(ABC):
    """
    Capture/restore strategy for one kind of configuration path.

    capture() raises PathNotFoundError, AccessDeniedError or IOFailureError.
    restore() raises CorruptSnapshotError or DecryptError before touching the
    target, and the capture errors if writing fails.
    """

    @abstractmethod
    def capture(self, path: ConfigPath, **options) -> StateSnapshot:
        ...

    @abstractmethod
    def restore(self, snapshot: StateSnapshot, **options) -> OperationOutcome:
        ...

    @staticmethod
    def check_restorable(snapshot: StateSnapshot) -> None:
        """Refuse ciphertext and payloads that fail their hash."""
        if snapshot.encrypted:
            raise DecryptError(
                "Snapshot is still encrypted; unwrap it before restoring",
                reason=DecryptReason.STILL_ENCRYPTED,
                path=snapshot.source_path,
            )
        if not snapshot.verify():
            raise CorruptSnapshotError(
                "Snapshot payload does not match its hash",
                path=snapshot.source_path,
                details={"expected": snapshot.payload_hash},
            )


@contextmanager
def os_errors(path: ConfigPath, action: str) -> Iterator[None]:
    """Translate OS exceptions raised inside the block into engine errors."""
    try:
        yield
    except MelodyError:
        raise
    except FileNotFoundError as e:
        raise PathNotFoundError(f"{action}: path does not exist", path=path, cause=e)
    except PermissionError as e:
        raise AccessDeniedError(f"{action}: access denied", path=path, cause=e)
    except OSError as e:
        if e.errno in (errno.EACCES, errno.EPERM):
            raise AccessDeniedError(f"{action}: access denied", path=path, cause=e)
        if e.errno == errno.ENOENT:
            raise PathNotFoundError(f"{action}: path does not exist", path=path, cause=e)
        raise IOFailureError(f"{action}: {e.strerror or e}", path=path, cause=e)
