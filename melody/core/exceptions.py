# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Melody Exception Hierarchy

Every expected failure of the capture/restore engine is a typed error that
carries the offending configuration path, so callers can turn it into an
OperationOutcome or an actionable message.

Exception Hierarchy:
    MelodyError (base)
    ├── ConfigError
    ├── TemplateError
    ├── InvalidPathError
    ├── CaptureError
    │   ├── PathNotFoundError
    │   ├── AccessDeniedError
    │   └── IOFailureError
    ├── RestoreError
    │   ├── CorruptSnapshotError
    │   └── DecryptError
    ├── SecretRequiredError
    ├── PrivilegeError
    │   ├── PrivilegeRequiredError
    │   ├── ElevationRequiredError
    │   └── ElevationFailedError
    └── PrivilegeCheckError (fatal)
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Failure taxonomy carried by errors and outcomes"""

    INVALID_PATH = "InvalidPath"
    PATH_NOT_FOUND = "PathNotFound"
    ACCESS_DENIED = "AccessDenied"
    IO_FAILURE = "IOFailure"
    CORRUPT_SNAPSHOT = "CorruptSnapshot"
    DECRYPT_ERROR = "DecryptError"
    PRIVILEGE_REQUIRED = "PrivilegeRequired"
    ELEVATION_REQUIRED = "ElevationRequired"
    ELEVATION_FAILED = "ElevationFailed"
    SECRET_REQUIRED = "SecretRequired"
    INVALID_TEMPLATE = "InvalidTemplate"


# ============================================================================
# Base Exception
# ============================================================================


class MelodyError(Exception):
    """Base exception for all engine errors"""

    kind: Optional[ErrorKind] = None

    def __init__(
        self,
        message: str,
        path: Any = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.path = path
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        result = {
            "type": self.__class__.__name__,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "path": str(self.path) if self.path is not None else None,
            "details": self.details,
        }

        if self.cause:
            result["cause"] = {
                "type": self.cause.__class__.__name__,
                "message": str(self.cause),
            }

        return result

    def __str__(self):
        base = self.message
        if self.path is not None:
            base += f" [{self.path}]"
        if self.cause:
            base += f" | Caused by: {self.cause}"
        return base


# ============================================================================
# Configuration / Template Errors
# ============================================================================


class ConfigError(MelodyError):
    """Configuration could not be loaded or validated"""


class TemplateError(MelodyError):
    """Template document is malformed"""

    kind = ErrorKind.INVALID_TEMPLATE

    def __init__(self, message: str, item: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.item = item

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["item"] = self.item
        return result


class InvalidPathError(MelodyError):
    """Raw path string is empty, relative or uses an unknown hive"""

    kind = ErrorKind.INVALID_PATH


# ============================================================================
# Capture Errors
# ============================================================================


class CaptureError(MelodyError):
    """Reading a configuration item failed"""


class PathNotFoundError(CaptureError):
    """Source path is absent"""

    kind = ErrorKind.PATH_NOT_FOUND


class AccessDeniedError(CaptureError):
    """Insufficient privilege to read or write the path"""

    kind = ErrorKind.ACCESS_DENIED


class IOFailureError(CaptureError):
    """Disk or device fault"""

    kind = ErrorKind.IO_FAILURE


# ============================================================================
# Restore Errors
# ============================================================================


class RestoreError(MelodyError):
    """Applying a snapshot failed"""


class CorruptSnapshotError(RestoreError):
    """Snapshot payload does not match its stored hash or cannot be parsed"""

    kind = ErrorKind.CORRUPT_SNAPSHOT


class DecryptReason(str, Enum):
    WRONG_SECRET = "wrong_secret"
    MISSING_SECRET = "missing_secret"
    MALFORMED_METADATA = "malformed_metadata"
    STILL_ENCRYPTED = "still_encrypted"


class DecryptError(RestoreError):
    """Encrypted snapshot could not be opened"""

    kind = ErrorKind.DECRYPT_ERROR

    def __init__(self, message: str, reason: DecryptReason = DecryptReason.WRONG_SECRET, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = DecryptReason(reason)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["reason"] = self.reason.value
        return result


class SecretRequiredError(MelodyError):
    """Item must be encrypted but no key material was supplied"""

    kind = ErrorKind.SECRET_REQUIRED


# ============================================================================
# Privilege Errors
# ============================================================================


class PrivilegeError(MelodyError):
    """Privilege-related refusals"""


class PrivilegeRequiredError(PrivilegeError):
    """Operation needs admin rights and no fallback exists"""

    kind = ErrorKind.PRIVILEGE_REQUIRED


class ElevationRequiredError(PrivilegeError):
    """Elevation needed but prompting is disabled"""

    kind = ErrorKind.ELEVATION_REQUIRED


class ElevationFailedError(PrivilegeError):
    """Elevated child process failed or returned no usable result"""

    kind = ErrorKind.ELEVATION_FAILED


class PrivilegeCheckError(MelodyError):
    """The OS security subsystem could not be queried.

    Not an expected failure mode: privilege decisions cannot be made safely,
    so this always propagates to the caller.
    """


# ============================================================================
# Rebuilding errors from serialized form
# ============================================================================

_ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (
        InvalidPathError,
        PathNotFoundError,
        AccessDeniedError,
        IOFailureError,
        CorruptSnapshotError,
        DecryptError,
        SecretRequiredError,
        PrivilegeRequiredError,
        ElevationRequiredError,
        ElevationFailedError,
        TemplateError,
    )
}


def error_from_dict(data: Dict[str, Any]) -> MelodyError:
    """Rebuild an error produced by MelodyError.to_dict()."""
    message = data.get("message") or "unknown error"
    path = data.get("path")
    details = data.get("details") or {}

    try:
        kind = ErrorKind(data.get("kind"))
    except ValueError:
        return ElevationFailedError(message, path=path, details=details)

    cls = _ERRORS_BY_KIND.get(kind, ElevationFailedError)
    if cls is DecryptError:
        return DecryptError(message, reason=data.get("reason", DecryptReason.WRONG_SECRET), path=path, details=details)
    if cls is TemplateError:
        return TemplateError(message, item=data.get("item"), path=path, details=details)
    return cls(message, path=path, details=details)
