# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Engine value types: snapshots, outcomes and privilege requirements.

All of them are immutable and safe to hand across threads.
"""

import base64
import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from melody.core.exceptions import CorruptSnapshotError, ErrorKind, InvalidPathError, MelodyError
from melody.core.paths import ConfigPath, canonical, path_from_dict, path_to_dict

HASH_ALGORITHM = "sha256"
SNAPSHOT_FORMAT = 1


def compute_hash(payload: bytes) -> str:
    """Content hash in '<algorithm>:<hexdigest>' form."""
    return f"{HASH_ALGORITHM}:{hashlib.sha256(payload).hexdigest()}"


# =============================================================================
# Snapshots
# =============================================================================


@dataclass(frozen=True)
class EncryptionMeta:
    """Parameters needed to decrypt a wrapped payload"""

    algorithm: str
    kdf: str
    kdf_params: Dict[str, Any]
    salt: bytes
    nonce: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "kdf": self.kdf,
            "kdf_params": dict(self.kdf_params),
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptionMeta":
        return cls(
            algorithm=data["algorithm"],
            kdf=data["kdf"],
            kdf_params=dict(data.get("kdf_params") or {}),
            salt=base64.b64decode(data["salt"]),
            nonce=base64.b64decode(data["nonce"]),
        )


@dataclass(frozen=True)
class StateSnapshot:
    """
    Serialized capture of one configuration item.

    payload is registry JSON, raw file bytes or a tar archive; when encrypted
    it is ciphertext and ``encryption`` says how to open it.
    """

    source_path: ConfigPath
    payload: bytes
    payload_hash: str
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    encrypted: bool = False
    encryption: Optional[EncryptionMeta] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.encrypted and self.encryption is None:
            raise ValueError("Encrypted snapshot requires encryption metadata")

    @classmethod
    def create(
        cls,
        source_path: ConfigPath,
        payload: bytes,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "StateSnapshot":
        """Build a clear snapshot, hashing the payload."""
        return cls(
            source_path=source_path,
            payload=payload,
            payload_hash=compute_hash(payload),
            metadata=dict(metadata or {}),
        )

    def verify(self) -> bool:
        return compute_hash(self.payload) == self.payload_hash

    def evolve(self, **changes) -> "StateSnapshot":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": SNAPSHOT_FORMAT,
            "source_path": path_to_dict(self.source_path),
            "source": canonical(self.source_path),
            "captured_at": self.captured_at.isoformat(),
            "payload_hash": self.payload_hash,
            "encrypted": self.encrypted,
            "encryption": self.encryption.to_dict() if self.encryption else None,
            "metadata": self.metadata,
            "payload": base64.b64encode(self.payload).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateSnapshot":
        """Rebuild a snapshot record; malformed records are CorruptSnapshotError."""
        try:
            source_path = path_from_dict(data["source_path"])
            captured_at = datetime.fromisoformat(data["captured_at"])
            if captured_at.tzinfo is None:
                captured_at = captured_at.replace(tzinfo=timezone.utc)
            encryption = data.get("encryption")
            return cls(
                source_path=source_path,
                payload=base64.b64decode(data["payload"], validate=True),
                payload_hash=data["payload_hash"],
                captured_at=captured_at,
                encrypted=bool(data.get("encrypted", False)),
                encryption=EncryptionMeta.from_dict(encryption) if encryption else None,
                metadata=dict(data.get("metadata") or {}),
            )
        except (KeyError, TypeError, ValueError, InvalidPathError) as e:
            raise CorruptSnapshotError(f"Malformed snapshot record: {e}", cause=e)


# =============================================================================
# Outcomes
# =============================================================================


@dataclass(frozen=True)
class OperationOutcome:
    """Result of a capture, restore or elevation call"""

    success: bool
    skipped: bool = False
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    path: Optional[ConfigPath] = None
    value: Any = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str = "", path: Optional[ConfigPath] = None, value: Any = None, **details) -> "OperationOutcome":
        return cls(success=True, message=message, path=path, value=value, details=details)

    @classmethod
    def skip(
        cls,
        message: str,
        path: Optional[ConfigPath] = None,
        error_kind: Optional[ErrorKind] = None,
        **details,
    ) -> "OperationOutcome":
        return cls(success=True, skipped=True, error_kind=error_kind, message=message, path=path, details=details)

    @classmethod
    def failure(
        cls,
        error_kind: ErrorKind,
        message: str,
        path: Optional[ConfigPath] = None,
        **details,
    ) -> "OperationOutcome":
        return cls(success=False, error_kind=error_kind, message=message, path=path, details=details)

    @classmethod
    def from_error(cls, error: MelodyError, path: Optional[ConfigPath] = None, **details) -> "OperationOutcome":
        merged = dict(error.details)
        merged.update(details)
        return cls(
            success=False,
            error_kind=error.kind,
            message=error.message,
            path=path if path is not None else error.path,
            details=merged,
        )

    def with_details(self, **details) -> "OperationOutcome":
        merged = dict(self.details)
        merged.update(details)
        return replace(self, details=merged)

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if not isinstance(value, (type(None), bool, int, float, str, list, dict)):
            value = repr(value)
        return {
            "success": self.success,
            "skipped": self.skipped,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "path": str(self.path) if self.path is not None else None,
            "value": value,
            "details": self.details,
        }


# =============================================================================
# Privilege requirements
# =============================================================================


@dataclass(frozen=True)
class RequirementReason:
    target: str
    tag: str
    item: str = ""
    path: Optional[ConfigPath] = None


@dataclass(frozen=True)
class PrivilegeRequirement:
    requires_admin: bool = False
    requires_elevation: bool = False
    reasons: Tuple[RequirementReason, ...] = ()

    @classmethod
    def unprivileged(cls) -> "PrivilegeRequirement":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requires_admin": self.requires_admin,
            "requires_elevation": self.requires_elevation,
            "reasons": [
                {"target": r.target, "tag": r.tag, "item": r.item} for r in self.reasons
            ],
        }
