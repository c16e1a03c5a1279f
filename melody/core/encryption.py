# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Snapshot encryption.

wrap() seals a snapshot payload with AES-256-GCM. The key is derived from the
caller's secret with PBKDF2-HMAC-SHA256 using a fresh salt and nonce for every
snapshot; both are stored in the snapshot's encryption metadata. The source
path and the plaintext hash are bound as associated data, so a ciphertext
cannot be moved to another item.

unwrap() never returns unauthenticated data: a wrong secret or any tampering
fails the GCM tag check and raises DecryptError.

Secrets can be user supplied or machine-bound (MachineKey): 32 random bytes
kept in a key file readable only by its owner.
"""

import base64
import logging
import os
from pathlib import Path
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from melody.core.exceptions import (
    CorruptSnapshotError,
    DecryptError,
    DecryptReason,
    IOFailureError,
    SecretRequiredError,
)
from melody.core.models import EncryptionMeta, StateSnapshot, compute_hash
from melody.core.paths import canonical

logger = logging.getLogger("melody.encryption")

ALGORITHM = "AES-256-GCM"
KDF = "PBKDF2-HMAC-SHA256"
DEFAULT_ITERATIONS = 600_000
KEY_LENGTH = 32
SALT_LENGTH = 16
NONCE_LENGTH = 12

Secret = Union[str, bytes]


def _secret_bytes(secret: Secret) -> bytes:
    return secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)


def derive_key(secret: Secret, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """Derive an AES key from a secret using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(_secret_bytes(secret))


def _associated_data(snapshot: StateSnapshot, plaintext_hash: str) -> bytes:
    return f"{canonical(snapshot.source_path)}|{plaintext_hash}".encode("utf-8")


def wrap(snapshot: StateSnapshot, secret: Optional[Secret] = None, iterations: Optional[int] = None) -> StateSnapshot:
    """
    Encrypt a snapshot payload.

    Args:
        snapshot: Clear snapshot
        secret: Password or key material; None stores the snapshot in clear
        iterations: PBKDF2 iteration count (defaults to DEFAULT_ITERATIONS)

    Returns:
        Encrypted snapshot (or the input unchanged when no secret is given)
    """
    if secret is None:
        return snapshot
    if snapshot.encrypted:
        raise ValueError("Snapshot is already encrypted")

    iterations = iterations or DEFAULT_ITERATIONS
    salt = os.urandom(SALT_LENGTH)
    nonce = os.urandom(NONCE_LENGTH)
    key = derive_key(secret, salt, iterations)

    plaintext_hash = snapshot.payload_hash
    ciphertext = AESGCM(key).encrypt(nonce, snapshot.payload, _associated_data(snapshot, plaintext_hash))

    metadata = dict(snapshot.metadata)
    metadata["plaintext_hash"] = plaintext_hash

    logger.debug(f"Encrypted snapshot of {snapshot.source_path}")
    return snapshot.evolve(
        payload=ciphertext,
        payload_hash=compute_hash(ciphertext),
        encrypted=True,
        encryption=EncryptionMeta(
            algorithm=ALGORITHM,
            kdf=KDF,
            kdf_params={"iterations": iterations, "length": KEY_LENGTH},
            salt=salt,
            nonce=nonce,
        ),
        metadata=metadata,
    )


def unwrap(snapshot: StateSnapshot, secret: Optional[Secret] = None) -> StateSnapshot:
    """
    Decrypt a snapshot payload.

    Clear snapshots are returned unchanged.

    Raises:
        CorruptSnapshotError: ciphertext does not match its stored hash
        DecryptError: missing secret, unsupported metadata or authentication failure
    """
    if not snapshot.encrypted:
        return snapshot

    path = snapshot.source_path
    if secret is None:
        raise DecryptError("Snapshot is encrypted and no secret was supplied", reason=DecryptReason.MISSING_SECRET, path=path)

    if not snapshot.verify():
        raise CorruptSnapshotError("Encrypted payload does not match its hash", path=path)

    meta = snapshot.encryption
    plaintext_hash = snapshot.metadata.get("plaintext_hash")
    try:
        iterations = int(meta.kdf_params.get("iterations", 0))
        if meta.algorithm != ALGORITHM or meta.kdf != KDF or iterations <= 0:
            raise ValueError(f"unsupported scheme {meta.algorithm}/{meta.kdf}")
        if len(meta.nonce) != NONCE_LENGTH or not meta.salt or not plaintext_hash:
            raise ValueError("incomplete parameters")
    except (AttributeError, TypeError, ValueError) as e:
        raise DecryptError(
            f"Encryption metadata is unusable: {e}", reason=DecryptReason.MALFORMED_METADATA, path=path, cause=e
        )

    key = derive_key(secret, meta.salt, iterations)
    try:
        payload = AESGCM(key).decrypt(meta.nonce, snapshot.payload, _associated_data(snapshot, plaintext_hash))
    except InvalidTag as e:
        raise DecryptError("Wrong secret or tampered snapshot", reason=DecryptReason.WRONG_SECRET, path=path, cause=e)

    if compute_hash(payload) != plaintext_hash:
        raise CorruptSnapshotError("Decrypted payload does not match its hash", path=path)

    metadata = {k: v for k, v in snapshot.metadata.items() if k != "plaintext_hash"}
    return snapshot.evolve(
        payload=payload,
        payload_hash=plaintext_hash,
        encrypted=False,
        encryption=None,
        metadata=metadata,
    )


class MachineKey:
    """Key material bound to this machine/user profile."""

    def __init__(self, key_file: Union[str, Path]):
        self.key_file = Path(key_file)

    def exists(self) -> bool:
        return self.key_file.exists()

    def load_or_create(self) -> bytes:
        """
        Read the key file, creating it on first use.

        Raises:
            SecretRequiredError: the key file does not hold a valid key
            IOFailureError: the key file cannot be read or written
        """
        try:
            if self.key_file.exists():
                return self._load()
            return self._create()
        except OSError as e:
            raise IOFailureError(
                f"Machine key file is not accessible: {e.strerror or e}", path=str(self.key_file), cause=e
            )

    def _load(self) -> bytes:
        try:
            key = base64.b64decode(self.key_file.read_bytes().strip(), validate=True)
        except ValueError as e:
            raise SecretRequiredError("Machine key file is corrupt", path=str(self.key_file), cause=e)
        if len(key) != KEY_LENGTH:
            raise SecretRequiredError(
                f"Machine key file holds {len(key)} bytes, expected {KEY_LENGTH}", path=str(self.key_file)
            )
        return key

    def _create(self) -> bytes:
        key = os.urandom(KEY_LENGTH)
        self.key_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.key_file), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(base64.b64encode(key))

        # Windows ignores POSIX modes
        try:
            os.chmod(self.key_file, 0o600)
        except OSError as e:
            logger.debug(f"Could not restrict key file permissions: {e}")

        logger.info(f"Created machine key at {self.key_file}")
        return key
