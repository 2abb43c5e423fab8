"""
Client-side encryption for AgentMesh memories.

- Key derivation: SHA-256 of the passphrase (default), PBKDF2-HMAC-SHA256 or
  scrypt when a salted policy is configured (stdlib hashlib)
- Encryption: AES-256-GCM (``cryptography`` package)
- Packing: iv(12) + auth_tag(16) + ciphertext — the persisted blob format

Keys never leave the process. The packed blob is the only representation
handed to a content store.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from agentmesh import (
    MESH_HEADER_SIZE,
    MESH_IV_SIZE,
    MESH_KEY_SIZE,
    MESH_PBKDF2_ITERATIONS,
    MESH_SCRYPT_N,
    MESH_SCRYPT_P,
    MESH_SCRYPT_R,
    MESH_TAG_SIZE,
)
from agentmesh.errors import ConfigurationError, FormatError, IntegrityError

KDF_ALGORITHMS = frozenset({"sha256", "pbkdf2", "scrypt"})


@dataclass(frozen=True)
class KdfParams:
    """Key derivation policy.

    ``sha256`` is a single unsalted hash round, kept as the default so that
    content written by earlier clients stays readable. ``pbkdf2`` and
    ``scrypt`` need a salt; the salt is configuration, not secret.
    """

    algorithm: str = "sha256"
    salt: bytes = b""
    iterations: int = MESH_PBKDF2_ITERATIONS
    n: int = MESH_SCRYPT_N
    r: int = MESH_SCRYPT_R
    p: int = MESH_SCRYPT_P

    def __post_init__(self) -> None:
        if self.algorithm not in KDF_ALGORITHMS:
            raise ConfigurationError(
                f"Unknown KDF algorithm {self.algorithm!r} "
                f"(expected one of: {', '.join(sorted(KDF_ALGORITHMS))})"
            )
        if self.algorithm != "sha256" and not self.salt:
            raise ConfigurationError(f"KDF {self.algorithm!r} requires a salt")
        if self.algorithm == "pbkdf2" and self.iterations < 1:
            raise ConfigurationError(f"pbkdf2 iterations must be positive, got {self.iterations}")
        if self.algorithm == "scrypt":
            if self.n < 2 or self.n & (self.n - 1):
                raise ConfigurationError(f"scrypt n must be a power of two above 1, got {self.n}")
            if self.r < 1 or self.p < 1:
                raise ConfigurationError(f"scrypt r and p must be positive, got r={self.r} p={self.p}")


@dataclass(frozen=True)
class EncryptedPayload:
    """Container for an AES-256-GCM encrypted payload.

    Attributes:
        ciphertext: The encrypted data, same length as the plaintext.
        iv: The 12-byte nonce used for encryption.
        auth_tag: The 16-byte GCM authentication tag.
    """

    ciphertext: bytes
    iv: bytes
    auth_tag: bytes

    def to_bytes(self) -> bytes:
        """Serialize to bytes: iv(12) + auth_tag(16) + ciphertext."""
        if len(self.iv) != MESH_IV_SIZE:
            raise FormatError(f"IV must be {MESH_IV_SIZE} bytes, got {len(self.iv)}")
        if len(self.auth_tag) != MESH_TAG_SIZE:
            raise FormatError(
                f"Auth tag must be {MESH_TAG_SIZE} bytes, got {len(self.auth_tag)}"
            )
        return self.iv + self.auth_tag + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> EncryptedPayload:
        """Deserialize from bytes. Raises FormatError if shorter than 28 bytes."""
        if len(data) < MESH_HEADER_SIZE:
            raise FormatError(
                f"Packed blob too short: {len(data)} bytes (minimum {MESH_HEADER_SIZE})"
            )
        data = bytes(data)
        return cls(
            iv=data[:MESH_IV_SIZE],
            auth_tag=data[MESH_IV_SIZE:MESH_HEADER_SIZE],
            ciphertext=data[MESH_HEADER_SIZE:],
        )


def derive_key(
    passphrase: str | bytes | bytearray,
    params: KdfParams | None = None,
) -> bytes:
    """Turn a passphrase into a 32-byte AES-256 key.

    Deterministic: the same passphrase and params always yield the same key.
    A raw 32-byte ``bytes``/``bytearray`` is returned unchanged (no derivation).

    Raises:
        ConfigurationError: raw key of the wrong length, or empty passphrase.
    """
    if isinstance(passphrase, (bytes, bytearray)):
        if len(passphrase) != MESH_KEY_SIZE:
            raise ConfigurationError(
                f"Raw key must be {MESH_KEY_SIZE} bytes, got {len(passphrase)}"
            )
        return bytes(passphrase)

    if not isinstance(passphrase, str) or not passphrase:
        raise ConfigurationError("Passphrase must be a non-empty string")

    params = params or KdfParams()
    secret = passphrase.encode("utf-8")

    if params.algorithm == "pbkdf2":
        return hashlib.pbkdf2_hmac(
            "sha256", secret, params.salt, params.iterations, dklen=MESH_KEY_SIZE,
        )
    if params.algorithm == "scrypt":
        try:
            return hashlib.scrypt(
                secret,
                salt=params.salt,
                n=params.n,
                r=params.r,
                p=params.p,
                maxmem=128 * params.r * params.n * params.p + 1024 * 1024,
                dklen=MESH_KEY_SIZE,
            )
        except (ValueError, MemoryError) as e:
            raise ConfigurationError(f"scrypt parameters rejected: {e}") from e
    return hashlib.sha256(secret).digest()


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != MESH_KEY_SIZE:
        raise ConfigurationError(f"Key must be {MESH_KEY_SIZE} bytes")


def encrypt(plaintext: bytes | str, key: bytes) -> EncryptedPayload:
    """Encrypt data with a raw 32-byte key using AES-256-GCM.

    A fresh random 12-byte IV is drawn for every call. ``str`` input is
    encoded as UTF-8.
    """
    _check_key(key)
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")

    iv = os.urandom(MESH_IV_SIZE)
    sealed = AESGCM(bytes(key)).encrypt(iv, bytes(plaintext), None)

    # cryptography appends the tag to the ciphertext
    return EncryptedPayload(
        ciphertext=sealed[:-MESH_TAG_SIZE],
        iv=iv,
        auth_tag=sealed[-MESH_TAG_SIZE:],
    )


def decrypt(payload: EncryptedPayload, key: bytes) -> bytes:
    """Decrypt and authenticate an encrypted payload.

    Returns:
        The plaintext. Nothing is returned unless the tag verifies.

    Raises:
        IntegrityError: wrong key, wrong IV, or tampered ciphertext/tag.
        FormatError: IV or tag of the wrong size.
    """
    _check_key(key)
    if len(payload.iv) != MESH_IV_SIZE:
        raise FormatError(f"IV must be {MESH_IV_SIZE} bytes, got {len(payload.iv)}")
    if len(payload.auth_tag) != MESH_TAG_SIZE:
        raise FormatError(
            f"Auth tag must be {MESH_TAG_SIZE} bytes, got {len(payload.auth_tag)}"
        )

    try:
        return AESGCM(bytes(key)).decrypt(
            payload.iv, payload.ciphertext + payload.auth_tag, None,
        )
    except InvalidTag:
        raise IntegrityError(
            "Decryption failed: wrong key or tampered ciphertext"
        ) from None


def pack(payload: EncryptedPayload) -> bytes:
    """Pack an encrypted payload into one blob: iv + auth_tag + ciphertext."""
    return payload.to_bytes()


def unpack(blob: bytes) -> EncryptedPayload:
    """Split a packed blob at [0,12), [12,28), [28,end)."""
    return EncryptedPayload.from_bytes(blob)


def seal(plaintext: bytes | str, key: bytes) -> bytes:
    """Encrypt and pack in one step."""
    return pack(encrypt(plaintext, key))


def open_sealed(blob: bytes, key: bytes) -> bytes:
    """Unpack and decrypt in one step."""
    return decrypt(unpack(blob), key)
