from __future__ import annotations

import re

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)


_IDENTITY_RE = re.compile(r"^0x[0-9a-f]{64}$")


def _strip_hex_prefix(value: str) -> str:
    value = value.strip()
    return value[2:] if value[:2].lower() == "0x" else value


def normalize_identity(value: str) -> str:
    """Return the canonical form of a ledger identity.

    An identity is the raw 32-byte Ed25519 public key, hex encoded with a
    `0x` prefix and lowercase digits. Raises ValueError for anything else.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("identity is required")
    canonical = "0x" + _strip_hex_prefix(value).lower()
    if not _IDENTITY_RE.match(canonical):
        raise ValueError(f"Malformed identity: {value!r}")
    return canonical


class Signer:
    """Ed25519 signing key for ledger transactions."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._key = private_key
        raw = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self._identity = "0x" + raw.hex()

    @classmethod
    def generate(cls) -> "Signer":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_hex(cls, value: str) -> "Signer":
        """Load a signer from a hex-encoded 32-byte private seed (0x optional)."""
        if not value:
            raise ValueError("private key is required")
        try:
            seed = bytes.fromhex(_strip_hex_prefix(value))
        except ValueError as ex:
            raise ValueError("private key must be hex encoded") from ex
        if len(seed) != 32:
            raise ValueError("private key must be 32 bytes")
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @property
    def identity(self) -> str:
        return self._identity

    def private_key_hex(self) -> str:
        raw = self._key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return "0x" + raw.hex()

    def sign(self, payload: bytes) -> str:
        return "0x" + self._key.sign(payload).hex()

    def __repr__(self) -> str:
        return f"Signer(identity={self._identity})"


def verify_signature(identity: str, payload: bytes, signature: str) -> bool:
    """Return True if `signature` over `payload` was made by `identity`."""
    try:
        public = Ed25519PublicKey.from_public_bytes(
            bytes.fromhex(_strip_hex_prefix(normalize_identity(identity)))
        )
        sig = bytes.fromhex(_strip_hex_prefix(signature or ""))
    except ValueError:
        return False
    try:
        public.verify(sig, payload)
    except InvalidSignature:
        return False
    return True


__all__ = ["Signer", "normalize_identity", "verify_signature"]
