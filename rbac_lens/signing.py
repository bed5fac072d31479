"""
rbac_lens.signing: Ed25519 signing for audit records.

Signing is optional. When a key is configured, each appended record's hash is
signed and the signature is stored next to the record. Verifiers only need the
public half, held in a :class:`TrustedKeyStore`.

SECURITY: A signature proves who wrote a record; the hash chain proves nothing
was changed after the fact. Keep the private seed off the audit host where
possible.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Protocol, Set, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .canonical import safe_hash_encode

logger = logging.getLogger("rbac_lens.signing")

SIGNATURE_DOMAIN = "RBAC_AUDIT_SIG_V1"


def signature_payload(record_hash: str) -> bytes:
    """Bytes that get signed for a record with hash ``record_hash``."""
    return safe_hash_encode([SIGNATURE_DOMAIN, record_hash])


@runtime_checkable
class Signer(Protocol):
    """Protocol implemented by signing backends."""
    key_id: str

    @property
    def public_key_hex(self) -> str: ...

    def sign(self, message: bytes) -> bytes: ...


@dataclass
class Ed25519KeyPair:
    """
    Ed25519 key pair for signing and verification.

    ``private_key_bytes`` is None for verification-only keys.
    """
    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519KeyPair":
        """Generate a new Ed25519 key pair."""
        return cls._from_private_key(key_id, Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str) -> "Ed25519KeyPair":
        """Create key pair from a 32-byte seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls._from_private_key(key_id, Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def from_seed_hex(cls, seed_hex: str, key_id: str) -> "Ed25519KeyPair":
        s = (seed_hex or "").strip()
        if len(s) != 64:
            raise ValueError(f"Key must be 64 hex chars (32 bytes), got {len(s)}")
        return cls.from_seed(bytes.fromhex(s), key_id)

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        """Create key pair with public key only (for verification)."""
        raw = bytes.fromhex(public_key_hex.strip())
        if len(raw) != 32:
            raise ValueError(f"Public key must be 32 bytes, got {len(raw)}")
        return cls(key_id=key_id, public_key_bytes=raw, private_key_bytes=None)

    @classmethod
    def _from_private_key(cls, key_id: str, private_key: Ed25519PrivateKey) -> "Ed25519KeyPair":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(key_id=key_id, public_key_bytes=public_bytes, private_key_bytes=private_bytes)

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def public_only(self) -> "Ed25519KeyPair":
        return Ed25519KeyPair(key_id=self.key_id, public_key_bytes=self.public_key_bytes)

    def sign(self, message: bytes) -> bytes:
        if self.private_key_bytes is None:
            raise ValueError(f"key {self.key_id!r} has no private half")
        return Ed25519PrivateKey.from_private_bytes(self.private_key_bytes).sign(bytes(message))

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            Ed25519PublicKey.from_public_bytes(self.public_key_bytes).verify(bytes(signature), bytes(message))
            return True
        except (InvalidSignature, ValueError):
            return False


def sign_record_hash(signer: Signer, record_hash: str) -> str:
    """Return the base64 signature for ``record_hash``."""
    return base64.b64encode(signer.sign(signature_payload(record_hash))).decode("ascii")


@dataclass
class TrustedKeyStore:
    """Public keys accepted when verifying record signatures.

    Supports rotation (several active keys) and absolute revocation.
    """
    keys: Dict[str, Ed25519KeyPair] = field(default_factory=dict)
    revoked_key_ids: Set[str] = field(default_factory=set)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "TrustedKeyStore":
        """Build from ``{key_id: public_key_hex}``."""
        store = cls()
        for key_id, public_key_hex in mapping.items():
            store.add_public_key(str(key_id), str(public_key_hex))
        return store

    def add_public_key(self, key_id: str, public_key_hex: str) -> None:
        self.keys[key_id] = Ed25519KeyPair.from_public_key(key_id, public_key_hex)

    def revoke_key(self, key_id: str) -> None:
        self.revoked_key_ids.add(str(key_id))

    def get_key(self, key_id: str) -> Optional[Ed25519KeyPair]:
        return self.keys.get(key_id)

    def verify_signature(self, key_id: str, message: bytes, signature: bytes) -> bool:
        if key_id in self.revoked_key_ids:
            logger.warning("Rejecting signature from revoked key %s", key_id)
            return False
        kp = self.keys.get(key_id)
        if kp is None:
            return False
        return kp.verify(message, signature)

    def verify_record_signature(self, key_id: Optional[str], record_hash: str, signature_b64: Optional[str]) -> bool:
        """True when ``signature_b64`` is a valid signature over ``record_hash``."""
        if not key_id or not signature_b64:
            return False
        try:
            sig = base64.b64decode(signature_b64, validate=True)
        except (binascii.Error, ValueError):
            return False
        return self.verify_signature(key_id, signature_payload(record_hash), sig)
