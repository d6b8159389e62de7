"""secp256k1 key collaborator backed by the ecdsa package."""

from __future__ import annotations

import hashlib
import os
import time

from Crypto.Hash import RIPEMD160
from ecdsa import SECP256k1, SigningKey

CURVE_ORDER: int = SECP256k1.order


class ECKeyError(Exception):
    """Invalid private key material."""


def hash160(data: bytes) -> bytes:
    """Return RIPEMD160(SHA256(data)), the Bitcoin address-form hash."""
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


class ECKey:
    """A secp256k1 private key with cached public forms.

    The chain that owns an ECKey never reads its private bytes except to hand
    them to the serialization schema or to the encryption layer.
    """

    __slots__ = ("_signing_key", "_public_key", "_pubkey_hash", "creation_time")

    def __init__(self, signing_key: SigningKey, creation_time: int | None = None) -> None:
        self._signing_key = signing_key
        self._public_key: bytes = signing_key.get_verifying_key().to_string("compressed")
        self._pubkey_hash: bytes = hash160(self._public_key)
        self.creation_time = int(time.time()) if creation_time is None else creation_time

    @classmethod
    def generate(cls) -> ECKey:
        """Create a fresh random key."""
        while True:
            exponent = int.from_bytes(os.urandom(32), "big")
            if 0 < exponent < CURVE_ORDER:
                return cls.from_secret_exponent(exponent)

    @classmethod
    def from_secret_exponent(cls, exponent: int, creation_time: int | None = None) -> ECKey:
        """Create a key from its scalar.

        Raises:
            ECKeyError: If the scalar is outside [1, n - 1]

        """
        if not 0 < exponent < CURVE_ORDER:
            raise ECKeyError("Private key scalar out of range")
        signing_key = SigningKey.from_secret_exponent(exponent, curve=SECP256k1)
        return cls(signing_key, creation_time)

    @classmethod
    def from_private_bytes(cls, data: bytes, creation_time: int | None = None) -> ECKey:
        """Create a key from 32 big-endian private key bytes.

        Raises:
            ECKeyError: If the data is not a valid secp256k1 private key

        """
        if len(data) != 32:
            raise ECKeyError(f"Private key must be 32 bytes, got {len(data)}")
        return cls.from_secret_exponent(int.from_bytes(data, "big"), creation_time)

    @property
    def public_key(self) -> bytes:
        """Compressed SEC1 public key."""
        return self._public_key

    @property
    def pubkey_hash(self) -> bytes:
        """HASH160 of the compressed public key."""
        return self._pubkey_hash

    @property
    def secret_exponent(self) -> int:
        return int(self._signing_key.privkey.secret_multiplier)

    def private_bytes(self) -> bytes:
        """Return the 32 byte private key."""
        return self._signing_key.to_string()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ECKey):
            return NotImplemented
        return self._public_key == other._public_key

    def __hash__(self) -> int:
        return hash(self._public_key)

    def __repr__(self) -> str:
        return f"ECKey(pub={self._public_key.hex()[:20]}...)"
