"""BIP32 hierarchical deterministic private key derivation."""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

from .crypto import CURVE_ORDER, ECKey, hash160

HARDENED_BIT = 0x80000000
MAX_CHILD_INDEX = HARDENED_BIT - 1


class DerivationError(Exception):
    """The requested child key is invalid and must be skipped (BIP32)."""


def hardened(index: int) -> int:
    return index | HARDENED_BIT


def format_path(path: tuple[int, ...]) -> str:
    """Render a path the usual way, e.g. ``m/0'/1/5``."""
    parts = ["m"]
    for index in path:
        if index & HARDENED_BIT:
            parts.append(f"{index & MAX_CHILD_INDEX}'")
        else:
            parts.append(str(index))
    return "/".join(parts)


@dataclass(frozen=True, slots=True)
class HDNode:
    """An extended private key.

    Attributes:
        key: The private key at this node
        chain_code: 32 byte BIP32 chain code
        path: Child indices from the master node

    """

    key: ECKey
    chain_code: bytes
    path: tuple[int, ...] = ()

    @classmethod
    def from_seed(cls, seed: bytes, creation_time: int | None = None) -> HDNode:
        """Derive the master node from a seed.

        Raises:
            ValueError: If the seed is not between 16 and 64 bytes
            DerivationError: If the seed yields an invalid master key

        """
        if not 16 <= len(seed) <= 64:
            raise ValueError(f"Seed must be between 16 and 64 bytes, got {len(seed)}")
        digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        exponent = int.from_bytes(digest[:32], "big")
        if not 0 < exponent < CURVE_ORDER:
            raise DerivationError("Seed produces an invalid master key")
        return cls(ECKey.from_secret_exponent(exponent, creation_time), digest[32:])

    @property
    def depth(self) -> int:
        return len(self.path)

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.key.public_key)[:4]

    def derive_child(self, index: int) -> HDNode:
        """Derive the private child at ``index`` (hardened if the top bit is set).

        Raises:
            ValueError: If index does not fit in 32 bits
            DerivationError: If the child key is invalid for this index

        """
        if not 0 <= index <= 0xFFFFFFFF:
            raise ValueError(f"Child index out of range: {index}")

        if index & HARDENED_BIT:
            data = b"\x00" + self.key.private_bytes() + index.to_bytes(4, "big")
        else:
            data = self.key.public_key + index.to_bytes(4, "big")

        digest = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        tweak = int.from_bytes(digest[:32], "big")
        if tweak >= CURVE_ORDER:
            raise DerivationError(f"Invalid child at {format_path((*self.path, index))}")

        exponent = (tweak + self.key.secret_exponent) % CURVE_ORDER
        if exponent == 0:
            raise DerivationError(f"Invalid child at {format_path((*self.path, index))}")

        return HDNode(
            key=ECKey.from_secret_exponent(exponent, self.key.creation_time),
            chain_code=digest[32:],
            path=(*self.path, index),
        )

    def derive_path(self, path: tuple[int, ...]) -> HDNode:
        node = self
        for index in path:
            node = node.derive_child(index)
        return node
