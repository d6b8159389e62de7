"""Data classes for pykeychain.

This module contains the data types shared by every key chain variant.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .crypto import ECKey


class KeyPurpose(Enum):
    """Role an issued key will play in the wallet."""

    RECEIVE_FUNDS = "receive_funds"
    CHANGE = "change"


@dataclass(frozen=True, slots=True)
class KeyRecord:
    """Public identifiers of one managed key.

    Attributes:
        public_key: Compressed SEC1 public key
        pubkey_hash: HASH160 of public_key (address form)
        creation_time: Unix timestamp of key creation
        path: BIP32 path for derived keys, None for imported/random keys
        private_handle: Opaque reference owned by the chain that created the record

    """

    public_key: bytes
    pubkey_hash: bytes
    creation_time: int
    path: tuple[int, ...] | None = None
    private_handle: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def from_key(
        cls,
        key: ECKey,
        private_handle: Any = None,
        path: tuple[int, ...] | None = None,
    ) -> KeyRecord:
        """Build the record for a key. Only chain insertion code calls this."""
        return cls(
            public_key=key.public_key,
            pubkey_hash=key.pubkey_hash,
            creation_time=key.creation_time,
            path=path,
            private_handle=private_handle,
        )

    @property
    def pubkey_hex(self) -> str:
        return self.public_key.hex()


@dataclass(frozen=True, slots=True)
class KeyAddedEvent:
    """Notification payload: keys added to a chain by a single mutation.

    Attributes:
        keys: The new records in the order they were added

    """

    keys: tuple[KeyRecord, ...]

    def __len__(self) -> int:
        return len(self.keys)
