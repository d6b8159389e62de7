"""The key chain contract.

A key chain stores a collection of keys for a wallet. It can look keys up by
pubkey hash (address form) or raw public key, hand out keys for a purpose,
serialize its keys and build a Bloom filter over them, and it tells
listeners about keys being added.

It does not import or encrypt keys: those are capabilities of particular
chains, because a chain may live on external hardware or be derived from a
seed, where importing makes no sense. Variants implement the ``KeyChain``
protocol independently and share only ``KeyIndex``, ``EventNotifier`` and
``build_filter``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from concurrent.futures import Executor

    from .bloom import BloomFilter
    from .listeners import KeyChainEventListener
    from .models import KeyPurpose, KeyRecord
    from .protos import Key
    from .types import PubkeyBytes, PubkeyHash, Tweak


class KeyChainError(Exception):
    """Base class for key chain failures."""


class ChainLocked(KeyChainError):
    """The chain must be unlocked before private key material can be used."""


class ExhaustedKeySpace(KeyChainError):
    """No further key can be issued for the requested purpose."""


class InconsistentState(KeyChainError):
    """The lookup indices disagree with the key set. Indicates a bug."""


@runtime_checkable
class KeyChain(Protocol):
    """Operations every key chain variant provides."""

    def find_key_from_pub_hash(self, pubkey_hash: PubkeyHash) -> KeyRecord | None:
        """Locate a key by the hash of its public key, or None."""
        ...

    def find_key_from_pub_key(self, pubkey: PubkeyBytes) -> KeyRecord | None:
        """Locate a key by its raw public key bytes, or None."""
        ...

    def has_key(self, record: KeyRecord) -> bool: ...

    def get_key(self, purpose: KeyPurpose) -> KeyRecord:
        """Obtain a key for the purpose, creating or deriving one if needed.

        Raises:
            ChainLocked: If a key must be created and the chain is locked
            ExhaustedKeySpace: If no key can be issued for the purpose

        """
        ...

    def serialize_to_protobuf(self) -> list[Key]:
        """Serialized keys in insertion order."""
        ...

    def add_event_listener(
        self, listener: KeyChainEventListener, executor: Executor | None = None
    ) -> None: ...

    def remove_event_listener(self, listener: KeyChainEventListener) -> bool: ...

    def num_keys(self) -> int: ...

    def num_bloom_filter_entries(self) -> int:
        """Number of elements this chain puts into a Bloom filter.

        The ``size`` passed to ``get_filter`` should be at least this large.
        """
        ...

    def get_filter(self, size: int, false_positive_rate: float, tweak: Tweak) -> BloomFilter:
        """Bloom filter over every public key and pubkey hash in the chain.

        Each key contributes two elements, so ``size`` should be at least
        ``num_bloom_filter_entries()``. Size, rate and tweak are inputs so a
        wallet can build filters for several chains and merge them.

        Raises:
            InvalidFilterParameters: If the parameters are out of range

        """
        ...


class KeyIndex:
    """Insertion-ordered key records plus hash and public key indices.

    Not thread-safe: the owning chain holds its lock around every call.
    """

    __slots__ = ("_records", "_by_hash", "_by_pubkey")

    def __init__(self) -> None:
        self._records: list[KeyRecord] = []
        self._by_hash: dict[bytes, KeyRecord] = {}
        self._by_pubkey: dict[bytes, KeyRecord] = {}

    def add_all(self, records: Iterable[KeyRecord]) -> list[KeyRecord]:
        """Insert records not already present.

        Returns:
            The records actually inserted, in order

        Raises:
            InconsistentState: If a record collides with an existing one on one
                index but not the other; nothing is inserted in that case

        """
        added: list[KeyRecord] = []
        seen_hashes: set[bytes] = set()
        seen_pubkeys: set[bytes] = set()
        for record in records:
            known_hash = record.pubkey_hash in self._by_hash or record.pubkey_hash in seen_hashes
            known_pubkey = record.public_key in self._by_pubkey or record.public_key in seen_pubkeys
            if known_hash != known_pubkey:
                raise InconsistentState(
                    f"Key {record.pubkey_hex[:20]}... is present in only one lookup index"
                )
            if known_hash:
                continue
            seen_hashes.add(record.pubkey_hash)
            seen_pubkeys.add(record.public_key)
            added.append(record)

        for record in added:
            self._records.append(record)
            self._by_hash[record.pubkey_hash] = record
            self._by_pubkey[record.public_key] = record
        return added

    def add(self, record: KeyRecord) -> bool:
        return bool(self.add_all((record,)))

    def by_hash(self, pubkey_hash: PubkeyHash) -> KeyRecord | None:
        return self._by_hash.get(pubkey_hash)

    def by_pubkey(self, pubkey: PubkeyBytes) -> KeyRecord | None:
        return self._by_pubkey.get(pubkey)

    def contains(self, record: KeyRecord) -> bool:
        return record.pubkey_hash in self._by_hash

    def records(self) -> list[KeyRecord]:
        return list(self._records)

    def public_identifiers(self) -> list[bytes]:
        """Public key and pubkey hash of every record, for filter building."""
        identifiers: list[bytes] = []
        for record in self._records:
            identifiers.append(record.public_key)
            identifiers.append(record.pubkey_hash)
        return identifiers

    def check_consistency(self) -> None:
        """Raise InconsistentState unless both indices cover exactly the record list."""
        if not len(self._records) == len(self._by_hash) == len(self._by_pubkey):
            raise InconsistentState(
                f"Index sizes differ: {len(self._records)} records, "
                f"{len(self._by_hash)} hashes, {len(self._by_pubkey)} public keys"
            )
        for record in self._records:
            if (
                self._by_hash.get(record.pubkey_hash) is not record
                or self._by_pubkey.get(record.public_key) is not record
            ):
                raise InconsistentState(f"Key {record.pubkey_hex[:20]}... is not indexed")

    def __getitem__(self, position: int) -> KeyRecord:
        return self._records[position]

    def __iter__(self) -> Iterator[KeyRecord]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)
