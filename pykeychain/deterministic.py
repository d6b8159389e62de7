"""BIP32 seed-derived key chain."""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .bloom import build_filter, validate_filter_parameters
from .hd import MAX_CHILD_INDEX, DerivationError, HDNode, format_path, hardened
from .keychain import ExhaustedKeySpace, KeyIndex
from .listeners import EventNotifier
from .metrics import KEY_ISSUANCE_ERRORS_TOTAL, KEYS_ISSUED_TOTAL, KEYS_MANAGED
from .models import KeyPurpose, KeyRecord
from .protos import Key, KeyType

if TYPE_CHECKING:
    from concurrent.futures import Executor

    from .bloom import BloomFilter
    from .config import Config
    from .crypto import ECKey
    from .listeners import KeyChainEventListener
    from .types import PubkeyBytes, PubkeyHash, Tweak

logger = logging.getLogger(__name__)

ACCOUNT_ZERO_PATH: tuple[int, ...] = (hardened(0),)
EXTERNAL_PATH: tuple[int, ...] = (*ACCOUNT_ZERO_PATH, 0)
INTERNAL_PATH: tuple[int, ...] = (*ACCOUNT_ZERO_PATH, 1)

DEFAULT_LOOKAHEAD_SIZE = 100
MAX_KEYS_PER_CHAIN = MAX_CHILD_INDEX + 1


@dataclass(slots=True)
class _LeafChain:
    """One branch (external or internal) of the account."""

    node: HDNode
    keys: list[KeyRecord] = field(default_factory=list)
    issued: int = 0
    next_index: int = 0


class DeterministicKeyChain:
    """Keys derived from a single seed along ``m/0'/0/i`` and ``m/0'/1/i``.

    Receiving keys come from the external branch and change keys from the
    internal branch, each handed out in index order. Every branch keeps a
    lookahead of derived but unissued keys so the wallet's Bloom filter
    already matches payments to addresses it is about to give out; the
    lookahead is topped up in batches once fewer than ``lookahead_threshold``
    keys beyond the default lookahead remain, and each batch is one event.
    """

    chain_type = "deterministic"

    def __init__(
        self,
        seed: bytes,
        *,
        lookahead_size: int = DEFAULT_LOOKAHEAD_SIZE,
        lookahead_threshold: int | None = None,
        max_keys: int = MAX_KEYS_PER_CHAIN,
        issued_receive: int = 0,
        issued_change: int = 0,
        creation_time: int | None = None,
    ) -> None:
        if lookahead_size < 1:
            raise ValueError(f"lookahead_size must be at least 1, got {lookahead_size}")
        if lookahead_threshold is None:
            lookahead_threshold = lookahead_size // 3
        if not 0 <= lookahead_threshold <= lookahead_size:
            raise ValueError(
                f"lookahead_threshold must be between 0 and {lookahead_size}, "
                f"got {lookahead_threshold}"
            )
        if not 1 <= max_keys <= MAX_KEYS_PER_CHAIN:
            raise ValueError(f"max_keys must be between 1 and {MAX_KEYS_PER_CHAIN}, got {max_keys}")
        if not (0 <= issued_receive <= max_keys and 0 <= issued_change <= max_keys):
            raise ValueError("Issued key counts must be between 0 and max_keys")

        self._lock = threading.RLock()
        self._index = KeyIndex()
        self._notifier = EventNotifier()
        self._lookahead_size = lookahead_size
        self._lookahead_threshold = lookahead_threshold
        self._max_keys = max_keys

        creation_time = int(time.time()) if creation_time is None else creation_time
        master = HDNode.from_seed(seed, creation_time)
        account = master.derive_path(ACCOUNT_ZERO_PATH)
        self._seed_fingerprint = master.fingerprint
        self._external = _LeafChain(account.derive_child(0))
        self._internal = _LeafChain(account.derive_child(1))
        # Position of each derived key within its branch
        self._positions: dict[bytes, tuple[_LeafChain, int]] = {}

        self._external.issued = issued_receive
        self._internal.issued = issued_change
        self._index.add_all(self._maybe_lookahead(self._external))
        self._index.add_all(self._maybe_lookahead(self._internal))
        KEYS_MANAGED.labels(chain_type=self.chain_type).inc(len(self._index))
        logger.info(
            f"Created deterministic chain {self._seed_fingerprint.hex()} "
            f"with {len(self._index)} lookahead keys"
        )

    @classmethod
    def random(cls, config: Config | None = None) -> DeterministicKeyChain:
        """Create a chain from a fresh 32 byte random seed."""
        return cls.from_seed(os.urandom(32), config)

    @classmethod
    def from_seed(
        cls,
        seed: bytes,
        config: Config | None = None,
        *,
        issued_receive: int = 0,
        issued_change: int = 0,
    ) -> DeterministicKeyChain:
        """Create a chain using the lookahead settings from ``config``."""
        if config is None:
            return cls(seed, issued_receive=issued_receive, issued_change=issued_change)
        return cls(
            seed,
            lookahead_size=config.lookahead_size,
            lookahead_threshold=config.lookahead_threshold,
            max_keys=config.max_keys_per_chain,
            issued_receive=issued_receive,
            issued_change=issued_change,
        )

    @property
    def seed_fingerprint(self) -> bytes:
        """First four bytes of the master key's HASH160."""
        return self._seed_fingerprint

    @property
    def lookahead_size(self) -> int:
        return self._lookahead_size

    @property
    def lookahead_threshold(self) -> int:
        return self._lookahead_threshold

    def _leaf_for(self, purpose: KeyPurpose) -> _LeafChain:
        return self._external if purpose is KeyPurpose.RECEIVE_FUNDS else self._internal

    def _derive_next(self, leaf: _LeafChain) -> KeyRecord:
        while True:
            if leaf.next_index > MAX_CHILD_INDEX:
                raise ExhaustedKeySpace(f"Branch {format_path(leaf.node.path)} is out of indices")
            index = leaf.next_index
            leaf.next_index += 1
            try:
                child = leaf.node.derive_child(index)
            except DerivationError as e:
                logger.warning(f"Skipping child index {index}: {e}")
                continue
            record = KeyRecord.from_key(child.key, private_handle=child, path=child.path)
            self._positions[record.pubkey_hash] = (leaf, len(leaf.keys))
            leaf.keys.append(record)
            return record

    def _maybe_lookahead(self, leaf: _LeafChain) -> list[KeyRecord]:
        """Derive keys so the branch is ``lookahead_size`` ahead of its issued count.

        Nothing is derived while at least one unissued key is available and the
        shortfall does not exceed the threshold, so derivation happens in batches.
        """
        target = min(leaf.issued + self._lookahead_size + self._lookahead_threshold, self._max_keys)
        needed = target - len(leaf.keys)
        if needed <= 0 or (needed <= self._lookahead_threshold and len(leaf.keys) > leaf.issued):
            return []

        start_len, start_index = len(leaf.keys), leaf.next_index
        try:
            derived = [self._derive_next(leaf) for _ in range(needed)]
        except ExhaustedKeySpace:
            # Undo the partial batch; the index never saw it
            for record in leaf.keys[start_len:]:
                del self._positions[record.pubkey_hash]
            del leaf.keys[start_len:]
            leaf.next_index = start_index
            raise
        logger.debug(
            f"Derived {len(derived)} lookahead keys on {format_path(leaf.node.path)}, "
            f"{len(leaf.keys)} total"
        )
        return derived

    def get_key(self, purpose: KeyPurpose) -> KeyRecord:
        """Issue the next unused key of the branch for ``purpose``.

        Raises:
            ExhaustedKeySpace: If the branch has issued ``max_keys`` keys

        """
        with self._lock:
            leaf = self._leaf_for(purpose)
            if leaf.issued >= self._max_keys:
                KEY_ISSUANCE_ERRORS_TOTAL.labels(error_type="exhausted").inc()
                raise ExhaustedKeySpace(
                    f"All {self._max_keys} keys of {format_path(leaf.node.path)} have been issued"
                )
            added = self._maybe_lookahead(leaf)
            record = leaf.keys[leaf.issued]
            leaf.issued += 1
            self._index.add_all(added)
            self._announce(added)

        KEYS_ISSUED_TOTAL.labels(purpose=purpose.value).inc()
        return record

    def mark_key_as_used(self, record: KeyRecord) -> bool:
        """Treat every key up to and including ``record`` in its branch as issued.

        Called when a key turns up on the network, e.g. after restoring from seed.

        Returns:
            True if the key belongs to this chain

        """
        with self._lock:
            position = self._positions.get(record.pubkey_hash)
            if position is None:
                return False
            leaf, offset = position
            leaf.issued = max(leaf.issued, offset + 1)
            added = self._maybe_lookahead(leaf)
            self._index.add_all(added)
            self._announce(added)
        return True

    def _announce(self, added: list[KeyRecord]) -> None:
        # Caller holds the lock
        if not added:
            return
        KEYS_MANAGED.labels(chain_type=self.chain_type).inc(len(added))
        self._notifier.notify_keys_added(added)

    def num_issued(self, purpose: KeyPurpose) -> int:
        with self._lock:
            return self._leaf_for(purpose).issued

    def get_issued_receive_keys(self) -> list[KeyRecord]:
        with self._lock:
            return self._external.keys[: self._external.issued]

    def _is_issued(self, record: KeyRecord) -> bool:
        position = self._positions.get(record.pubkey_hash)
        return position is not None and position[1] < position[0].issued

    def is_issued(self, record: KeyRecord) -> bool:
        with self._lock:
            return self._is_issued(record)

    def find_key_from_pub_hash(self, pubkey_hash: PubkeyHash) -> KeyRecord | None:
        with self._lock:
            return self._index.by_hash(pubkey_hash)

    def find_key_from_pub_key(self, pubkey: PubkeyBytes) -> KeyRecord | None:
        with self._lock:
            return self._index.by_pubkey(pubkey)

    def has_key(self, record: KeyRecord) -> bool:
        with self._lock:
            return self._index.contains(record)

    def get_keys(self) -> list[KeyRecord]:
        with self._lock:
            return self._index.records()

    def get_private_key(self, record: KeyRecord) -> ECKey | None:
        """Return the private key for a record of this chain, or None."""
        with self._lock:
            found = self._index.by_hash(record.pubkey_hash)
        return found.private_handle.key if found is not None else None

    def serialize_to_protobuf(self) -> list[Key]:
        """Serialized leaf keys: path and public key only, no private material."""
        with self._lock:
            return [
                Key(
                    type=KeyType.DETERMINISTIC_KEY,
                    public_key=record.public_key,
                    creation_timestamp=record.creation_time,
                    issued=self._is_issued(record),
                    path=list(record.path or ()),
                )
                for record in self._index
            ]

    def add_event_listener(
        self, listener: KeyChainEventListener, executor: Executor | None = None
    ) -> None:
        with self._lock:
            self._notifier.add(listener, executor)

    def remove_event_listener(self, listener: KeyChainEventListener) -> bool:
        with self._lock:
            return self._notifier.remove(listener)

    def num_keys(self) -> int:
        with self._lock:
            return len(self._index)

    def num_bloom_filter_entries(self) -> int:
        return self.num_keys() * 2

    def get_filter(self, size: int, false_positive_rate: float, tweak: Tweak) -> BloomFilter:
        validate_filter_parameters(size, false_positive_rate, tweak)
        with self._lock:
            identifiers = self._index.public_identifiers()
        return build_filter(identifiers, size, false_positive_rate, tweak)

    def check_consistency(self) -> None:
        with self._lock:
            self._index.check_consistency()

    def __repr__(self) -> str:
        return (
            f"DeterministicKeyChain(fingerprint={self._seed_fingerprint.hex()}, "
            f"keys={self.num_keys()})"
        )
