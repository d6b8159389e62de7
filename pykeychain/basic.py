"""Direct-store key chain."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from .bloom import build_filter, validate_filter_parameters
from .crypto import ECKey
from .keychain import ExhaustedKeySpace, KeyIndex
from .listeners import EventNotifier
from .metrics import KEY_ISSUANCE_ERRORS_TOTAL, KEYS_ISSUED_TOTAL, KEYS_MANAGED
from .models import KeyPurpose, KeyRecord
from .protos import Key, KeyType

if TYPE_CHECKING:
    from collections.abc import Iterable
    from concurrent.futures import Executor

    from .bloom import BloomFilter
    from .listeners import KeyChainEventListener
    from .types import PubkeyBytes, PubkeyHash, Tweak

logger = logging.getLogger(__name__)


class BasicKeyChain:
    """A key chain that simply stores the keys it is given.

    Keys are issued in insertion order and each key is issued once. A request
    for a receiving key with nothing left to issue mints a new random key; a
    request for a change key with nothing left to issue fails, since a
    direct-store chain has no policy for change beyond its imported pool.
    """

    chain_type = "basic"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._index = KeyIndex()
        self._issued: set[bytes] = set()
        self._next_unissued = 0
        self._notifier = EventNotifier()

    @classmethod
    def from_protobuf(cls, keys: Iterable[Key]) -> BasicKeyChain:
        """Rebuild a chain from the output of ``serialize_to_protobuf``.

        Raises:
            ValueError: If a key is not an unencrypted key with its secret bytes,
                or its public key does not match the secret

        """
        records: list[KeyRecord] = []
        issued: list[bytes] = []
        for proto in keys:
            if proto.type is not KeyType.ORIGINAL or proto.secret_bytes is None:
                raise ValueError(f"Cannot load key of type {proto.type.name} into a basic chain")
            key = ECKey.from_private_bytes(proto.secret_bytes, proto.creation_timestamp)
            if key.public_key != proto.public_key:
                raise ValueError("Public key does not match secret bytes")
            record = KeyRecord.from_key(key, private_handle=key)
            records.append(record)
            if proto.issued:
                issued.append(record.pubkey_hash)

        chain = cls()
        chain._insert(records, issued)
        return chain

    def _insert(self, records: list[KeyRecord], issued: Iterable[bytes] = ()) -> list[KeyRecord]:
        with self._lock:
            added = self._index.add_all(records)
            self._issued.update(issued)
            if added:
                KEYS_MANAGED.labels(chain_type=self.chain_type).inc(len(added))
                for record in added:
                    logger.info(f"Added key: {record.pubkey_hex[:20]}...")
                # Posted under the lock; events follow insertion order
                self._notifier.notify_keys_added(added)
        return added

    def import_keys(self, *keys: ECKey) -> int:
        """Add keys to the chain.

        Keys already in the chain are skipped. Listeners get one event for the
        whole batch.

        Returns:
            Number of keys actually added

        """
        return len(self._insert([KeyRecord.from_key(key, private_handle=key) for key in keys]))

    def import_key(self, key: ECKey) -> bool:
        return self.import_keys(key) == 1

    def _take_unissued(self) -> KeyRecord | None:
        while self._next_unissued < len(self._index):
            record = self._index[self._next_unissued]
            if record.pubkey_hash not in self._issued:
                return record
            self._next_unissued += 1
        return None

    def get_key(self, purpose: KeyPurpose) -> KeyRecord:
        """Issue the oldest key not yet issued.

        Raises:
            ExhaustedKeySpace: For CHANGE when every stored key has been issued

        """
        minted: KeyRecord | None = None
        with self._lock:
            record = self._take_unissued()
            if record is None:
                if purpose is KeyPurpose.CHANGE:
                    KEY_ISSUANCE_ERRORS_TOTAL.labels(error_type="exhausted").inc()
                    raise ExhaustedKeySpace(
                        "No unissued key left for CHANGE; import more keys into this chain"
                    )
                key = ECKey.generate()
                record = minted = KeyRecord.from_key(key, private_handle=key)
                self._index.add(record)
            self._issued.add(record.pubkey_hash)
            if minted is not None:
                KEYS_MANAGED.labels(chain_type=self.chain_type).inc()
                logger.info(f"Created key: {minted.pubkey_hex[:20]}...")
                self._notifier.notify_keys_added([minted])

        KEYS_ISSUED_TOTAL.labels(purpose=purpose.value).inc()
        return record

    def mark_key_as_used(self, record: KeyRecord) -> bool:
        """Record that a key was seen on the network so it is never issued again.

        Returns:
            True if the key belongs to this chain

        """
        with self._lock:
            if not self._index.contains(record):
                return False
            self._issued.add(record.pubkey_hash)
            return True

    def is_issued(self, record: KeyRecord) -> bool:
        with self._lock:
            return record.pubkey_hash in self._issued

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
        return found.private_handle if found is not None else None

    def serialize_to_protobuf(self) -> list[Key]:
        with self._lock:
            return [
                Key(
                    type=KeyType.ORIGINAL,
                    public_key=record.public_key,
                    creation_timestamp=record.creation_time,
                    issued=record.pubkey_hash in self._issued,
                    secret_bytes=record.private_handle.private_bytes(),
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
        return f"BasicKeyChain(keys={self.num_keys()})"
