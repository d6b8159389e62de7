"""Direct-store key chain whose private keys are encrypted at rest."""

from __future__ import annotations

import base64
import logging
import os
import threading
from typing import TYPE_CHECKING

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .bloom import build_filter, validate_filter_parameters
from .crypto import ECKey
from .keychain import ChainLocked, ExhaustedKeySpace, KeyIndex
from .listeners import EventNotifier
from .metrics import KEY_ISSUANCE_ERRORS_TOTAL, KEYS_ISSUED_TOTAL, KEYS_MANAGED
from .models import KeyPurpose, KeyRecord
from .protos import Key, KeyType

if TYPE_CHECKING:
    from collections.abc import Iterable
    from concurrent.futures import Executor

    from .bloom import BloomFilter
    from .config import Config
    from .listeners import KeyChainEventListener
    from .types import PubkeyBytes, PubkeyHash, Tweak

logger = logging.getLogger(__name__)

# OWASP 2023 recommendation for PBKDF2-HMAC-SHA256
DEFAULT_PBKDF2_ITERATIONS = 480_000

_VERIFIER_PLAINTEXT = b"pykeychain"


def derive_fernet_key(password: str, salt: bytes, iterations: int) -> bytes:
    """Stretch a password into a urlsafe-base64 Fernet key with PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode("utf-8")))


class EncryptedKeyChain:
    """A direct-store chain holding Fernet-encrypted private keys.

    Public forms are cached in clear, so lookups, filters and serialization
    keep working while the chain is locked. Anything that needs a private key,
    including minting a new one, raises ``ChainLocked`` until ``unlock`` is
    called with the right password. Issuance follows ``BasicKeyChain``.

    The chain starts unlocked.
    """

    chain_type = "encrypted"

    def __init__(
        self,
        password: str,
        *,
        salt: bytes | None = None,
        iterations: int = DEFAULT_PBKDF2_ITERATIONS,
    ) -> None:
        if not password:
            raise ValueError("password must not be empty")
        if iterations < 1:
            raise ValueError(f"iterations must be positive, got {iterations}")

        self._lock = threading.RLock()
        self._index = KeyIndex()
        self._issued: set[bytes] = set()
        self._next_unissued = 0
        self._notifier = EventNotifier()

        self._salt = os.urandom(16) if salt is None else salt
        self._iterations = iterations
        self._fernet: Fernet | None = Fernet(derive_fernet_key(password, self._salt, iterations))
        self._verifier = self._fernet.encrypt(_VERIFIER_PLAINTEXT)

    @classmethod
    def from_config(cls, password: str, config: Config) -> EncryptedKeyChain:
        return cls(password, iterations=config.pbkdf2_iterations)

    @classmethod
    def from_protobuf(
        cls,
        keys: Iterable[Key],
        password: str,
        *,
        salt: bytes,
        iterations: int = DEFAULT_PBKDF2_ITERATIONS,
    ) -> EncryptedKeyChain:
        """Rebuild an unlocked chain from ``serialize_to_protobuf`` output.

        Raises:
            ChainLocked: If the password does not decrypt the keys
            ValueError: If a key is not an encrypted key or does not match its public key

        """
        chain = cls(password, salt=salt, iterations=iterations)
        fernet = chain._require_unlocked()

        records: list[KeyRecord] = []
        issued: list[bytes] = []
        for proto in keys:
            if proto.type is not KeyType.ENCRYPTED or proto.encrypted_data is None:
                raise ValueError(f"Cannot load key of type {proto.type.name} into an encrypted chain")
            try:
                secret = fernet.decrypt(proto.encrypted_data)
            except InvalidToken as e:
                raise ChainLocked("Incorrect password for encrypted keys") from e
            key = ECKey.from_private_bytes(secret, proto.creation_timestamp)
            if key.public_key != proto.public_key:
                raise ValueError("Public key does not match encrypted secret")
            records.append(KeyRecord.from_key(key, private_handle=proto.encrypted_data))
            if proto.issued:
                issued.append(key.pubkey_hash)

        chain._insert(records, issued)
        return chain

    @property
    def salt(self) -> bytes:
        return self._salt

    @property
    def iterations(self) -> int:
        return self._iterations

    @property
    def is_locked(self) -> bool:
        with self._lock:
            return self._fernet is None

    def lock(self) -> None:
        """Forget the encryption key."""
        with self._lock:
            self._fernet = None
        logger.info("Encrypted key chain locked")

    def unlock(self, password: str) -> None:
        """Derive the encryption key from ``password``.

        Raises:
            ChainLocked: If the password is wrong; the chain stays locked

        """
        fernet = Fernet(derive_fernet_key(password, self._salt, self._iterations))
        try:
            fernet.decrypt(self._verifier)
        except InvalidToken as e:
            raise ChainLocked("Incorrect password") from e
        with self._lock:
            self._fernet = fernet
        logger.info("Encrypted key chain unlocked")

    def _require_unlocked(self) -> Fernet:
        if self._fernet is None:
            raise ChainLocked("Key chain is locked; unlock it with the wallet password first")
        return self._fernet

    def _encrypt(self, key: ECKey) -> KeyRecord:
        token = self._require_unlocked().encrypt(key.private_bytes())
        return KeyRecord.from_key(key, private_handle=token)

    def _insert(self, records: list[KeyRecord], issued: Iterable[bytes] = ()) -> list[KeyRecord]:
        with self._lock:
            added = self._index.add_all(records)
            self._issued.update(issued)
            if added:
                KEYS_MANAGED.labels(chain_type=self.chain_type).inc(len(added))
                for record in added:
                    logger.info(f"Added encrypted key: {record.pubkey_hex[:20]}...")
                # Posted under the lock; events follow insertion order
                self._notifier.notify_keys_added(added)
        return added

    def import_keys(self, *keys: ECKey) -> int:
        """Encrypt and add keys. Keys already present are skipped.

        Returns:
            Number of keys actually added

        Raises:
            ChainLocked: If the chain is locked; nothing is added

        """
        # lock() waits until every encrypted key is stored
        with self._lock:
            fernet = self._require_unlocked()
            records = [
                KeyRecord.from_key(key, private_handle=fernet.encrypt(key.private_bytes()))
                for key in keys
            ]
            return len(self._insert(records))

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
        """Issue the oldest key not yet issued, minting one for RECEIVE_FUNDS if needed.

        Raises:
            ChainLocked: If a key must be minted while the chain is locked
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
                if self._fernet is None:
                    KEY_ISSUANCE_ERRORS_TOTAL.labels(error_type="locked").inc()
                    raise ChainLocked("Cannot create a new key while the chain is locked")
                record = minted = self._encrypt(ECKey.generate())
                self._index.add(record)
            self._issued.add(record.pubkey_hash)
            if minted is not None:
                KEYS_MANAGED.labels(chain_type=self.chain_type).inc()
                logger.info(f"Created encrypted key: {minted.pubkey_hex[:20]}...")
                self._notifier.notify_keys_added([minted])

        KEYS_ISSUED_TOTAL.labels(purpose=purpose.value).inc()
        return record

    def mark_key_as_used(self, record: KeyRecord) -> bool:
        with self._lock:
            if not self._index.contains(record):
                return False
            self._issued.add(record.pubkey_hash)
            return True

    def is_issued(self, record: KeyRecord) -> bool:
        with self._lock:
            return record.pubkey_hash in self._issued

    def get_private_key(self, record: KeyRecord) -> ECKey | None:
        """Decrypt the private key for a record of this chain, or return None.

        Raises:
            ChainLocked: If the chain is locked

        """
        with self._lock:
            fernet = self._require_unlocked()
            found = self._index.by_hash(record.pubkey_hash)
        if found is None:
            return None
        secret = fernet.decrypt(found.private_handle)
        return ECKey.from_private_bytes(secret, found.creation_time)

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

    def serialize_to_protobuf(self) -> list[Key]:
        with self._lock:
            return [
                Key(
                    type=KeyType.ENCRYPTED,
                    public_key=record.public_key,
                    creation_timestamp=record.creation_time,
                    issued=record.pubkey_hash in self._issued,
                    encrypted_data=record.private_handle,
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
        return f"EncryptedKeyChain(keys={self.num_keys()}, locked={self.is_locked})"
