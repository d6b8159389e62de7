"""Test fixtures and utilities."""

import threading
from collections.abc import Generator

import pytest

from pykeychain.basic import BasicKeyChain
from pykeychain.config import Config
from pykeychain.crypto import ECKey
from pykeychain.deterministic import DeterministicKeyChain
from pykeychain.encrypted import EncryptedKeyChain
from pykeychain.listeners import wait_for_user_code
from pykeychain.models import KeyAddedEvent, KeyRecord

# BIP32 test vector 1
BIP32_SEED = bytes.fromhex("000102030405060708090a0b0c0d0e0f")
TEST_PASSWORD = "correct horse battery staple"


class RecordingListener:
    """Listener that remembers every event it receives."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[KeyAddedEvent] = []

    def on_keys_added(self, event: KeyAddedEvent) -> None:
        with self._lock:
            self.events.append(event)

    @property
    def keys(self) -> list[KeyRecord]:
        with self._lock:
            return [key for event in self.events for key in event.keys]


@pytest.fixture(autouse=True)
def drain_user_thread() -> Generator[None, None, None]:
    """Make sure callbacks queued by one test never run during the next."""
    yield
    wait_for_user_code()


@pytest.fixture
def config() -> Config:
    """Create a test configuration with a small lookahead and cheap key stretching."""
    return Config(
        log_level="DEBUG",
        lookahead_size=10,
        lookahead_threshold=3,
        pbkdf2_iterations=1000,
    )


@pytest.fixture
def ec_keys() -> list[ECKey]:
    """Five fresh random keys."""
    return [ECKey.generate() for _ in range(5)]


@pytest.fixture
def basic_chain() -> BasicKeyChain:
    """Create an empty direct-store chain."""
    return BasicKeyChain()


@pytest.fixture
def deterministic_chain(config: Config) -> DeterministicKeyChain:
    """Create a chain from the BIP32 test vector seed."""
    return DeterministicKeyChain.from_seed(BIP32_SEED, config)


@pytest.fixture
def encrypted_chain(config: Config) -> EncryptedKeyChain:
    """Create an empty, unlocked encrypted chain."""
    return EncryptedKeyChain.from_config(TEST_PASSWORD, config)


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()
