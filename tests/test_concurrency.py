"""Concurrent issuance, lookup and filter building."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from conftest import RecordingListener

from pykeychain.basic import BasicKeyChain
from pykeychain.deterministic import DeterministicKeyChain
from pykeychain.listeners import wait_for_user_code
from pykeychain.models import KeyPurpose, KeyRecord

THREADS = 8
ROUNDS = 15


def _issue_and_look_up(
    chain: BasicKeyChain | DeterministicKeyChain,
    start: threading.Barrier,
    purposes: tuple[KeyPurpose, ...],
) -> list[KeyRecord]:
    start.wait()
    issued = []
    for i in range(ROUNDS):
        purpose = purposes[i % len(purposes)]
        record = chain.get_key(purpose)
        # Every issued key must be visible immediately
        assert chain.find_key_from_pub_hash(record.pubkey_hash) == record
        assert chain.find_key_from_pub_key(record.public_key) == record
        bloom = chain.get_filter(max(1, chain.num_bloom_filter_entries()), 0.01, i)
        assert record.pubkey_hash in bloom
        issued.append(record)
    return issued


def _run(
    chain: BasicKeyChain | DeterministicKeyChain, *purposes: KeyPurpose
) -> list[KeyRecord]:
    start = threading.Barrier(THREADS)
    with ThreadPoolExecutor(max_workers=THREADS) as pool:
        futures = [pool.submit(_issue_and_look_up, chain, start, purposes) for _ in range(THREADS)]
        return [record for future in futures for record in future.result(timeout=60)]


class TestConcurrentIssuance:
    """Tests that racing threads never see or produce inconsistent state."""

    def test_deterministic_chain(self, deterministic_chain: DeterministicKeyChain) -> None:
        listener = RecordingListener()
        deterministic_chain.add_event_listener(listener)

        issued = _run(deterministic_chain, KeyPurpose.RECEIVE_FUNDS, KeyPurpose.CHANGE)
        wait_for_user_code()

        assert len({r.pubkey_hash for r in issued}) == THREADS * ROUNDS
        deterministic_chain.check_consistency()
        # Initial lookahead is not announced; everything derived later is, exactly once
        announced = [r.pubkey_hash for r in listener.keys]
        assert len(announced) == len(set(announced))
        assert len(announced) == deterministic_chain.num_keys() - 26

    def test_basic_chain(self, basic_chain: BasicKeyChain) -> None:
        listener = RecordingListener()
        basic_chain.add_event_listener(listener)

        # A direct-store chain only mints for RECEIVE_FUNDS
        issued = _run(basic_chain, KeyPurpose.RECEIVE_FUNDS)
        wait_for_user_code()

        assert len({r.pubkey_hash for r in issued}) == THREADS * ROUNDS
        basic_chain.check_consistency()
        assert basic_chain.num_keys() == THREADS * ROUNDS
        assert len(listener.keys) == THREADS * ROUNDS


class StallFirstCreation(logging.Filter):
    """Holds up the first "Created key" log record, once."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay
        self.stalled = threading.Event()

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.stalled.is_set() and record.getMessage().startswith("Created key"):
            self.stalled.set()
            time.sleep(self.delay)
        return True


class TestEventOrdering:
    """Tests that listeners see keys in the order the chain stores them."""

    def test_stalled_creator_keeps_event_order(
        self, basic_chain: BasicKeyChain, caplog: pytest.LogCaptureFixture
    ) -> None:
        caplog.set_level(logging.INFO, logger="pykeychain.basic")
        chain_logger = logging.getLogger("pykeychain.basic")
        stall = StallFirstCreation(delay=0.3)
        chain_logger.addFilter(stall)
        listener = RecordingListener()
        basic_chain.add_event_listener(listener)
        try:
            first = threading.Thread(
                target=basic_chain.get_key, args=(KeyPurpose.RECEIVE_FUNDS,)
            )
            first.start()
            assert stall.stalled.wait(timeout=5)
            # Creates the second key while the first creator is held up
            basic_chain.get_key(KeyPurpose.RECEIVE_FUNDS)
            first.join(timeout=5)
            wait_for_user_code()
        finally:
            chain_logger.removeFilter(stall)

        assert basic_chain.num_keys() == 2
        assert [r.pubkey_hash for r in listener.keys] == [
            r.pubkey_hash for r in basic_chain.get_keys()
        ]
