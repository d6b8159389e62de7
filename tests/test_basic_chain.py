"""Tests for the direct-store key chain."""

import pytest
from conftest import RecordingListener

from pykeychain.basic import BasicKeyChain
from pykeychain.bloom import InvalidFilterParameters
from pykeychain.crypto import ECKey, hash160
from pykeychain.deterministic import DeterministicKeyChain
from pykeychain.keychain import ExhaustedKeySpace, KeyChain
from pykeychain.listeners import SAME_THREAD, wait_for_user_code
from pykeychain.models import KeyPurpose, KeyRecord
from pykeychain.protos import KeyType


class TestLookup:
    """Tests for finding keys by public key and pubkey hash."""

    def test_satisfies_protocol(self, basic_chain: BasicKeyChain) -> None:
        assert isinstance(basic_chain, KeyChain)

    def test_lookup_by_hash_and_pubkey(
        self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]
    ) -> None:
        """Test that both lookups return the same record for every key."""
        basic_chain.import_keys(*ec_keys)

        for key in ec_keys:
            by_hash = basic_chain.find_key_from_pub_hash(key.pubkey_hash)
            by_pubkey = basic_chain.find_key_from_pub_key(key.public_key)
            assert by_hash is not None
            assert by_hash == by_pubkey
            assert by_hash.pubkey_hash == hash160(by_hash.public_key)
            assert basic_chain.has_key(by_hash)

    def test_unknown_key_returns_none(
        self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]
    ) -> None:
        basic_chain.import_keys(*ec_keys[:2])
        stranger = ec_keys[4]

        assert basic_chain.find_key_from_pub_hash(stranger.pubkey_hash) is None
        assert basic_chain.find_key_from_pub_key(stranger.public_key) is None
        assert not basic_chain.has_key(KeyRecord.from_key(stranger))

    def test_get_keys_in_insertion_order(
        self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]
    ) -> None:
        basic_chain.import_keys(*ec_keys)
        assert [r.public_key for r in basic_chain.get_keys()] == [k.public_key for k in ec_keys]

    def test_get_private_key(self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]) -> None:
        basic_chain.import_keys(*ec_keys[:2])
        record = basic_chain.find_key_from_pub_key(ec_keys[0].public_key)
        assert record is not None

        assert basic_chain.get_private_key(record) == ec_keys[0]
        assert basic_chain.get_private_key(KeyRecord.from_key(ec_keys[3])) is None

    def test_private_handle_hidden_from_repr(
        self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]
    ) -> None:
        basic_chain.import_key(ec_keys[0])
        record = basic_chain.get_keys()[0]
        assert "private_handle" not in repr(record)
        assert ec_keys[0].private_bytes().hex() not in repr(record)


class TestImport:
    """Tests for adding keys."""

    def test_import_counts(self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]) -> None:
        assert basic_chain.import_keys(*ec_keys[:3]) == 3
        assert basic_chain.num_keys() == 3
        assert basic_chain.num_bloom_filter_entries() == 6

    def test_duplicate_import_is_skipped(
        self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]
    ) -> None:
        basic_chain.import_keys(*ec_keys[:3])

        assert basic_chain.import_keys(*ec_keys[1:4]) == 1
        assert not basic_chain.import_key(ec_keys[0])
        assert basic_chain.num_keys() == 4
        basic_chain.check_consistency()

    def test_duplicate_within_one_batch(
        self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]
    ) -> None:
        assert basic_chain.import_keys(ec_keys[0], ec_keys[0], ec_keys[1]) == 2
        assert basic_chain.num_keys() == 2

    def test_import_fires_one_event_per_batch(
        self,
        basic_chain: BasicKeyChain,
        ec_keys: list[ECKey],
        listener: RecordingListener,
    ) -> None:
        basic_chain.add_event_listener(listener, SAME_THREAD)

        basic_chain.import_keys(*ec_keys[:3])
        basic_chain.import_keys(*ec_keys[:3])

        assert len(listener.events) == 1
        assert [r.public_key for r in listener.events[0].keys] == [
            k.public_key for k in ec_keys[:3]
        ]


class TestIssuance:
    """Tests for get_key."""

    def test_issues_in_insertion_order(
        self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]
    ) -> None:
        basic_chain.import_keys(*ec_keys[:3])

        first = basic_chain.get_key(KeyPurpose.RECEIVE_FUNDS)
        second = basic_chain.get_key(KeyPurpose.CHANGE)

        assert first.public_key == ec_keys[0].public_key
        assert second.public_key == ec_keys[1].public_key
        assert basic_chain.is_issued(first)
        assert not basic_chain.is_issued(basic_chain.get_keys()[2])

    def test_same_key_never_issued_twice(self, basic_chain: BasicKeyChain) -> None:
        issued = [basic_chain.get_key(KeyPurpose.RECEIVE_FUNDS) for _ in range(10)]
        assert len({r.pubkey_hash for r in issued}) == 10

    def test_empty_chain_mints_receive_key(
        self, basic_chain: BasicKeyChain, listener: RecordingListener
    ) -> None:
        """Test that a key created by get_key is announced exactly once."""
        basic_chain.add_event_listener(listener)

        record = basic_chain.get_key(KeyPurpose.RECEIVE_FUNDS)
        wait_for_user_code()

        assert basic_chain.has_key(record)
        assert basic_chain.num_keys() == 1
        assert len(listener.events) == 1
        assert listener.keys == [record]

    def test_issuing_stored_key_fires_no_event(
        self,
        basic_chain: BasicKeyChain,
        ec_keys: list[ECKey],
        listener: RecordingListener,
    ) -> None:
        basic_chain.import_keys(*ec_keys[:2])
        basic_chain.add_event_listener(listener, SAME_THREAD)

        basic_chain.get_key(KeyPurpose.RECEIVE_FUNDS)

        assert listener.events == []

    def test_change_exhausted(self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]) -> None:
        basic_chain.import_keys(ec_keys[0])
        basic_chain.get_key(KeyPurpose.CHANGE)

        with pytest.raises(ExhaustedKeySpace):
            basic_chain.get_key(KeyPurpose.CHANGE)
        assert basic_chain.num_keys() == 1

    def test_mark_key_as_used_skips_key(
        self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]
    ) -> None:
        basic_chain.import_keys(*ec_keys[:2])
        first = basic_chain.get_keys()[0]

        assert basic_chain.mark_key_as_used(first)
        assert basic_chain.get_key(KeyPurpose.RECEIVE_FUNDS).public_key == ec_keys[1].public_key

    def test_mark_unknown_key(self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]) -> None:
        assert not basic_chain.mark_key_as_used(KeyRecord.from_key(ec_keys[0]))


class TestFilter:
    """Tests for get_filter on a direct-store chain."""

    def test_filter_contains_every_identifier(
        self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]
    ) -> None:
        basic_chain.import_keys(*ec_keys)
        bloom = basic_chain.get_filter(basic_chain.num_bloom_filter_entries(), 0.001, 0x1234)

        for record in basic_chain.get_keys():
            assert record.public_key in bloom
            assert record.pubkey_hash in bloom

    def test_filter_is_deterministic(
        self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]
    ) -> None:
        basic_chain.import_keys(*ec_keys)
        assert basic_chain.get_filter(10, 0.01, 77) == basic_chain.get_filter(10, 0.01, 77)

    def test_empty_chain_filter(self, basic_chain: BasicKeyChain) -> None:
        bloom = basic_chain.get_filter(1, 0.01, 0)
        assert not any(bloom.data)

    @pytest.mark.parametrize(
        ("size", "rate", "tweak"),
        [(0, 0.01, 0), (10, 1.5, 0), (10, 0.0, 0), (10, 0.01, -1)],
    )
    def test_invalid_parameters_leave_chain_unchanged(
        self,
        basic_chain: BasicKeyChain,
        ec_keys: list[ECKey],
        size: int,
        rate: float,
        tweak: int,
    ) -> None:
        basic_chain.import_keys(*ec_keys[:2])
        before = basic_chain.serialize_to_protobuf()

        with pytest.raises(InvalidFilterParameters):
            basic_chain.get_filter(size, rate, tweak)

        assert basic_chain.serialize_to_protobuf() == before


class TestSerialization:
    """Tests for serialize_to_protobuf and from_protobuf."""

    def test_serialized_form(self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]) -> None:
        basic_chain.import_keys(*ec_keys[:2])
        basic_chain.get_key(KeyPurpose.RECEIVE_FUNDS)

        keys = basic_chain.serialize_to_protobuf()

        assert [k.type for k in keys] == [KeyType.ORIGINAL, KeyType.ORIGINAL]
        assert [k.public_key for k in keys] == [k.public_key for k in ec_keys[:2]]
        assert keys[0].secret_bytes == ec_keys[0].private_bytes()
        assert [k.issued for k in keys] == [True, False]

    def test_rebuild(self, basic_chain: BasicKeyChain, ec_keys: list[ECKey]) -> None:
        basic_chain.import_keys(*ec_keys[:3])
        basic_chain.get_key(KeyPurpose.RECEIVE_FUNDS)

        restored = BasicKeyChain.from_protobuf(basic_chain.serialize_to_protobuf())

        assert restored.serialize_to_protobuf() == basic_chain.serialize_to_protobuf()
        assert restored.get_key(KeyPurpose.RECEIVE_FUNDS).public_key == ec_keys[1].public_key

    def test_rebuild_rejects_deterministic_keys(
        self, deterministic_chain: DeterministicKeyChain
    ) -> None:
        with pytest.raises(ValueError, match="basic chain"):
            BasicKeyChain.from_protobuf(deterministic_chain.serialize_to_protobuf())
