"""BIP37 Bloom filters.

Filters built here are byte-for-byte compatible with the ``filterload``
message understood by Bitcoin Core peers: the same sizing formulas, the same
murmur3 seeding and the same serialized layout. Two filters can be merged
only when they share length, hash function count, tweak and flags, which is
why ``KeyChain.get_filter`` takes all of those from the caller instead of
choosing them itself.
"""

from __future__ import annotations

import logging
import math
import struct
import time
from enum import IntEnum
from typing import TYPE_CHECKING

from .metrics import BLOOM_FILTER_BUILD_DURATION_SECONDS, BLOOM_FILTER_BUILDS_TOTAL

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .keychain import KeyChain

logger = logging.getLogger(__name__)

# Protocol maxima enforced by peers on filterload
MAX_BLOOM_FILTER_SIZE = 36_000
MAX_HASH_FUNCS = 50

_LN2 = math.log(2)
_LN2_SQUARED = _LN2 * _LN2
_MASK32 = 0xFFFFFFFF
_SEED_MULTIPLIER = 0xFBA4C795


class InvalidFilterParameters(ValueError):
    """Filter size, false-positive rate or tweak out of range."""


class BloomUpdate(IntEnum):
    """nFlags: how a peer updates the filter when it matches an output."""

    UPDATE_NONE = 0
    UPDATE_ALL = 1
    UPDATE_P2PUBKEY_ONLY = 2


def _rotl32(value: int, shift: int) -> int:
    return ((value << shift) | (value >> (32 - shift))) & _MASK32


def murmur3_32(data: bytes, seed: int) -> int:
    """MurmurHash3 x86 32-bit."""
    c1 = 0xCC9E2D51
    c2 = 0x1B873593

    h1 = seed & _MASK32
    length = len(data)
    block_end = length & ~3

    for i in range(0, block_end, 4):
        k1 = int.from_bytes(data[i : i + 4], "little")
        k1 = (k1 * c1) & _MASK32
        k1 = _rotl32(k1, 15)
        k1 = (k1 * c2) & _MASK32

        h1 ^= k1
        h1 = _rotl32(h1, 13)
        h1 = (h1 * 5 + 0xE6546B64) & _MASK32

    if length & 3:
        k1 = int.from_bytes(data[block_end:], "little")
        k1 = (k1 * c1) & _MASK32
        k1 = _rotl32(k1, 15)
        k1 = (k1 * c2) & _MASK32
        h1 ^= k1

    h1 ^= length & _MASK32
    h1 ^= h1 >> 16
    h1 = (h1 * 0x85EBCA6B) & _MASK32
    h1 ^= h1 >> 13
    h1 = (h1 * 0xC2B2AE35) & _MASK32
    h1 ^= h1 >> 16
    return h1


def validate_filter_parameters(size: int, false_positive_rate: float, tweak: int) -> None:
    """Reject parameters no filter can be built from.

    Raises:
        InvalidFilterParameters: If size is not a positive integer, the rate is
            not strictly between 0 and 1, or the tweak does not fit in 32 bits

    """
    if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
        raise InvalidFilterParameters(f"size must be a positive integer, got {size!r}")

    if isinstance(false_positive_rate, bool) or not isinstance(false_positive_rate, (int, float)):
        raise InvalidFilterParameters(
            f"false_positive_rate must be a number, got {false_positive_rate!r}"
        )
    if not (math.isfinite(false_positive_rate) and 0.0 < false_positive_rate < 1.0):
        raise InvalidFilterParameters(
            f"false_positive_rate must be in (0, 1), got {false_positive_rate!r}"
        )

    if isinstance(tweak, bool) or not isinstance(tweak, int) or not 0 <= tweak <= _MASK32:
        raise InvalidFilterParameters(f"tweak must be an unsigned 32-bit integer, got {tweak!r}")


def optimal_parameters(size: int, false_positive_rate: float) -> tuple[int, int]:
    """Return (filter length in bytes, number of hash functions).

    Both values are capped at the protocol maxima; the resulting filter may
    then have a higher false-positive rate than requested.
    """
    bits = int(-1 / _LN2_SQUARED * size * math.log(false_positive_rate))
    num_bytes = max(1, min(bits, MAX_BLOOM_FILTER_SIZE * 8) // 8)

    hash_funcs = int(num_bytes * 8 / size * _LN2)
    hash_funcs = max(1, min(hash_funcs, MAX_HASH_FUNCS))
    return num_bytes, hash_funcs


def _write_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes((value,))
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= _MASK32:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


def _read_varint(data: bytes, offset: int) -> tuple[int, int]:
    if offset >= len(data):
        raise ValueError("Truncated varint")
    prefix = data[offset]
    if prefix < 0xFD:
        return prefix, offset + 1
    fmt, width = {0xFD: ("<H", 2), 0xFE: ("<I", 4), 0xFF: ("<Q", 8)}[prefix]
    end = offset + 1 + width
    if end > len(data):
        raise ValueError("Truncated varint")
    return struct.unpack(fmt, data[offset + 1 : end])[0], end


class BloomFilter:
    """A BIP37 Bloom filter.

    Use ``BloomFilter.create`` (or ``build_filter``) to size a filter for an
    expected number of elements; the plain constructor takes the raw fields as
    they appear on the wire.
    """

    __slots__ = ("_data", "hash_funcs", "tweak", "flags")

    def __init__(
        self,
        data: bytes | bytearray,
        hash_funcs: int,
        tweak: int,
        flags: BloomUpdate = BloomUpdate.UPDATE_P2PUBKEY_ONLY,
    ) -> None:
        if not data:
            raise ValueError("Filter data must not be empty")
        self._data = bytearray(data)
        self.hash_funcs = hash_funcs
        self.tweak = tweak
        self.flags = BloomUpdate(flags)

    @classmethod
    def create(
        cls,
        size: int,
        false_positive_rate: float,
        tweak: int,
        flags: BloomUpdate = BloomUpdate.UPDATE_P2PUBKEY_ONLY,
    ) -> BloomFilter:
        """Create an empty filter sized for ``size`` elements.

        Raises:
            InvalidFilterParameters: If the parameters are out of range

        """
        validate_filter_parameters(size, false_positive_rate, tweak)
        num_bytes, hash_funcs = optimal_parameters(size, false_positive_rate)
        return cls(bytes(num_bytes), hash_funcs, tweak, flags)

    @property
    def data(self) -> bytes:
        return bytes(self._data)

    @property
    def num_bits(self) -> int:
        return len(self._data) * 8

    def _bit_index(self, hash_num: int, item: bytes) -> int:
        seed = (hash_num * _SEED_MULTIPLIER + self.tweak) & _MASK32
        return murmur3_32(item, seed) % (len(self._data) * 8)

    def insert(self, item: bytes) -> None:
        for hash_num in range(self.hash_funcs):
            index = self._bit_index(hash_num, item)
            self._data[index >> 3] |= 1 << (index & 7)

    def contains(self, item: bytes) -> bool:
        for hash_num in range(self.hash_funcs):
            index = self._bit_index(hash_num, item)
            if not self._data[index >> 3] & (1 << (index & 7)):
                return False
        return True

    def __contains__(self, item: bytes) -> bool:
        return self.contains(item)

    def is_compatible(self, other: BloomFilter) -> bool:
        return (
            len(self._data) == len(other._data)
            and self.hash_funcs == other.hash_funcs
            and self.tweak == other.tweak
            and self.flags == other.flags
        )

    def merge(self, other: BloomFilter) -> BloomFilter:
        """Return a new filter matching everything either filter matches.

        Raises:
            ValueError: If the filters differ in size, hash count, tweak or flags

        """
        if not self.is_compatible(other):
            raise ValueError(
                "Cannot merge Bloom filters built with different size, "
                "hash function count, tweak or flags"
            )
        merged = bytes(a | b for a, b in zip(self._data, other._data, strict=True))
        return BloomFilter(merged, self.hash_funcs, self.tweak, self.flags)

    def matches_all(self) -> bool:
        """True when every bit is set; such a filter hides nothing from the peer."""
        return all(b == 0xFF for b in self._data)

    def get_false_positive_rate(self, elements: int) -> float:
        """Expected false-positive rate once ``elements`` items are inserted."""
        return (1 - math.exp(-self.hash_funcs * elements / self.num_bits)) ** self.hash_funcs

    def is_within_protocol_limits(self) -> bool:
        return len(self._data) <= MAX_BLOOM_FILTER_SIZE and self.hash_funcs <= MAX_HASH_FUNCS

    def serialize(self) -> bytes:
        """Serialize to the ``filterload`` payload layout."""
        return (
            _write_varint(len(self._data))
            + bytes(self._data)
            + struct.pack("<IIB", self.hash_funcs, self.tweak, self.flags)
        )

    @classmethod
    def deserialize(cls, payload: bytes) -> BloomFilter:
        """Parse a ``filterload`` payload.

        Raises:
            ValueError: If the payload is truncated, has trailing bytes, or exceeds
                the protocol limits on filter size and hash function count

        """
        length, offset = _read_varint(payload, 0)
        end = offset + length
        if len(payload) != end + 9:
            raise ValueError(
                f"Invalid filterload payload: expected {end + 9} bytes, got {len(payload)}"
            )
        hash_funcs, tweak, flags = struct.unpack("<IIB", payload[end:])
        bloom = cls(payload[offset:end], hash_funcs, tweak, BloomUpdate(flags))
        if not bloom.is_within_protocol_limits():
            raise ValueError(
                f"Filter exceeds protocol limits: {length} bytes, {hash_funcs} hash functions "
                f"(max {MAX_BLOOM_FILTER_SIZE} bytes, {MAX_HASH_FUNCS} hash functions)"
            )
        return bloom

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BloomFilter):
            return NotImplemented
        return self.is_compatible(other) and self._data == other._data

    def __repr__(self) -> str:
        return (
            f"BloomFilter(bytes={len(self._data)}, hash_funcs={self.hash_funcs}, "
            f"tweak={self.tweak}, flags={self.flags.name})"
        )


def build_filter(
    identifiers: Iterable[bytes],
    size: int,
    false_positive_rate: float,
    tweak: int,
    flags: BloomUpdate = BloomUpdate.UPDATE_P2PUBKEY_ONLY,
) -> BloomFilter:
    """Build a filter sized for ``size`` elements containing every identifier.

    ``identifiers`` should be a snapshot; nothing here takes a chain lock.

    Raises:
        InvalidFilterParameters: If the parameters are out of range

    """
    bloom = BloomFilter.create(size, false_positive_rate, tweak, flags)

    start_time = time.perf_counter()
    count = 0
    for item in identifiers:
        bloom.insert(item)
        count += 1
    duration = time.perf_counter() - start_time

    BLOOM_FILTER_BUILDS_TOTAL.inc()
    BLOOM_FILTER_BUILD_DURATION_SECONDS.observe(duration)
    logger.debug(
        f"Built Bloom filter with {count} entries: {len(bloom.data)} bytes, "
        f"{bloom.hash_funcs} hash functions"
    )
    if count > size:
        logger.warning(
            f"Bloom filter sized for {size} elements holds {count}; "
            "false-positive rate will exceed the requested value"
        )
    return bloom


def merge_filters(
    chains: Iterable[KeyChain],
    false_positive_rate: float,
    tweak: int,
) -> BloomFilter:
    """Build one filter covering several chains.

    Every chain builds with the same size (the sum of their
    ``num_bloom_filter_entries``, at least 1) and tweak so the results can be
    ORed together; the result does not depend on chain order.

    Raises:
        InvalidFilterParameters: If no chains are given or parameters are out of range

    """
    chains = list(chains)
    if not chains:
        raise InvalidFilterParameters("At least one key chain is required")

    size = max(1, sum(chain.num_bloom_filter_entries() for chain in chains))
    validate_filter_parameters(size, false_positive_rate, tweak)

    merged = chains[0].get_filter(size, false_positive_rate, tweak)
    for chain in chains[1:]:
        merged = merged.merge(chain.get_filter(size, false_positive_rate, tweak))
    return merged
