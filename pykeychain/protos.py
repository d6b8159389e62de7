"""Serialized form of a single key, as handed to the persistence layer.

Field names follow the bitcoinj ``Key`` protobuf message; the encoding is
msgpack via msgspec.
"""

from collections.abc import Sequence
from enum import IntEnum

import msgspec


class KeyType(IntEnum):
    """How the private part of a serialized key is stored."""

    ORIGINAL = 1
    ENCRYPTED = 2
    DETERMINISTIC_KEY = 4


class Key(msgspec.Struct, frozen=True, omit_defaults=True):
    """One serialized key record.

    ``secret_bytes`` is only set for unencrypted direct-store keys,
    ``encrypted_data`` only for encrypted ones and ``path`` only for keys
    derived from a seed.
    """

    type: KeyType
    public_key: bytes
    creation_timestamp: int
    issued: bool = False
    secret_bytes: bytes | None = None
    encrypted_data: bytes | None = None
    path: list[int] | None = None


_encoder = msgspec.msgpack.Encoder()
_decoder = msgspec.msgpack.Decoder(list[Key])


def encode_keys(keys: Sequence[Key]) -> bytes:
    return _encoder.encode(list(keys))


def decode_keys(data: bytes) -> list[Key]:
    """Decode a list of keys.

    Raises:
        msgspec.DecodeError: If the data is malformed or does not match the schema

    """
    return _decoder.decode(data)
