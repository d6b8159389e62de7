"""Type definitions for pykeychain.

This module contains NewType definitions for the byte strings that identify
keys, so lookups by raw public key and by pubkey hash cannot be mixed up.
"""

from typing import NewType

PubkeyBytes = NewType("PubkeyBytes", bytes)
"""SEC1 encoded secp256k1 public key (33 bytes compressed, 65 uncompressed)."""

PubkeyHash = NewType("PubkeyHash", bytes)
"""HASH160 of a public key (20 bytes), the address form."""

Tweak = NewType("Tweak", int)
"""Unsigned 32-bit salt mixed into every Bloom filter hash function."""
