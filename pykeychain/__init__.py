"""Key chains with BIP37 Bloom filter generation for Bitcoin wallets."""

__version__ = "0.1.0"
