"""Atomic file persistence for serialized key chains."""

from __future__ import annotations

import logging
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import TYPE_CHECKING

import msgspec

from .protos import Key, decode_keys, encode_keys

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .keychain import KeyChain

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Error reading or writing a key file."""


def save_keys(path: Path, keys: Sequence[Key]) -> None:
    """Atomically write serialized keys to ``path``.

    The data goes to a temp file in the same directory which is then renamed
    over ``path``, so readers see either the old or the new file.

    Raises:
        PersistenceError: If the file could not be written

    """
    payload = encode_keys(keys)
    temp_path: Path | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=path.parent,
            suffix=".tmp",
            delete=False,
        ) as f:
            temp_path = Path(f.name)
            f.write(payload)

        temp_path.replace(path)
    except OSError as e:
        logger.exception(f"Failed to save keys to disk: {e!r}")
        if temp_path:
            with suppress(OSError):
                temp_path.unlink()
        raise PersistenceError(f"Failed to save keys to {path}: {e!r}") from e

    logger.info(f"Saved {len(keys)} key(s) to {path.name}")


def save_chain(path: Path, chain: KeyChain) -> int:
    """Serialize ``chain`` and save it atomically.

    Returns:
        Number of keys written

    """
    keys = chain.serialize_to_protobuf()
    save_keys(path, keys)
    return len(keys)


def load_keys(path: Path) -> list[Key]:
    """Read keys written by ``save_keys``.

    Raises:
        PersistenceError: If the file is missing, unreadable or corrupt

    """
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        raise PersistenceError(f"Key file not found: {path}")
    except OSError as e:
        raise PersistenceError(f"Failed to read key file {path}: {e!r}") from e

    try:
        keys = decode_keys(data)
    except msgspec.DecodeError as e:
        raise PersistenceError(f"Invalid key file {path.name}: {e}") from e

    logger.info(f"Loaded {len(keys)} key(s) from {path.name}")
    return keys
