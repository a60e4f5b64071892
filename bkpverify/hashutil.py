from __future__ import annotations

from typing import BinaryIO, Callable, Dict

from Cryptodome.Hash import BLAKE2b, BLAKE2s, SHA3_256, SHA256, SHA512

from .constants import READ_BLOCK_SIZE
from .errors import UnsupportedAlgorithmError


_FACTORIES: Dict[str, Callable[[], object]] = {
    "sha256": SHA256.new,
    "sha512": SHA512.new,
    "sha3-256": SHA3_256.new,
    "blake2b": lambda: BLAKE2b.new(digest_bits=512),
    "blake2s": lambda: BLAKE2s.new(digest_bits=256),
}

SUPPORTED_ALGORITHMS = tuple(sorted(_FACTORIES))


def canonical_algorithm(name: str) -> str:
    """Map an algorithm identifier onto its canonical registry name.

    Case, '_' versus '-', and a dash after the family name are ignored, so
    "SHA-256", "sha_256" and "sha256" all resolve to "sha256".
    """
    if not isinstance(name, str) or not name.strip():
        raise UnsupportedAlgorithmError(f"unsupported checksum algorithm: {name!r}")
    key = name.strip().lower().replace("_", "-")
    if key.startswith("sha-"):
        key = "sha" + key[4:]
    if key == "sha3256":
        key = "sha3-256"
    if key not in _FACTORIES:
        raise UnsupportedAlgorithmError(
            f"unsupported checksum algorithm: {name!r} (supported: {', '.join(SUPPORTED_ALGORITHMS)})"
        )
    return key


def new_hasher(algorithm: str):
    return _FACTORIES[canonical_algorithm(algorithm)]()


def digest_stream(fh: BinaryIO, algorithm: str) -> str:
    hasher = new_hasher(algorithm)
    for block in iter(lambda: fh.read(READ_BLOCK_SIZE), b""):
        hasher.update(block)
    return hasher.hexdigest()


def digest_bytes(data: bytes, algorithm: str) -> str:
    hasher = new_hasher(algorithm)
    hasher.update(data)
    return hasher.hexdigest()
