from __future__ import annotations

import hashlib
from typing import Sequence, TypeVar


T = TypeVar("T")

_U64 = 1 << 64

# Seeds are packed as signed 128-bit integers
SEED_MIN = -(1 << 127)
SEED_MAX = (1 << 127) - 1


class DeterministicPRNG:
    """Reproducible random stream for corruption choices.

    Bytes come from BLAKE2b in counter mode over (label, seed), so each
    corruption type draws its own sequence and the same seed always yields
    the same offsets, masks and entry picks.
    """

    def __init__(self, seed: int, label: str = ""):
        if not SEED_MIN <= seed <= SEED_MAX:
            raise ValueError(f"seed {seed} does not fit in 128 bits")
        self._key = label.encode("utf-8") + b"\x00" + int(seed).to_bytes(16, "little", signed=True)
        self._counter = 0
        self._pending = b""

    def read(self, n: int) -> bytes:
        while len(self._pending) < n:
            block = self._key + self._counter.to_bytes(8, "little")
            self._pending += hashlib.blake2b(block, digest_size=32).digest()
            self._counter += 1
        out, self._pending = self._pending[:n], self._pending[n:]
        return out

    def next_uint(self, modulus: int) -> int:
        """Uniform integer in [0, modulus); 0 when modulus is not positive."""
        if modulus <= 0:
            return 0
        limit = _U64 - (_U64 % modulus)
        while True:
            v = int.from_bytes(self.read(8), "little")
            if v < limit:
                return v % modulus

    def nonzero_mask(self, n: int) -> bytes:
        # XOR masks must change every byte they cover
        out = bytearray()
        while len(out) < n:
            out += self.read(n - len(out)).replace(b"\x00", b"")
        return bytes(out)

    def choice(self, items: Sequence[T]) -> T:
        if not items:
            raise IndexError("cannot choose from an empty sequence")
        return items[self.next_uint(len(items))]
