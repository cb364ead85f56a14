# malheur/features/hashing.py
"""
Feature hashing for unbounded token vocabularies.

Tokens are mapped into a fixed index space ``[0, capacity)``. Without a
lookup table the mapping is a pure function of the token (salted blake2b
reduced modulo the capacity). With a lookup table every new token claims a
slot by hash-and-probe, and the table keeps the reverse mapping for
inspection. The table never grows: once every slot is taken, new tokens
share the slot their hash points at. Colliding tokens are indistinguishable
downstream; this trades precision for bounded memory.
"""
from __future__ import annotations

import hashlib
import threading
from typing import Dict, Iterable, List, Optional, Union

from ..errors import ConfigError
from ..utils.logging_setup import get_logger

logger = get_logger(__name__)

Token = Union[str, bytes]

DEFAULT_CAPACITY = 1 << 24
DEFAULT_SEED = 0x6D61_6C68  # "malh"


class FeatureHasher:
    """
    Maps tokens to bounded integer feature indices.

    The hasher is created once per run and passed to every vector-building
    call. Registration of new tokens is serialized by a lock; lookups of
    known tokens take no lock.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        lookup_table: bool = False,
        seed: int = DEFAULT_SEED,
    ) -> None:
        """
        Initialize the hasher.

        Args:
            capacity: Size of the index space (number of feature dimensions)
            lookup_table: Retain a token -> slot table with reverse lookup
            seed: Salt for the hash function
        """
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
            raise ConfigError(
                f"Feature table capacity must be a positive integer, got {capacity!r}",
                option="features.table_capacity",
                value=capacity,
            )
        self.capacity = capacity
        self.lookup_table = bool(lookup_table)
        self.seed = seed
        self._salt = (seed & 0xFFFFFFFFFFFFFFFF).to_bytes(8, "little")

        self._lock = threading.Lock()
        self._table: Dict[Token, int] = {}
        self._slots: Dict[int, List[Token]] = {}
        self.collisions = 0
        self._exhausted_reported = False

    # --- public API ---

    def digest(self, token: Token) -> int:
        """Return the 64-bit salted hash of a token."""
        data = token if isinstance(token, bytes) else str(token).encode("utf-8", errors="surrogateescape")
        hv = hashlib.blake2b(data, digest_size=8, salt=self._salt).digest()
        return int.from_bytes(hv, "little")

    def index(self, token: Token) -> int:
        """Return the feature index of a token in ``[0, capacity)``."""
        if not self.lookup_table:
            return self.digest(token) % self.capacity

        slot = self._table.get(token)
        if slot is not None:
            return slot

        with self._lock:
            # Another thread may have registered it while we waited
            slot = self._table.get(token)
            if slot is None:
                slot = self._claim(token)
        return slot

    def register(self, tokens: Iterable[Token]) -> None:
        """Register tokens in iteration order (fixes slot assignment order)."""
        for token in tokens:
            self.index(token)

    def tokens_for(self, index: int) -> List[Token]:
        """Reverse lookup: tokens that were assigned to a slot."""
        return list(self._slots.get(index, ()))

    def lookup(self, token: Token) -> Optional[int]:
        """Return the slot of a registered token without registering it."""
        if not self.lookup_table:
            return self.index(token)
        return self._table.get(token)

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, token: Token) -> bool:
        return token in self._table

    @property
    def exhausted(self) -> bool:
        """True when every slot of the table is occupied."""
        return self.lookup_table and len(self._slots) >= self.capacity

    def get_stats(self) -> Dict[str, int]:
        """Get table usage statistics."""
        return {
            "capacity": self.capacity,
            "lookup_table": self.lookup_table,
            "tokens": len(self._table),
            "slots": len(self._slots),
            "collisions": self.collisions,
        }

    def clear(self) -> None:
        """Drop all registered tokens."""
        with self._lock:
            self._table.clear()
            self._slots.clear()
            self.collisions = 0
            self._exhausted_reported = False

    # --- internals ---

    def _claim(self, token: Token) -> int:
        home = self.digest(token) % self.capacity

        if len(self._slots) < self.capacity:
            # Linear probing; a free slot exists somewhere
            slot = home
            while slot in self._slots:
                slot = (slot + 1) % self.capacity
            self._slots[slot] = [token]
        else:
            slot = home
            self._slots[slot].append(token)
            self.collisions += 1
            if not self._exhausted_reported:
                self._exhausted_reported = True
                logger.warning(
                    f"Feature table exhausted ({self.capacity} slots); "
                    f"further tokens share dimensions"
                )
            if self.collisions == 1:
                logger.debug(f"First token collision at slot {slot}")

        self._table[token] = slot
        return slot
