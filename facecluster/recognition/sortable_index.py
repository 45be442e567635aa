"""Bit-interleaved sortable hashing of embeddings.

This is geohashing generalized to N dimensions: every coordinate is quantized
to ``bits`` unsigned bits, then bit plane ``i`` of every coordinate is emitted
in turn (most significant plane first). Points close in embedding space tend to
share long key prefixes, so a flat sorted list of keys supports approximate
range lookups with a binary search.

Recall is traded for O(log n) lookups: two near-identical embeddings whose keys
diverge on a high-order plane will be missed. Use the index as a pre-filter
against a small set of known embeddings and confirm hits with the true
distance.
"""

from __future__ import annotations

import bisect
import logging
from typing import Generic, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

from facecluster.config import IndexConfig

LOGGER = logging.getLogger("facecluster.recognition.index")

T = TypeVar("T")


def key_distance(a: str, b: str) -> int:
    return abs(int(a, 16) - int(b, 16))


def nearest_known(key: str, known_sorted_keys: Sequence[str], max_distance: int) -> Optional[str]:
    """Return the closer of the two sorted neighbours of ``key`` within ``max_distance``.

    Only the immediate predecessor and successor of the insertion point are
    inspected. Ties go to the predecessor.
    """
    if not known_sorted_keys:
        return None
    idx = bisect.bisect_left(known_sorted_keys, key)
    best: Optional[str] = None
    best_distance = max_distance
    for neighbour_idx in (idx - 1, idx):
        if 0 <= neighbour_idx < len(known_sorted_keys):
            candidate = known_sorted_keys[neighbour_idx]
            distance = key_distance(key, candidate)
            if distance < best_distance:
                best, best_distance = candidate, distance
    return best


class SortableEmbeddingIndex:
    """Encodes fixed-length embeddings into fixed-width sortable hex keys."""

    def __init__(self, dim: int, config: Optional[IndexConfig] = None) -> None:
        config = config or IndexConfig()
        if dim <= 0:
            raise ValueError("Embedding dimension must be positive")
        if not 1 <= config.bits <= 32:
            raise ValueError("Quantization bits must be within [1, 32]")
        if config.high <= config.low:
            raise ValueError("Index range high must exceed low")
        self.dim = dim
        self.bits = config.bits
        self.low = config.low
        self.high = config.high
        self.width = -(-dim * config.bits // 4)
        # A difference confined to the lowest ``tolerance_planes`` planes stays below this.
        self.max_distance = 1 << (dim * config.tolerance_planes)

    def quantize(self, embedding: np.ndarray) -> np.ndarray:
        vec = np.asarray(embedding, dtype=np.float64).reshape(-1)
        if vec.size != self.dim:
            raise ValueError(f"Expected embedding of size {self.dim}, got {vec.size}")
        if not np.all(np.isfinite(vec)):
            raise ValueError("Embedding contains non-finite values")
        levels = (1 << self.bits) - 1
        scaled = (np.clip(vec, self.low, self.high) - self.low) / (self.high - self.low)
        return np.rint(scaled * levels).astype(np.uint64)

    def hash(self, embedding: np.ndarray) -> str:
        quantized = self.quantize(embedding)
        value = 0
        for plane in range(self.bits - 1, -1, -1):
            plane_bits = (quantized >> np.uint64(plane)) & np.uint64(1)
            for bit in plane_bits.tolist():
                value = (value << 1) | int(bit)
        return format(value, f"0{self.width}x")

    def nearest_known(self, key: str, known_sorted_keys: Sequence[str]) -> Optional[str]:
        return nearest_known(key, known_sorted_keys, self.max_distance)


class KnownHashTable(Generic[T]):
    """Sorted table of known keys, each carrying a payload."""

    def __init__(self, index: SortableEmbeddingIndex) -> None:
        self.index = index
        self._keys: List[str] = []
        self._payloads: List[T] = []

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def keys(self) -> List[str]:
        return list(self._keys)

    def add(self, embedding: np.ndarray, payload: T) -> str:
        key = self.index.hash(embedding)
        pos = bisect.bisect_right(self._keys, key)
        self._keys.insert(pos, key)
        self._payloads.insert(pos, payload)
        return key

    def lookup(self, embedding: np.ndarray) -> Optional[Tuple[str, T]]:
        key = self.index.hash(embedding)
        hit = self.index.nearest_known(key, self._keys)
        if hit is None:
            return None
        pos = bisect.bisect_left(self._keys, hit)
        LOGGER.debug("Index hit %s for query %s", hit[:12], key[:12])
        return hit, self._payloads[pos]
