# core/hash_index.py

import threading
from typing import List, Tuple

import faiss
import numpy as np


def hash_to_bits(hash_hex: str) -> np.ndarray:
    """Pack a hex hash into a uint8 row vector (8 bits per byte)"""
    return np.frombuffer(bytes.fromhex(hash_hex), dtype=np.uint8).copy()


class HammingIndex:
    """
    FAISS binary index over perceptual hashes of one fixed bit length

    Vectors are stored in insertion order; the FAISS position of a vector
    therefore doubles as its insertion rank and is used to break ties
    between equal distances.
    """

    def __init__(self, bit_length: int):
        if bit_length <= 0 or bit_length % 8 != 0:
            raise ValueError(f"Bit length must be a positive multiple of 8, got {bit_length}")

        self.bit_length = bit_length
        self.index = faiss.IndexBinaryFlat(bit_length)
        self.position_to_id: List[int] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.position_to_id)

    def _to_query(self, hash_hex: str) -> np.ndarray:
        bits = hash_to_bits(hash_hex)
        if bits.shape[0] * 8 != self.bit_length:
            raise ValueError(
                f"Hash has {bits.shape[0] * 8} bits, index expects {self.bit_length}"
            )
        return bits.reshape(1, -1)

    def add(self, record_id: int, hash_hex: str):
        """Append one hash; must be called in insertion order"""
        vector = self._to_query(hash_hex)

        with self._lock:
            self.index.add(vector)
            self.position_to_id.append(record_id)

    def add_many(self, items: List[Tuple[int, str]]):
        """Append (record_id, hash_hex) pairs in the given order"""
        if not items:
            return

        vectors = np.vstack([self._to_query(hash_hex) for _, hash_hex in items])

        with self._lock:
            self.index.add(vectors)
            self.position_to_id.extend(record_id for record_id, _ in items)

    def search(self, hash_hex: str, max_distance: int,
               limit: int = None) -> List[Tuple[int, int]]:
        """
        Find every stored hash within max_distance bits of the query

        Returns:
            List of (record_id, distance) ordered by distance, then by
            insertion order, truncated to limit
        """
        query = self._to_query(hash_hex)

        with self._lock:
            if self.index.ntotal == 0:
                return []

            # Range search keeps distances strictly below the radius
            lims, distances, positions = self.index.range_search(query, max_distance + 1)
            position_to_id = list(self.position_to_id)

        hits = sorted(
            (int(distance), int(position))
            for distance, position in zip(distances[lims[0]:lims[1]],
                                          positions[lims[0]:lims[1]])
            if distance <= max_distance
        )

        if limit is not None:
            hits = hits[:limit]

        return [(position_to_id[position], distance) for distance, position in hits]
