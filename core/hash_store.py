# core/hash_store.py

"""
Image hash records and the storage contract used by the duplicate detector.

A store offers three operations: exact lookup by cryptographic hash,
nearest-neighbour lookup by perceptual hash within a Hamming radius, and
insert-if-absent. Records are immutable and never deleted by the engine.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.exceptions import DuplicateCryptographicHash, InvalidInput
from core.hash_index import HammingIndex
from core.hashing import DEFAULT_PROFILE, get_profile


@dataclass(frozen=True)
class Provenance:
    """Where an image came from; opaque identifiers kept for audit"""
    transaction_id: Optional[str] = None
    payment_reference: Optional[str] = None
    user_id: Optional[str] = None
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)


@dataclass(frozen=True)
class ImageHashRecord:
    """One entry per distinct image ever submitted"""
    id: int
    cryptographic_hash: str
    perceptual_hash: str
    hash_algorithm: str
    created_at: datetime
    image_url: Optional[str] = None
    provenance: Provenance = field(default_factory=Provenance)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'cryptographic_hash': self.cryptographic_hash,
            'perceptual_hash': self.perceptual_hash,
            'hash_algorithm': self.hash_algorithm,
            'created_at': self.created_at.isoformat(),
            'image_url': self.image_url,
            'provenance': self.provenance.to_dict(),
            'metadata': dict(self.metadata),
        }


class MonotonicClock:
    """UTC timestamps that strictly increase between calls"""

    def __init__(self):
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def observe(self, timestamp: datetime):
        """Never hand out anything at or before an already stored timestamp"""
        with self._lock:
            if self._last is None or timestamp > self._last:
                self._last = timestamp

    def now(self) -> datetime:
        with self._lock:
            current = datetime.now(timezone.utc)
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current


class HashStore(ABC):
    """Durable index over ImageHashRecord"""

    @abstractmethod
    def exact_lookup(self, cryptographic_hash: str) -> Optional[ImageHashRecord]:
        """Return the record with this cryptographic hash, or None"""

    @abstractmethod
    def nearest_lookup(self,
                       perceptual_hash: str,
                       max_hamming_distance: int,
                       limit: int = 1,
                       hash_algorithm: str = DEFAULT_PROFILE.name
                       ) -> List[Tuple[ImageHashRecord, int]]:
        """
        Records within max_hamming_distance of perceptual_hash

        Ordered by distance, ties broken by insertion order, truncated to
        limit. Only records hashed with hash_algorithm are compared.
        """

    @abstractmethod
    def insert(self,
               cryptographic_hash: str,
               perceptual_hash: str,
               image_url: Optional[str] = None,
               provenance: Optional[Provenance] = None,
               metadata: Optional[Dict[str, Any]] = None,
               hash_algorithm: str = DEFAULT_PROFILE.name) -> ImageHashRecord:
        """Insert a new record; raises DuplicateCryptographicHash if present"""

    @abstractmethod
    def get_by_ids(self, ids: Iterable[int]) -> List[ImageHashRecord]:
        """Records for the ids that exist, in requested order"""

    @abstractmethod
    def count(self) -> int:
        """Number of stored records"""

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @staticmethod
    def _check_lookup_args(max_hamming_distance: int, limit: int):
        if not isinstance(max_hamming_distance, int) or max_hamming_distance < 0:
            raise InvalidInput(
                "max_hamming_distance must be a non-negative integer",
                {'max_hamming_distance': max_hamming_distance},
            )
        if not isinstance(limit, int) or limit < 1:
            raise InvalidInput("limit must be a positive integer", {'limit': limit})

    @staticmethod
    def _check_perceptual_hash(perceptual_hash: str, hash_algorithm: str):
        profile = get_profile(hash_algorithm)
        if not perceptual_hash or len(perceptual_hash) != profile.hex_length:
            raise InvalidInput(
                "Perceptual hash length does not match its profile",
                {'hash_algorithm': hash_algorithm,
                 'expected_length': profile.hex_length,
                 'actual_length': len(perceptual_hash or '')},
            )
        try:
            bytes.fromhex(perceptual_hash)
        except ValueError:
            raise InvalidInput(
                "Perceptual hash is not a hex string",
                {'perceptual_hash': perceptual_hash},
            ) from None
        return profile


class InMemoryHashStore(HashStore):
    """
    Process-local store, useful for tests and standalone use
    """

    def __init__(self):
        self._records: Dict[int, ImageHashRecord] = {}
        self._by_cryptographic_hash: Dict[str, int] = {}
        self._indexes: Dict[str, HammingIndex] = {}
        self._next_id = 1
        self._clock = MonotonicClock()
        self._lock = threading.RLock()

    def exact_lookup(self, cryptographic_hash: str) -> Optional[ImageHashRecord]:
        with self._lock:
            record_id = self._by_cryptographic_hash.get(cryptographic_hash)
            return self._records.get(record_id) if record_id is not None else None

    def nearest_lookup(self, perceptual_hash, max_hamming_distance,
                       limit=1, hash_algorithm=DEFAULT_PROFILE.name):
        self._check_lookup_args(max_hamming_distance, limit)
        self._check_perceptual_hash(perceptual_hash, hash_algorithm)

        index = self._indexes.get(hash_algorithm)
        if index is None:
            return []

        hits = index.search(perceptual_hash, max_hamming_distance, limit)
        with self._lock:
            return [(self._records[record_id], distance) for record_id, distance in hits]

    def insert(self, cryptographic_hash, perceptual_hash, image_url=None,
               provenance=None, metadata=None, hash_algorithm=DEFAULT_PROFILE.name):
        profile = self._check_perceptual_hash(perceptual_hash, hash_algorithm)

        with self._lock:
            if cryptographic_hash in self._by_cryptographic_hash:
                raise DuplicateCryptographicHash(cryptographic_hash)

            record = ImageHashRecord(
                id=self._next_id,
                cryptographic_hash=cryptographic_hash,
                perceptual_hash=perceptual_hash,
                hash_algorithm=hash_algorithm,
                created_at=self._clock.now(),
                image_url=image_url,
                provenance=provenance or Provenance(),
                metadata=dict(metadata or {}),
            )

            # Searches map index hits to records, so the record must exist first
            self._records[record.id] = record
            self._by_cryptographic_hash[cryptographic_hash] = record.id
            self._next_id += 1

            index = self._indexes.get(hash_algorithm)
            if index is None:
                index = self._indexes[hash_algorithm] = HammingIndex(profile.bit_length)
            index.add(record.id, perceptual_hash)

        return record

    def get_by_ids(self, ids):
        with self._lock:
            return [self._records[i] for i in ids if i in self._records]

    def count(self) -> int:
        with self._lock:
            return len(self._records)
