# core/duplicate_detection.py

import asyncio
import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from core.exceptions import DuplicateCryptographicHash, InvalidInput
from core.hash_store import HashStore, ImageHashRecord, Provenance
from core.hashing import (
    DEFAULT_PROFILE,
    HashingProfile,
    compute_cryptographic_hash,
    compute_perceptual_hash,
)
from core.scoring import ConfidenceScorer
from utils.image_utils import get_image_info
from utils.logging_config import log_operation

logger = logging.getLogger(__name__)

DEFAULT_MAX_HAMMING_DISTANCE = 5


class DuplicateKind(str, Enum):
    EXACT = "exact"
    SIMILAR = "similar"


@dataclass(frozen=True)
class DuplicateVerdict:
    """Result of one duplicate check"""
    is_duplicate: bool
    kind: Optional[DuplicateKind] = None
    match: Optional[ImageHashRecord] = None
    confidence: Optional[float] = None
    hamming_distance: Optional[int] = None
    # Record written for a novel image
    stored_record: Optional[ImageHashRecord] = None

    @property
    def confidence_label(self) -> Optional[str]:
        if self.confidence is None:
            return None
        return ConfidenceScorer.describe(self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'is_duplicate': self.is_duplicate}
        if self.is_duplicate:
            data.update({
                'kind': self.kind.value,
                'match': self.match.to_dict(),
                'confidence': self.confidence,
                'confidence_label': self.confidence_label,
                'hamming_distance': self.hamming_distance,
            })
        elif self.stored_record is not None:
            data['stored_record'] = self.stored_record.to_dict()
        return data


class DuplicateDetector:
    """
    Two-stage receipt duplicate check

    Stage 1 looks the SHA-256 of the raw bytes up in the store. Only when
    that misses is the image decoded and perceptually hashed, and the
    closest stored hash within the Hamming threshold looked up. A clean
    image is stored so later submissions can match it.

    Each check is independent; the store's uniqueness constraint, not
    a lock held here, keeps concurrent checks of the same bytes from
    storing two records.
    """

    def __init__(self,
                 store: HashStore,
                 profile: HashingProfile = DEFAULT_PROFILE,
                 n_workers: int = 4,
                 event_log=None,
                 default_max_distance: int = DEFAULT_MAX_HAMMING_DISTANCE,
                 timeout: Optional[float] = None):
        self.store = store
        self.profile = profile
        self.event_log = event_log
        self.default_max_distance = default_max_distance
        self.timeout = timeout

        # Image decoding and hashing are CPU bound and must not block the loop
        self._executor = ThreadPoolExecutor(
            max_workers=n_workers, thread_name_prefix="receipt-hash"
        )

    async def _run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, functools.partial(func, *args, **kwargs)
        )

    async def check(self,
                    image_buffer: bytes,
                    image_url: Optional[str] = None,
                    provenance: Optional[Provenance] = None,
                    max_hamming_distance: Optional[int] = None,
                    timeout: Optional[float] = None) -> DuplicateVerdict:
        """
        Decide whether image_buffer was submitted before

        The timeout bounds the lookup stages only. Nothing is written to the
        store or the event log until they are done, so a check abandoned on
        timeout leaves no trace and the same image can simply be resent. Once
        the lookups finish, the insert or detection record runs to completion.

        Args:
            image_buffer: Raw image bytes
            image_url: Where the original is kept, stored for audit only
            provenance: Optional transaction/payment/user/message ids
            max_hamming_distance: Similarity threshold, defaults to
                                  default_max_distance
            timeout: Seconds allowed for the lookups, defaults to the
                     detector's timeout (None waits indefinitely)

        Raises:
            InvalidInput: empty buffer or bad threshold
            PerceptualHashError: image could not be decoded
            StoreUnavailable: backing store failure
            asyncio.TimeoutError: lookups did not finish in time
        """
        if max_hamming_distance is None:
            max_hamming_distance = self.default_max_distance
        if isinstance(max_hamming_distance, bool) or \
           not isinstance(max_hamming_distance, int) or max_hamming_distance < 0:
            raise InvalidInput(
                "max_hamming_distance must be a non-negative integer",
                {'max_hamming_distance': max_hamming_distance},
            )

        provenance = provenance or Provenance()
        timeout = self.timeout if timeout is None else timeout
        started = time.perf_counter()

        cryptographic_hash = compute_cryptographic_hash(image_buffer)
        lookup = self._lookup(image_buffer, cryptographic_hash, max_hamming_distance)
        if timeout is not None:
            lookup = asyncio.wait_for(lookup, timeout)
        kind, record, distance, perceptual_hash = await lookup

        if kind is not None:
            confidence = ConfidenceScorer.score(distance, max_hamming_distance)
            return await self._duplicate(
                kind, record, distance, confidence, provenance, cryptographic_hash
            )

        return await self._store(image_buffer, image_url, provenance, max_hamming_distance,
                                 cryptographic_hash, perceptual_hash, started)

    async def _lookup(self, image_buffer: bytes, cryptographic_hash: str,
                      max_distance: int) -> Tuple[Optional[DuplicateKind],
                                                  Optional[ImageHashRecord],
                                                  int, Optional[str]]:
        """Read-only stages; returns (kind, match, distance, perceptual_hash)"""
        # Stage 1: exact match on raw bytes
        exact = await self._run(self.store.exact_lookup, cryptographic_hash)
        if exact is not None:
            return DuplicateKind.EXACT, exact, 0, None

        # Stage 2: visual similarity
        perceptual_hash = await self._run(compute_perceptual_hash, image_buffer, self.profile)
        matches = await self._run(
            self.store.nearest_lookup,
            perceptual_hash,
            max_distance,
            1,
            self.profile.name,
        )

        if not matches or matches[0][1] > max_distance:
            return None, None, 0, perceptual_hash

        # A concurrent check of the same bytes may have committed since stage 1
        exact = await self._run(self.store.exact_lookup, cryptographic_hash)
        if exact is not None:
            return DuplicateKind.EXACT, exact, 0, perceptual_hash

        record, distance = matches[0]
        return DuplicateKind.SIMILAR, record, distance, perceptual_hash

    async def _store(self, image_buffer: bytes, image_url: Optional[str],
                     provenance: Provenance, max_distance: int,
                     cryptographic_hash: str, perceptual_hash: str,
                     started: float) -> DuplicateVerdict:
        metadata = {
            'image_size': len(image_buffer),
            'detection_method': 'dual-hash',
            'hamming_threshold': max_distance,
            'hash_algorithm': self.profile.name,
        }
        info = await self._run(get_image_info, image_buffer)
        if info:
            metadata.update(info)
        metadata['processing_time'] = round(time.perf_counter() - started, 4)

        try:
            stored = await self._run(
                self.store.insert,
                cryptographic_hash,
                perceptual_hash,
                image_url=image_url,
                provenance=provenance,
                metadata=metadata,
                hash_algorithm=self.profile.name,
            )
        except DuplicateCryptographicHash:
            # A concurrent check stored the same bytes first
            existing = await self._run(self.store.exact_lookup, cryptographic_hash)
            if existing is None:
                raise
            logger.info("Insert race lost for %s..., reporting exact duplicate",
                        cryptographic_hash[:16])
            return await self._duplicate(
                DuplicateKind.EXACT, existing, 0, 1.0, provenance, cryptographic_hash
            )

        log_operation(
            logger, 'duplicate_check',
            result='new',
            record_id=stored.id,
            cryptographic_hash=cryptographic_hash[:16],
            perceptual_hash=perceptual_hash,
        )
        return DuplicateVerdict(is_duplicate=False, stored_record=stored)

    async def _duplicate(self, kind: DuplicateKind, match: ImageHashRecord,
                         distance: int, confidence: float,
                         provenance: Provenance,
                         cryptographic_hash: str) -> DuplicateVerdict:
        if self.event_log is not None:
            await self._run(
                self.event_log.record_detection,
                match.id, kind.value, confidence, distance, provenance,
            )

        log_operation(
            logger, 'duplicate_check',
            level=logging.WARNING,
            result=kind.value,
            matched_record_id=match.id,
            hamming_distance=distance,
            confidence=confidence,
            cryptographic_hash=cryptographic_hash[:16],
        )

        return DuplicateVerdict(
            is_duplicate=True,
            kind=kind,
            match=match,
            confidence=confidence,
            hamming_distance=distance,
        )

    def close(self):
        """Stop the hashing worker threads"""
        self._executor.shutdown(wait=True)
