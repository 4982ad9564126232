# core/database.py

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from core.exceptions import (
    DuplicateCryptographicHash,
    InvalidInput,
    RecordNotFound,
    StoreUnavailable,
)
from core.hash_index import HammingIndex
from core.hash_store import HashStore, ImageHashRecord, MonotonicClock, Provenance
from core.hashing import DEFAULT_PROFILE, PROFILES

logger = logging.getLogger(__name__)

DETECTION_STATUSES = ('active', 'resolved', 'false_positive')


def _is_hex(value: str, length: int) -> bool:
    if len(value) != length:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class DetectionEvent:
    """A flagged submission that matched an existing image hash record"""
    id: int
    image_hash_id: int
    kind: str
    confidence: float
    hamming_distance: int
    status: str
    detected_at: datetime
    provenance: Provenance = field(default_factory=Provenance)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'image_hash_id': self.image_hash_id,
            'kind': self.kind,
            'confidence': self.confidence,
            'hamming_distance': self.hamming_distance,
            'status': self.status,
            'detected_at': self.detected_at.isoformat(),
            'provenance': self.provenance.to_dict(),
        }


class SQLiteHashStore(HashStore):
    """
    SQLite database of image hash records and duplicate detection events

    Similarity search runs against an in-memory Hamming index per hashing
    profile, brought up to date from the table before every query so
    rows written by other processes sharing the file are seen.
    """

    def __init__(self, db_path: str = "data/image_hashes.db"):
        self.db_path = db_path
        self.conn = None
        self._lock = threading.RLock()
        self._clock = MonotonicClock()
        self._indexes: Dict[str, HammingIndex] = {}
        self._last_indexed_id = 0
        self._initialize_database()

    def _initialize_database(self):
        """Create database schema"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self.conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        except sqlite3.Error as e:
            raise StoreUnavailable(
                "Cannot open hash database", {'path': self.db_path, 'error': str(e)}
            ) from e

        self.conn.row_factory = sqlite3.Row

        with self._guard("schema creation"):
            cursor = self.conn.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            if self.db_path != ":memory:":
                cursor.execute("PRAGMA journal_mode = WAL")

            # One row per distinct image
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS image_hashes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    cryptographic_hash TEXT UNIQUE NOT NULL,
                    perceptual_hash TEXT NOT NULL,
                    hash_algorithm TEXT NOT NULL,
                    image_url TEXT,
                    transaction_id TEXT,
                    payment_reference TEXT,
                    user_id TEXT,
                    message_id TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            # Duplicate submissions flagged for review
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS detection_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    image_hash_id INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    confidence FLOAT NOT NULL,
                    hamming_distance INTEGER NOT NULL,
                    transaction_id TEXT,
                    payment_reference TEXT,
                    user_id TEXT,
                    message_id TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    detected_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (image_hash_id) REFERENCES image_hashes(id)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_hash_algorithm
                ON image_hashes(hash_algorithm, id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_status ON detection_events(status)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_user ON detection_events(user_id)
            """)

            self.conn.commit()

            latest = cursor.execute("SELECT MAX(created_at) FROM image_hashes").fetchone()[0]
            if latest:
                self._clock.observe(datetime.fromisoformat(latest))

    @contextmanager
    def _guard(self, operation: str):
        """Serialize access and turn driver errors into StoreUnavailable"""
        with self._lock:
            try:
                yield
            except sqlite3.Error as e:
                logger.error("SQLite %s failed: %s", operation, e)
                raise StoreUnavailable(
                    f"Hash store {operation} failed", {'error': str(e)}
                ) from e

    def _row_to_record(self, row: sqlite3.Row) -> ImageHashRecord:
        return ImageHashRecord(
            id=row['id'],
            cryptographic_hash=row['cryptographic_hash'],
            perceptual_hash=row['perceptual_hash'],
            hash_algorithm=row['hash_algorithm'],
            created_at=datetime.fromisoformat(row['created_at']),
            image_url=row['image_url'],
            provenance=Provenance(
                transaction_id=row['transaction_id'],
                payment_reference=row['payment_reference'],
                user_id=row['user_id'],
                message_id=row['message_id'],
            ),
            metadata=json.loads(row['metadata']) if row['metadata'] else {},
        )

    def exact_lookup(self, cryptographic_hash: str) -> Optional[ImageHashRecord]:
        with self._guard("exact lookup"):
            row = self.conn.execute(
                "SELECT * FROM image_hashes WHERE cryptographic_hash = ?",
                (cryptographic_hash,),
            ).fetchone()

        return self._row_to_record(row) if row else None

    def _sync_index(self):
        """Feed rows added since the last sync into the Hamming indexes"""
        rows = self.conn.execute(
            "SELECT id, perceptual_hash, hash_algorithm FROM image_hashes "
            "WHERE id > ? ORDER BY id",
            (self._last_indexed_id,),
        ).fetchall()

        if not rows:
            return

        pending: Dict[str, List] = {}
        for row in rows:
            profile = PROFILES.get(row['hash_algorithm'])
            if profile is None or not _is_hex(row['perceptual_hash'], profile.hex_length):
                logger.warning(
                    "Skipping record %s: perceptual hash not comparable under %s",
                    row['id'], row['hash_algorithm'],
                )
                continue
            pending.setdefault(profile.name, []).append((row['id'], row['perceptual_hash']))

        for algorithm, items in pending.items():
            index = self._indexes.get(algorithm)
            if index is None:
                index = self._indexes[algorithm] = HammingIndex(PROFILES[algorithm].bit_length)
            index.add_many(items)

        self._last_indexed_id = rows[-1]['id']
        logger.debug("Indexed %d new perceptual hashes", len(rows))

    def nearest_lookup(self, perceptual_hash, max_hamming_distance,
                       limit=1, hash_algorithm=DEFAULT_PROFILE.name):
        self._check_lookup_args(max_hamming_distance, limit)
        self._check_perceptual_hash(perceptual_hash, hash_algorithm)

        with self._guard("similarity lookup"):
            self._sync_index()
            index = self._indexes.get(hash_algorithm)
            if index is None:
                return []
            hits = index.search(perceptual_hash, max_hamming_distance)

        # Row ids follow commit order, but writers in other processes stamp
        # created_at with their own clocks, so ties are settled on created_at
        records = {record.id: record for record in self.get_by_ids(rid for rid, _ in hits)}
        matches = sorted(
            ((records[record_id], distance) for record_id, distance in hits),
            key=lambda match: (match[1], match[0].created_at, match[0].id),
        )
        return matches[:limit]

    def insert(self, cryptographic_hash, perceptual_hash, image_url=None,
               provenance=None, metadata=None, hash_algorithm=DEFAULT_PROFILE.name):
        self._check_perceptual_hash(perceptual_hash, hash_algorithm)
        provenance = provenance or Provenance()

        with self._guard("insert"):
            if self.exact_lookup(cryptographic_hash) is not None:
                raise DuplicateCryptographicHash(cryptographic_hash)

            created_at = self._clock.now()
            try:
                with self.conn:
                    cursor = self.conn.execute("""
                        INSERT INTO image_hashes
                        (cryptographic_hash, perceptual_hash, hash_algorithm, image_url,
                         transaction_id, payment_reference, user_id, message_id,
                         metadata, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        cryptographic_hash,
                        perceptual_hash,
                        hash_algorithm,
                        image_url,
                        provenance.transaction_id,
                        provenance.payment_reference,
                        provenance.user_id,
                        provenance.message_id,
                        json.dumps(metadata or {}),
                        created_at.isoformat(),
                    ))
            except sqlite3.IntegrityError:
                # Another writer sharing the file got there first
                raise DuplicateCryptographicHash(cryptographic_hash) from None

            record_id = cursor.lastrowid

        return ImageHashRecord(
            id=record_id,
            cryptographic_hash=cryptographic_hash,
            perceptual_hash=perceptual_hash,
            hash_algorithm=hash_algorithm,
            created_at=created_at,
            image_url=image_url,
            provenance=provenance,
            metadata=dict(metadata or {}),
        )

    def get_by_ids(self, ids: Iterable[int]) -> List[ImageHashRecord]:
        ids = list(ids)
        if not ids:
            return []

        placeholders = ", ".join("?" for _ in ids)
        with self._guard("lookup by id"):
            rows = self.conn.execute(
                f"SELECT * FROM image_hashes WHERE id IN ({placeholders})", ids
            ).fetchall()

        by_id = {row['id']: self._row_to_record(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def count(self) -> int:
        with self._guard("count"):
            return self.conn.execute("SELECT COUNT(*) FROM image_hashes").fetchone()[0]

    # Detection events

    def _row_to_event(self, row: sqlite3.Row) -> DetectionEvent:
        return DetectionEvent(
            id=row['id'],
            image_hash_id=row['image_hash_id'],
            kind=row['kind'],
            confidence=row['confidence'],
            hamming_distance=row['hamming_distance'],
            status=row['status'],
            detected_at=datetime.fromisoformat(row['detected_at']),
            provenance=Provenance(
                transaction_id=row['transaction_id'],
                payment_reference=row['payment_reference'],
                user_id=row['user_id'],
                message_id=row['message_id'],
            ),
        )

    def _get_event(self, event_id: int) -> DetectionEvent:
        row = self.conn.execute(
            "SELECT * FROM detection_events WHERE id = ?", (event_id,)
        ).fetchone()
        if row is None:
            raise RecordNotFound("Detection event not found", {'event_id': event_id})
        return self._row_to_event(row)

    def record_detection(self, image_hash_id: int, kind: str, confidence: float,
                         hamming_distance: int,
                         provenance: Optional[Provenance] = None) -> DetectionEvent:
        """Log a duplicate submission against the record it matched"""
        provenance = provenance or Provenance()

        with self._guard("detection logging"):
            with self.conn:
                cursor = self.conn.execute("""
                    INSERT INTO detection_events
                    (image_hash_id, kind, confidence, hamming_distance,
                     transaction_id, payment_reference, user_id, message_id,
                     status, detected_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'active', ?)
                """, (
                    image_hash_id,
                    kind,
                    confidence,
                    hamming_distance,
                    provenance.transaction_id,
                    provenance.payment_reference,
                    provenance.user_id,
                    provenance.message_id,
                    self._clock.now().isoformat(),
                ))
            return self._get_event(cursor.lastrowid)

    def update_detection_status(self, event_id: int, status: str) -> DetectionEvent:
        if status not in DETECTION_STATUSES:
            raise InvalidInput(
                f"Unknown detection status: {status}",
                {'allowed': list(DETECTION_STATUSES)},
            )

        with self._guard("detection status update"):
            self._get_event(event_id)
            with self.conn:
                self.conn.execute(
                    "UPDATE detection_events SET status = ? WHERE id = ?",
                    (status, event_id),
                )
            return self._get_event(event_id)

    def list_detections(self, status: Optional[str] = None,
                        user_id: Optional[str] = None,
                        limit: Optional[int] = None) -> List[DetectionEvent]:
        """Detection events, newest first"""
        query = "SELECT * FROM detection_events"
        conditions, params = [], []

        if status is not None:
            conditions.append("status = ?")
            params.append(status)
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._guard("detection listing"):
            rows = self.conn.execute(query, params).fetchall()

        return [self._row_to_event(row) for row in rows]

    def detection_stats(self) -> Dict[str, int]:
        with self._guard("detection stats"):
            rows = self.conn.execute(
                "SELECT status, COUNT(*) AS n FROM detection_events GROUP BY status"
            ).fetchall()

        counts = {row['status']: row['n'] for row in rows}
        stats = {'total': sum(counts.values())}
        for status in DETECTION_STATUSES:
            stats[status] = counts.get(status, 0)
        return stats

    def verify_integrity(self) -> List[str]:
        """Describe records whose perceptual hash cannot be compared"""
        problems = []

        with self._guard("integrity check"):
            rows = self.conn.execute(
                "SELECT id, perceptual_hash, hash_algorithm FROM image_hashes ORDER BY id"
            ).fetchall()

        for row in rows:
            profile = PROFILES.get(row['hash_algorithm'])
            if profile is None:
                problems.append(
                    f"record {row['id']}: unknown hash algorithm {row['hash_algorithm']}"
                )
                continue
            if len(row['perceptual_hash']) != profile.hex_length:
                problems.append(
                    f"record {row['id']}: perceptual hash has {len(row['perceptual_hash'])} "
                    f"hex chars, {profile.name} expects {profile.hex_length}"
                )
                continue
            try:
                bytes.fromhex(row['perceptual_hash'])
            except ValueError:
                problems.append(f"record {row['id']}: perceptual hash is not hex")

        return problems

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
