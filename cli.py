# cli.py

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from tqdm import tqdm

from config import SystemConfig
from core.database import DETECTION_STATUSES, SQLiteHashStore
from core.duplicate_detection import DuplicateDetector
from core.exceptions import DuplicateDetectionError
from core.hash_store import Provenance
from core.hashing import compute_perceptual_hash
from core.scoring import ConfidenceScorer
from security.input_validation import validate_image_buffer
from utils.file_utils import format_file_size, get_image_files, read_image_bytes
from utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def open_store(args, config: SystemConfig) -> SQLiteHashStore:
    return SQLiteHashStore(args.database or config.database_path)


def build_detector(config: SystemConfig, store: SQLiteHashStore) -> DuplicateDetector:
    """Wire the detector to its store from configuration"""
    dd = config.duplicate_detection
    return DuplicateDetector(
        store,
        profile=config.hashing.resolve_profile(),
        n_workers=config.n_workers,
        event_log=store if dd.record_detections else None,
        default_max_distance=dd.max_hamming_distance,
        timeout=dd.check_timeout,
    )


def load_image(path: str, args) -> bytes:
    """Read an image file, None if it is not an acceptable receipt image"""
    try:
        buffer = read_image_bytes(path)
    except OSError as e:
        print(f"Error: cannot read {path}: {e}")
        return None

    if not validate_image_buffer(buffer, verify_mime=not args.no_mime_check):
        print(f"Error: {path} is not a supported image")
        return None

    return buffer


def print_verdict(path: str, verdict):
    if not verdict.is_duplicate:
        record = verdict.stored_record
        print(f"{path}: new image (stored as record {record.id})")
        return

    match = verdict.match
    print(f"{path}: DUPLICATE ({verdict.kind.value})")
    print(f"  Matches record {match.id} first seen {match.created_at.isoformat()}")
    if match.image_url:
        print(f"  Original: {match.image_url}")
    if match.provenance.user_id:
        print(f"  Submitted by user: {match.provenance.user_id}")
    print(f"  Hamming distance: {verdict.hamming_distance}")
    print(f"  Confidence: {verdict.confidence:.2f} ({verdict.confidence_label})")


def check_command(args, config: SystemConfig) -> int:
    """Check a single receipt image and store it if new"""
    buffer = load_image(args.image, args)
    if buffer is None:
        return 1

    provenance = Provenance(
        transaction_id=args.transaction_id,
        payment_reference=args.payment_reference,
        user_id=args.user_id,
        message_id=args.message_id,
    )
    image_url = args.url or Path(args.image).resolve().as_uri()

    store = open_store(args, config)
    detector = build_detector(config, store)
    try:
        verdict = asyncio.run(detector.check(
            buffer,
            image_url=image_url,
            provenance=provenance,
            max_hamming_distance=args.max_distance,
        ))
    except asyncio.TimeoutError:
        print(f"Error: could not verify {args.image} in time, ask for a new copy")
        return 1
    except DuplicateDetectionError as e:
        print(f"Error: could not verify {args.image}, ask for a new copy: {e}")
        return 1
    finally:
        detector.close()
        store.close()

    if args.json:
        print(json.dumps(verdict.to_dict(), indent=2))
    else:
        print_verdict(args.image, verdict)

    return 0


async def _scan(detector: DuplicateDetector, image_paths, args):
    results = []
    counts = {'new': 0, 'exact': 0, 'similar': 0, 'invalid': 0}

    for path in tqdm(image_paths, desc="Checking receipts"):
        buffer = load_image(path, args)
        if buffer is None:
            counts['invalid'] += 1
            results.append({'path': path, 'error': 'unsupported image'})
            continue

        try:
            verdict = await detector.check(
                buffer,
                image_url=Path(path).resolve().as_uri(),
                max_hamming_distance=args.max_distance,
            )
        except asyncio.TimeoutError:
            logger.error("Could not verify %s in time", path)
            counts['invalid'] += 1
            results.append({'path': path, 'error': 'timed out'})
            continue
        except DuplicateDetectionError as e:
            logger.error("Could not verify %s: %s", path, e)
            counts['invalid'] += 1
            results.append({'path': path, 'error': str(e)})
            continue

        counts[verdict.kind.value if verdict.is_duplicate else 'new'] += 1
        results.append({'path': path, 'size': len(buffer), **verdict.to_dict()})

    return results, counts


def scan_command(args, config: SystemConfig) -> int:
    """Check every image in a directory, in sorted order"""
    image_paths = get_image_files(args.directory)
    print(f"Found {len(image_paths)} images")

    store = open_store(args, config)
    detector = build_detector(config, store)
    try:
        results, counts = asyncio.run(_scan(detector, image_paths, args))
    finally:
        detector.close()
        store.close()

    total_size = sum(r.get('size', 0) for r in results if r.get('is_duplicate'))
    print(f"\nNew: {counts['new']}  Exact duplicates: {counts['exact']}  "
          f"Similar: {counts['similar']}  Unreadable: {counts['invalid']}")
    print(f"Duplicate data: {format_file_size(total_size)}")

    if args.output:
        with open(args.output, 'w') as f:
            json.dump({'summary': counts, 'results': results}, f, indent=2)
        print(f"Report saved to: {args.output}")

    return 0


def similar_command(args, config: SystemConfig) -> int:
    """Read-only similarity query"""
    buffer = load_image(args.query, args)
    if buffer is None:
        return 1

    profile = config.hashing.resolve_profile()
    max_distance = (args.max_distance if args.max_distance is not None
                    else config.duplicate_detection.max_hamming_distance)
    top_k = args.top_k or config.duplicate_detection.nearest_limit

    store = open_store(args, config)
    try:
        perceptual_hash = compute_perceptual_hash(buffer, profile)
        matches = store.nearest_lookup(perceptual_hash, max_distance, top_k, profile.name)
    except DuplicateDetectionError as e:
        print(f"Error: {e}")
        return 1
    finally:
        store.close()

    print(f"Perceptual hash: {perceptual_hash}")
    if not matches:
        print(f"No stored image within distance {max_distance}")
        return 0

    print(f"\nTop {len(matches)} similar images:")
    for i, (record, distance) in enumerate(matches, 1):
        confidence = ConfidenceScorer.score(distance, max_distance)
        print(f"{i}. record {record.id} {record.image_url or ''} "
              f"(distance: {distance}, confidence: {ConfidenceScorer.describe(confidence)})")

    return 0


def stats_command(args, config: SystemConfig) -> int:
    store = open_store(args, config)
    try:
        total = store.count()
        stats = store.detection_stats()
    finally:
        store.close()

    print(f"Stored images: {total}")
    print(f"Duplicate detections: {stats['total']}")
    for status in DETECTION_STATUSES:
        print(f"  {status}: {stats[status]}")
    return 0


def events_command(args, config: SystemConfig) -> int:
    store = open_store(args, config)
    try:
        events = store.list_detections(status=args.status, user_id=args.user_id,
                                       limit=args.limit)
    finally:
        store.close()

    for event in events:
        print(f"#{event.id} [{event.status}] {event.kind} match of record "
              f"{event.image_hash_id} (distance {event.hamming_distance}, "
              f"confidence {event.confidence:.2f}) at {event.detected_at.isoformat()}")
    if not events:
        print("No detection events")
    return 0


def resolve_command(args, config: SystemConfig) -> int:
    store = open_store(args, config)
    try:
        event = store.update_detection_status(args.event_id, args.status)
    except DuplicateDetectionError as e:
        print(f"Error: {e}")
        return 1
    finally:
        store.close()

    print(f"Detection #{event.id} marked {event.status}")
    return 0


def verify_command(args, config: SystemConfig) -> int:
    store = open_store(args, config)
    try:
        problems = store.verify_integrity()
    finally:
        store.close()

    if problems:
        print(f"Found {len(problems)} problems:")
        for problem in problems:
            print(f"  - {problem}")
        return 1

    print("Hash store OK")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Receipt duplicate detection - Command Line Interface"
    )
    parser.add_argument('-c', '--config', default='config.yaml',
                        help='YAML configuration file')
    parser.add_argument('--database', help='Override the hash database path')
    parser.add_argument('--no-mime-check', action='store_true',
                        help='Skip libmagic MIME verification of images')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Check command
    check_parser = subparsers.add_parser('check', help='Check one receipt image')
    check_parser.add_argument('image', help='Path to receipt image')
    check_parser.add_argument('--url', help='Location of the stored original')
    check_parser.add_argument('--transaction-id')
    check_parser.add_argument('--payment-reference')
    check_parser.add_argument('--user-id')
    check_parser.add_argument('--message-id')
    check_parser.add_argument('-t', '--max-distance', type=int,
                              help='Maximum Hamming distance for a similar match')
    check_parser.add_argument('--json', action='store_true', help='Print verdict as JSON')
    check_parser.set_defaults(func=check_command)

    # Scan command
    scan_parser = subparsers.add_parser('scan', help='Check every image in a directory')
    scan_parser.add_argument('directory', help='Directory to scan')
    scan_parser.add_argument('-t', '--max-distance', type=int,
                             help='Maximum Hamming distance for a similar match')
    scan_parser.add_argument('-o', '--output', help='Output JSON report path')
    scan_parser.set_defaults(func=scan_command)

    # Similarity search command
    search_parser = subparsers.add_parser('similar', help='Find stored images similar to one')
    search_parser.add_argument('query', help='Path to query image')
    search_parser.add_argument('-t', '--max-distance', type=int,
                               help='Maximum Hamming distance')
    search_parser.add_argument('-k', '--top-k', type=int,
                               help='Number of results to return')
    search_parser.set_defaults(func=similar_command)

    stats_parser = subparsers.add_parser('stats', help='Store statistics')
    stats_parser.set_defaults(func=stats_command)

    events_parser = subparsers.add_parser('events', help='List duplicate detections')
    events_parser.add_argument('--status', choices=DETECTION_STATUSES)
    events_parser.add_argument('--user-id')
    events_parser.add_argument('--limit', type=int, default=20)
    events_parser.set_defaults(func=events_command)

    resolve_parser = subparsers.add_parser('resolve', help='Set a detection review status')
    resolve_parser.add_argument('event_id', type=int)
    resolve_parser.add_argument('status', choices=DETECTION_STATUSES)
    resolve_parser.set_defaults(func=resolve_command)

    verify_parser = subparsers.add_parser('verify', help='Check hash store integrity')
    verify_parser.set_defaults(func=verify_command)

    return parser


def main_cli(argv=None) -> int:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        config = SystemConfig.load(args.config)
    except DuplicateDetectionError as e:
        print(f"Error: invalid configuration: {e}")
        return 1

    setup_logging(config.log_level, config.log_dir)

    # Execute command
    try:
        return args.func(args, config)
    except DuplicateDetectionError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main_cli())
