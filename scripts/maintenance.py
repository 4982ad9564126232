# scripts/maintenance.py

import argparse
import sqlite3
import sys
from datetime import datetime
from pathlib import Path

from core.database import SQLiteHashStore


def compact_database(db_path: str = "data/image_hashes.db") -> str:
    """Back up and VACUUM the hash database; returns the backup path"""
    backup_path = f"{db_path}.backup.{datetime.now().strftime('%Y%m%d_%H%M%S')}"

    conn = sqlite3.connect(db_path)
    try:
        # Online backup also copies pages still sitting in the WAL file
        backup = sqlite3.connect(backup_path)
        try:
            conn.backup(backup)
        finally:
            backup.close()
        print(f"Backup created: {backup_path}")

        # Compact
        conn.execute("VACUUM")
    finally:
        conn.close()

    print("Database compacted")
    return backup_path


def verify_store(db_path: str = "data/image_hashes.db") -> list:
    """Report records whose perceptual hashes cannot be compared"""
    with SQLiteHashStore(db_path) as store:
        total = store.count()
        problems = store.verify_integrity()

    print(f"Checked {total} records, {len(problems)} problems")
    for problem in problems:
        print(f"  - {problem}")

    return problems


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Maintenance utilities")
    parser.add_argument('action', choices=['compact', 'verify'])
    parser.add_argument('--database', default='data/image_hashes.db',
                        help='Hash database path')

    args = parser.parse_args()

    if not Path(args.database).exists():
        print(f"Database not found: {args.database}")
        sys.exit(1)

    if args.action == 'compact':
        compact_database(args.database)
    elif args.action == 'verify':
        sys.exit(1 if verify_store(args.database) else 0)
