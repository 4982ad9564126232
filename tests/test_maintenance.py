# tests/test_maintenance.py

from pathlib import Path

from core.database import SQLiteHashStore
from scripts.maintenance import compact_database, verify_store


def test_compact_database_keeps_backup(tmp_path):
    db_path = str(tmp_path / "hashes.db")
    with SQLiteHashStore(db_path) as store:
        store.insert("1" * 64, "0000000000000000")

    backup = compact_database(db_path)

    assert Path(backup).exists()
    with SQLiteHashStore(db_path) as store:
        assert store.count() == 1


def test_verify_store(tmp_path, capsys):
    db_path = str(tmp_path / "hashes.db")
    with SQLiteHashStore(db_path) as store:
        store.insert("1" * 64, "0000000000000000")

    assert verify_store(db_path) == []
    assert "Checked 1 records, 0 problems" in capsys.readouterr().out

    with SQLiteHashStore(db_path) as store:
        with store.conn:
            store.conn.execute(
                "UPDATE image_hashes SET hash_algorithm = 'dhash-v0' WHERE id = 1"
            )

    problems = verify_store(db_path)
    assert len(problems) == 1
    assert "dhash-v0" in problems[0]


def test_backup_includes_uncheckpointed_writes(tmp_path):
    db_path = str(tmp_path / "hashes.db")

    # Keep the writer open so its pages are still in the WAL file
    with SQLiteHashStore(db_path) as store:
        store.insert("1" * 64, "0000000000000000")
        backup = compact_database(db_path)

    with SQLiteHashStore(backup) as restored:
        assert restored.exact_lookup("1" * 64) is not None
