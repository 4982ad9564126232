# tests/test_cli.py

import json
import logging
import time

import pytest
import yaml

from cli import main_cli
from core import duplicate_detection
from core.database import SQLiteHashStore


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({
        'database_path': str(tmp_path / "data" / "hashes.db"),
        'log_dir': str(tmp_path / "logs"),
        'log_level': 'WARNING',
    }))
    yield str(path)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, '_receipt_guard', False):
            root.removeHandler(handler)
            handler.close()


@pytest.fixture
def receipts(tmp_path, receipt_image, encode_image, make_image):
    directory = tmp_path / "receipts"
    directory.mkdir()

    png = encode_image(receipt_image)
    (directory / "a_original.png").write_bytes(png)
    (directory / "b_copy.png").write_bytes(png)
    (directory / "c_resaved.jpg").write_bytes(encode_image(receipt_image, '.jpg', quality=70))
    (directory / "d_other.png").write_bytes(encode_image(make_image(seed=2)))
    (directory / "e_broken.jpg").write_bytes(b"this is not a receipt")
    (directory / "notes.txt").write_text("ignored")
    return directory


def run(config_path, *args):
    return main_cli(['-c', config_path, '--no-mime-check', *args])


def stored_count(tmp_path):
    with SQLiteHashStore(str(tmp_path / "data" / "hashes.db")) as store:
        return store.count()


def test_check_new_then_duplicate(config_path, receipts, capsys):
    image = str(receipts / "a_original.png")

    assert run(config_path, 'check', image, '--user-id', 'user-1') == 0
    assert "new image" in capsys.readouterr().out

    assert run(config_path, 'check', image) == 0
    out = capsys.readouterr().out
    assert "DUPLICATE (exact)" in out
    assert "Submitted by user: user-1" in out
    assert "Very High" in out


def test_check_json_output(config_path, receipts, capsys):
    run(config_path, 'check', str(receipts / "a_original.png"))
    capsys.readouterr()

    assert run(config_path, 'check', str(receipts / "c_resaved.jpg"), '--json') == 0
    verdict = json.loads(capsys.readouterr().out)

    assert verdict['is_duplicate'] is True
    assert verdict['kind'] == 'similar'
    assert verdict['hamming_distance'] <= 5


def test_check_rejects_non_image(config_path, receipts, tmp_path, capsys):
    assert run(config_path, 'check', str(receipts / "e_broken.jpg")) == 1
    assert "not a supported image" in capsys.readouterr().out
    assert stored_count(tmp_path) == 0


def test_scan_directory(config_path, receipts, tmp_path, capsys):
    report = tmp_path / "report.json"

    assert run(config_path, 'scan', str(receipts), '-o', str(report)) == 0

    summary = json.loads(report.read_text())['summary']
    assert summary == {'new': 2, 'exact': 1, 'similar': 1, 'invalid': 1}
    assert stored_count(tmp_path) == 2

    capsys.readouterr()
    assert run(config_path, 'stats') == 0
    out = capsys.readouterr().out
    assert "Stored images: 2" in out
    assert "Duplicate detections: 2" in out


def test_review_detections(config_path, receipts, capsys):
    run(config_path, 'scan', str(receipts))
    capsys.readouterr()

    assert run(config_path, 'events', '--status', 'active') == 0
    out = capsys.readouterr().out
    assert "#1 [active] exact" in out
    assert "#2 [active] similar" in out

    assert run(config_path, 'resolve', '2', 'false_positive') == 0
    assert "Detection #2 marked false_positive" in capsys.readouterr().out

    assert run(config_path, 'resolve', '99', 'resolved') == 1
    assert "Detection event not found" in capsys.readouterr().out


def test_similar_is_read_only(config_path, receipts, tmp_path, capsys):
    run(config_path, 'check', str(receipts / "a_original.png"))
    capsys.readouterr()

    assert run(config_path, 'similar', str(receipts / "c_resaved.jpg"), '-k', '5') == 0
    assert "Top 1 similar images" in capsys.readouterr().out
    assert stored_count(tmp_path) == 1

    assert run(config_path, 'similar', str(receipts / "d_other.png")) == 0
    assert "No stored image within distance 5" in capsys.readouterr().out


def test_verify(config_path, receipts, capsys):
    run(config_path, 'check', str(receipts / "a_original.png"))

    assert run(config_path, 'verify') == 0
    assert "Hash store OK" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert main_cli([]) == 0
    assert "usage" in capsys.readouterr().out


def test_invalid_config(tmp_path, capsys):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({'hashing': {'profile': 'unknown'}}))

    assert main_cli(['-c', str(path), 'stats']) == 1
    assert "invalid configuration" in capsys.readouterr().out


def test_check_timeout_asks_for_new_copy(tmp_path, receipts, monkeypatch, capsys):
    path = tmp_path / "timeout.yaml"
    path.write_text(yaml.dump({
        'database_path': str(tmp_path / "data" / "hashes.db"),
        'log_dir': str(tmp_path / "logs"),
        'log_level': 'CRITICAL',
        'duplicate_detection': {'check_timeout': 0.05},
    }))
    real_hash = duplicate_detection.compute_perceptual_hash

    def slow_hash(*args):
        time.sleep(0.5)
        return real_hash(*args)

    monkeypatch.setattr(duplicate_detection, 'compute_perceptual_hash', slow_hash)

    try:
        assert run(str(path), 'check', str(receipts / "a_original.png")) == 1
        assert "ask for a new copy" in capsys.readouterr().out

        assert run(str(path), 'scan', str(receipts)) == 0
        assert "Unreadable: 5" in capsys.readouterr().out
    finally:
        root = logging.getLogger()
        for handler in list(root.handlers):
            if getattr(handler, '_receipt_guard', False):
                root.removeHandler(handler)
                handler.close()

    assert stored_count(tmp_path) == 0
