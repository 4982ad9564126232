# tests/test_config.py

import pytest
import yaml

from config import SystemConfig
from core.exceptions import ConfigurationError
from core.hashing import DEFAULT_PROFILE


def test_missing_file_gives_defaults(tmp_path):
    config = SystemConfig.load(str(tmp_path / "missing.yaml"))

    assert config.database_path == "data/image_hashes.db"
    assert config.duplicate_detection.max_hamming_distance == 5
    assert config.duplicate_detection.check_timeout is None
    assert config.hashing.resolve_profile() is DEFAULT_PROFILE


def test_save_and_load(tmp_path):
    path = str(tmp_path / "config.yaml")
    config = SystemConfig(n_workers=2, database_path="hashes.db")
    config.duplicate_detection.max_hamming_distance = 3
    config.duplicate_detection.check_timeout = 2.5
    config.save(path)

    loaded = SystemConfig.load(path)

    assert loaded.n_workers == 2
    assert loaded.database_path == "hashes.db"
    assert loaded.duplicate_detection.max_hamming_distance == 3
    assert loaded.duplicate_detection.check_timeout == 2.5
    assert loaded.duplicate_detection.record_detections is True


def test_partial_file_keeps_other_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({'duplicate_detection': {'nearest_limit': 3}}))

    config = SystemConfig.load(str(path))

    assert config.duplicate_detection.nearest_limit == 3
    assert config.duplicate_detection.max_hamming_distance == 5
    assert config.n_workers == 4


def test_unknown_profile_fails_on_load(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({'hashing': {'profile': 'phash-1024-q50-v7'}}))

    with pytest.raises(ConfigurationError):
        SystemConfig.load(str(path))
