# tests/test_hash_index.py

import numpy as np
import pytest

from core.hash_index import HammingIndex, hash_to_bits

QUERY = "0000000000000000"


@pytest.fixture
def index():
    return HammingIndex(bit_length=64)


def test_hash_to_bits():
    bits = hash_to_bits("ff00000000000001")

    assert bits.dtype == np.uint8
    assert bits.tolist() == [255, 0, 0, 0, 0, 0, 0, 1]


def test_empty_index_returns_nothing(index):
    assert index.search(QUERY, max_distance=5) == []


def test_results_ordered_by_distance_then_insertion(index):
    index.add(10, "000000000000000f")  # distance 4
    index.add(11, "0000000000000003")  # distance 2, inserted first
    index.add(12, "0000000000000005")  # distance 2, inserted second
    index.add(13, "ff00000000000000")  # distance 8

    assert index.search(QUERY, max_distance=5) == [(11, 2), (12, 2), (10, 4)]


def test_threshold_is_inclusive(index):
    index.add(1, "000000000000001f")  # distance 5
    index.add(2, "000000000000003f")  # distance 6

    assert index.search(QUERY, max_distance=5) == [(1, 5)]


def test_zero_threshold_finds_identical_hash_only(index):
    index.add(1, QUERY)
    index.add(2, "0000000000000001")

    assert index.search(QUERY, max_distance=0) == [(1, 0)]


def test_limit_truncates_after_ordering(index):
    index.add_many([
        (1, "0000000000000007"),
        (2, "0000000000000001"),
        (3, "0000000000000003"),
    ])

    assert index.search(QUERY, max_distance=5, limit=2) == [(2, 1), (3, 2)]
    assert len(index) == 3


def test_rejects_hash_of_wrong_length(index):
    with pytest.raises(ValueError):
        index.add(1, "00000000")

    with pytest.raises(ValueError):
        index.search("00000000", max_distance=5)


def test_bit_length_must_be_byte_aligned():
    with pytest.raises(ValueError):
        HammingIndex(bit_length=60)
