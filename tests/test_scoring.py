# tests/test_scoring.py

import pytest

from core.scoring import ConfidenceScorer


def test_score_endpoints():
    assert ConfidenceScorer.score(0, 5) == 1.0
    assert ConfidenceScorer.score(5, 5) == 0.0
    assert ConfidenceScorer.score(9, 5) == 0.0


def test_score_is_monotonic_in_distance():
    scores = [ConfidenceScorer.score(d, 5) for d in range(6)]

    assert scores == sorted(scores, reverse=True)
    assert all(0.0 <= s <= 1.0 for s in scores)


def test_zero_threshold():
    assert ConfidenceScorer.score(0, 0) == 1.0
    assert ConfidenceScorer.score(1, 0) == 0.0


def test_negative_distance_rejected():
    with pytest.raises(ValueError):
        ConfidenceScorer.score(-1, 5)


@pytest.mark.parametrize("confidence, label", [
    (1.0, "Very High"),
    (0.95, "Very High"),
    (0.9499, "High"),
    (0.85, "High"),
    (0.7, "Medium"),
    (0.5, "Low"),
    (0.49, "Very Low"),
    (0.0, "Very Low"),
])
def test_describe_bands(confidence, label):
    assert ConfidenceScorer.describe(confidence) == label
