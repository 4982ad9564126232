# core/scoring.py

from typing import List, Tuple


class ConfidenceScorer:
    """
    Turn a perceptual Hamming distance into a confidence value and a label
    """

    # Lower bound of each band, highest first; a boundary belongs to the higher band
    BANDS: List[Tuple[float, str]] = [
        (0.95, "Very High"),
        (0.85, "High"),
        (0.70, "Medium"),
        (0.50, "Low"),
    ]
    LOWEST_BAND = "Very Low"

    @staticmethod
    def score(distance: int, max_distance: int) -> float:
        """
        Linear decay: 1.0 at distance 0, 0.0 at max_distance and beyond
        """
        if distance < 0 or max_distance < 0:
            raise ValueError("Distances must be non-negative")

        if max_distance == 0:
            return 1.0 if distance == 0 else 0.0

        return max(0.0, 1.0 - distance / max_distance)

    @staticmethod
    def describe(confidence: float) -> str:
        """Human readable band for a confidence in [0, 1]"""
        for lower_bound, label in ConfidenceScorer.BANDS:
            if confidence >= lower_bound:
                return label
        return ConfidenceScorer.LOWEST_BAND
