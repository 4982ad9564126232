# core/exceptions.py

"""
Exception hierarchy for receipt duplicate detection.

    DuplicateDetectionError (base)
        ConfigurationError
        InvalidInput
        HashingError
            PerceptualHashError
        StoreError
            DuplicateCryptographicHash
            RecordNotFound
            StoreUnavailable

Callers that only need to know "the receipt could not be verified" can
catch DuplicateDetectionError.
"""

from typing import Any, Dict, Optional


class DuplicateDetectionError(Exception):
    """Base class for every error raised by the detection engine"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


class ConfigurationError(DuplicateDetectionError):
    """Configuration is missing or invalid (e.g. unknown hashing profile)"""


class InvalidInput(DuplicateDetectionError, ValueError):
    """Empty image buffer or an argument outside its allowed range"""


class HashingError(DuplicateDetectionError):
    """Base class for hash computation failures"""


class PerceptualHashError(HashingError):
    """Image could not be decoded or normalized for perceptual hashing"""


class StoreError(DuplicateDetectionError):
    """Base class for hash store failures"""


class DuplicateCryptographicHash(StoreError):
    """A record with the same cryptographic hash already exists"""

    def __init__(self, cryptographic_hash: str):
        super().__init__(
            "Image hash record already exists",
            {'cryptographic_hash': cryptographic_hash},
        )
        self.cryptographic_hash = cryptographic_hash


class RecordNotFound(StoreError):
    """Requested record does not exist"""


class StoreUnavailable(StoreError):
    """Transport or persistence failure in the backing store"""
