# core/hashing.py

"""
Image fingerprints for receipt duplicate detection.

Two independent hashes are derived from the raw image bytes:

* a cryptographic hash (SHA-256) that only matches byte-identical files
* a perceptual hash (DCT pHash) computed on a canonical, normalized
  rendition of the image so that re-saves, resizes and small crops land
  close to the original in Hamming distance

Normalization constants live in a HashingProfile. A profile is identified
by its name and never changes once records have been stored under it;
a new resolution, quality or hash size means a new profile name.
"""

import hashlib
import io
from dataclasses import dataclass
from typing import Dict

import imagehash
from PIL import Image, ImageOps, UnidentifiedImageError

from core.exceptions import ConfigurationError, InvalidInput, PerceptualHashError

# Refuse to decode anything bigger than a 50MP image
MAX_IMAGE_PIXELS = 50_000_000


@dataclass(frozen=True)
class HashingProfile:
    """Fixed normalization parameters shared by every perceptual hash"""
    name: str
    canonical_size: int
    jpeg_quality: int
    hash_size: int

    @property
    def bit_length(self) -> int:
        return self.hash_size ** 2

    @property
    def hex_length(self) -> int:
        return self.bit_length // 4


PHASH_256_Q90_V1 = HashingProfile(
    name="phash-256-q90-v1",
    canonical_size=256,
    jpeg_quality=90,
    hash_size=8,
)

PROFILES: Dict[str, HashingProfile] = {
    PHASH_256_Q90_V1.name: PHASH_256_Q90_V1,
}

DEFAULT_PROFILE = PHASH_256_Q90_V1


def get_profile(name: str) -> HashingProfile:
    """Look up a registered hashing profile by name"""
    try:
        return PROFILES[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown hashing profile: {name}",
            {'known_profiles': sorted(PROFILES)},
        ) from None


def _require_buffer(image_buffer: bytes):
    if image_buffer is None:
        raise InvalidInput("Image buffer is required")
    if not isinstance(image_buffer, (bytes, bytearray, memoryview)):
        raise InvalidInput(
            "Image buffer must be bytes",
            {'type': type(image_buffer).__name__},
        )
    if len(image_buffer) == 0:
        raise InvalidInput("Image buffer is empty")


def compute_cryptographic_hash(image_buffer: bytes) -> str:
    """SHA-256 hex digest of the exact byte sequence"""
    _require_buffer(image_buffer)
    return hashlib.sha256(image_buffer).hexdigest()


def normalize_image(image_buffer: bytes,
                    profile: HashingProfile = DEFAULT_PROFILE) -> Image.Image:
    """
    Bring an image to the profile's canonical representation:
    grayscale, fitted inside a canonical_size square, re-encoded as JPEG
    at jpeg_quality and decoded again.
    """
    _require_buffer(image_buffer)

    try:
        img = Image.open(io.BytesIO(image_buffer))

        width, height = img.size
        if width * height > MAX_IMAGE_PIXELS:
            raise PerceptualHashError(
                "Image too large to normalize",
                {'width': width, 'height': height},
            )

        img = img.convert('L')
        img = ImageOps.contain(
            img,
            (profile.canonical_size, profile.canonical_size),
            method=Image.Resampling.LANCZOS,
        )

        encoded = io.BytesIO()
        img.save(encoded, format='JPEG', quality=profile.jpeg_quality)
        encoded.seek(0)

        normalized = Image.open(encoded)
        normalized.load()
        return normalized

    except PerceptualHashError:
        raise
    except (UnidentifiedImageError, Image.DecompressionBombError,
            OSError, ValueError, SyntaxError) as e:
        raise PerceptualHashError(
            "Failed to decode image for perceptual hashing",
            {'error': str(e), 'buffer_size': len(image_buffer)},
        ) from e


def compute_perceptual_hash(image_buffer: bytes,
                            profile: HashingProfile = DEFAULT_PROFILE) -> str:
    """Hex perceptual hash of the normalized image (profile.hex_length chars)"""
    normalized = normalize_image(image_buffer, profile)

    try:
        phash = imagehash.phash(normalized, hash_size=profile.hash_size)
    except (OSError, ValueError) as e:
        raise PerceptualHashError(
            "Failed to compute perceptual hash",
            {'error': str(e), 'profile': profile.name},
        ) from e

    return str(phash)


def hamming_distance(hash_a: str, hash_b: str) -> int:
    """Number of differing bits between two equal-length hex hashes"""
    if len(hash_a) != len(hash_b):
        raise ValueError(
            f"Hash lengths must be equal ({len(hash_a)} != {len(hash_b)})"
        )

    return int(imagehash.hex_to_hash(hash_a) - imagehash.hex_to_hash(hash_b))
