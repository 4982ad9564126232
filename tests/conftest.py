# tests/conftest.py

import cv2
import numpy as np
import pytest


def make_receipt(seed: int, size: int = 512) -> np.ndarray:
    """Blocky grayscale test image with strong low-frequency structure"""
    rng = np.random.default_rng(seed)
    grid = rng.integers(0, 256, size=(8, 8), dtype=np.uint8)
    img = cv2.resize(grid, (size, size), interpolation=cv2.INTER_NEAREST)
    return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)


def encode(img: np.ndarray, ext: str = '.png', quality: int = None) -> bytes:
    params = [cv2.IMWRITE_JPEG_QUALITY, quality] if quality is not None else []
    ok, buffer = cv2.imencode(ext, img, params)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def receipt_image():
    return make_receipt(seed=1)


@pytest.fixture
def receipt_png(receipt_image):
    return encode(receipt_image)


@pytest.fixture
def receipt_resaved_q70(receipt_image):
    return encode(receipt_image, '.jpg', quality=70)


@pytest.fixture
def other_receipt_png():
    return encode(make_receipt(seed=2))


@pytest.fixture
def make_image():
    return make_receipt


@pytest.fixture
def encode_image():
    return encode
