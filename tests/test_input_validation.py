# tests/test_input_validation.py

import pytest

from security.input_validation import SecurityValidator, detect_image_format, validate_image_buffer
from utils.image_utils import decode_image, get_image_info


@pytest.mark.parametrize("ext, name", [
    ('.png', 'png'),
    ('.jpg', 'jpeg'),
    ('.bmp', 'bmp'),
])
def test_detects_encoded_formats(receipt_image, encode_image, ext, name):
    assert detect_image_format(encode_image(receipt_image, ext)) == name


def test_detects_riff_webp_and_gif():
    assert detect_image_format(b'RIFF\x10\x00\x00\x00WEBPVP8 ') == 'webp'
    assert detect_image_format(b'GIF89a\x01\x00') == 'gif'
    assert detect_image_format(b'RIFF\x10\x00\x00\x00WAVEfmt ') is None


@pytest.mark.parametrize("buffer", [b"", None, b"%PDF-1.7 receipt", b"<svg></svg>"])
def test_rejects_non_images(buffer):
    assert validate_image_buffer(buffer, verify_mime=False) is False


def test_accepts_png_without_mime_check(receipt_png):
    assert validate_image_buffer(receipt_png, verify_mime=False) is True


def test_rejects_oversized_buffer(monkeypatch, receipt_png):
    monkeypatch.setattr(SecurityValidator, 'MAX_IMAGE_BYTES', len(receipt_png) - 1)

    assert validate_image_buffer(receipt_png, verify_mime=False) is False


def test_mime_check(receipt_png):
    assert validate_image_buffer(receipt_png) is True
    assert validate_image_buffer(b"%PDF-1.7 receipt") is False


def test_image_info(receipt_png):
    assert get_image_info(receipt_png) == {
        'width': 512, 'height': 512, 'channels': 3, 'format': 'png'
    }


def test_image_info_for_unreadable_buffer():
    assert get_image_info(b"not an image") is None
    assert decode_image(b"") is None


def test_decode_grayscale(receipt_png):
    img = decode_image(receipt_png, grayscale=True)

    assert img.shape == (512, 512)
