"""
Image utility functions
"""

from typing import Optional

import cv2
import numpy as np

from security.input_validation import detect_image_format


def decode_image(image_buffer: bytes, grayscale: bool = False) -> Optional[np.ndarray]:
    """Decode an in-memory image, None if OpenCV cannot read it"""
    if not image_buffer:
        return None

    data = np.frombuffer(image_buffer, dtype=np.uint8)
    flags = cv2.IMREAD_GRAYSCALE if grayscale else cv2.IMREAD_UNCHANGED
    return cv2.imdecode(data, flags)


def get_image_info(image_buffer: bytes) -> Optional[dict]:
    """Get image metadata"""
    img = decode_image(image_buffer)

    if img is None:
        return None

    return {
        'width': img.shape[1],
        'height': img.shape[0],
        'channels': img.shape[2] if len(img.shape) == 3 else 1,
        'format': detect_image_format(image_buffer)
    }
