# security/input_validation.py

import logging
from typing import Optional

import magic

logger = logging.getLogger(__name__)


class SecurityValidator:
    """
    Validate incoming receipt images before they reach the detector
    """

    MAX_IMAGE_BYTES = 50 * 1024 * 1024  # 50 MB

    # Leading bytes of the formats accepted as receipts
    SIGNATURES = {
        'jpeg': b'\xff\xd8\xff',
        'png': b'\x89PNG\r\n\x1a\n',
        'gif': b'GIF8',
        'bmp': b'BM',
    }

    @staticmethod
    def detect_image_format(image_buffer: bytes) -> Optional[str]:
        """Name of the image format the buffer starts with, if any"""
        if not image_buffer:
            return None

        head = bytes(image_buffer[:12])

        # WEBP is a RIFF container with a WEBP fourcc
        if head[:4] == b'RIFF' and head[8:12] == b'WEBP':
            return 'webp'

        for name, signature in SecurityValidator.SIGNATURES.items():
            if head.startswith(signature):
                return name

        return None

    @staticmethod
    def validate_image_buffer(image_buffer: bytes, verify_mime: bool = True) -> bool:
        """
        Check size limits, file signature and (optionally) libmagic's
        idea of the MIME type
        """
        if not image_buffer:
            return False

        if len(image_buffer) > SecurityValidator.MAX_IMAGE_BYTES:
            logger.warning("Rejected image buffer of %d bytes", len(image_buffer))
            return False

        if SecurityValidator.detect_image_format(image_buffer) is None:
            return False

        if verify_mime:
            mime = magic.from_buffer(bytes(image_buffer[:2048]), mime=True)
            if not mime.startswith('image/'):
                logger.warning("Rejected image buffer with MIME type %s", mime)
                return False

        return True


detect_image_format = SecurityValidator.detect_image_format
validate_image_buffer = SecurityValidator.validate_image_buffer
