"""
File operation utilities
"""

from pathlib import Path
from typing import List

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.gif', '.webp'}


def get_image_files(directory: str, recursive: bool = True) -> List[str]:
    """Image files under directory, sorted so scans are repeatable"""
    path = Path(directory)
    candidates = path.rglob('*') if recursive else path.glob('*')

    return sorted(
        str(f) for f in candidates
        if f.is_file() and f.suffix.lower() in IMAGE_EXTENSIONS
    )


def read_image_bytes(image_path: str) -> bytes:
    with open(image_path, 'rb') as f:
        return f.read()


def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"
