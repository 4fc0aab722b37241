import os
import shutil
import tempfile
from typing import Optional, Tuple

PNG_MAGIC = b'\x89PNG'
JPEG_MAGIC = b'\xff\xd8'
MIN_TILE_BYTES = 100


class FileUtils:
    """Utility class for file operations"""

    @staticmethod
    def ensure_directory_exists(directory_path: str) -> None:
        """Create directory if it doesn't exist"""
        os.makedirs(directory_path, exist_ok=True)

    @staticmethod
    def get_tile_path(root_dir: str, zoom: int, x: int, y: int, extension: str = 'png') -> str:
        """Generate {root}/{z}/{x}/{y}.{ext} tile path"""
        return os.path.join(root_dir, str(zoom), str(x), f"{y}.{extension}")

    @staticmethod
    def file_exists(file_path: str) -> bool:
        """Check if file exists"""
        return os.path.exists(file_path)

    @staticmethod
    def get_file_size(file_path: str) -> int:
        """Get file size in bytes"""
        return os.path.getsize(file_path) if os.path.exists(file_path) else 0

    @staticmethod
    def write_bytes_atomic(file_path: str, data: bytes) -> None:
        """Write to a temp file in the target directory, then rename over the target"""
        directory = os.path.dirname(file_path) or '.'
        FileUtils.ensure_directory_exists(directory)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix='.tmp')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp_path, file_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    @staticmethod
    def read_bytes(file_path: str) -> Optional[bytes]:
        if not os.path.isfile(file_path):
            return None
        with open(file_path, 'rb') as f:
            return f.read()

    @staticmethod
    def is_valid_tile_data(data: Optional[bytes]) -> bool:
        """At least 100 bytes with a PNG or JPEG signature"""
        if not data or len(data) < MIN_TILE_BYTES:
            return False
        return data.startswith(PNG_MAGIC) or data.startswith(JPEG_MAGIC)

    @staticmethod
    def detect_image_mime(data: bytes) -> str:
        """image/jpeg for JPEG magic, image/png otherwise"""
        return 'image/jpeg' if data.startswith(JPEG_MAGIC) else 'image/png'

    @staticmethod
    def get_directory_stats(directory_path: str) -> Tuple[int, int]:
        """Return (file_count, total_bytes) under a directory"""
        count = 0
        size = 0
        if not os.path.isdir(directory_path):
            return 0, 0
        for root, _dirs, files in os.walk(directory_path):
            for name in files:
                try:
                    size += os.path.getsize(os.path.join(root, name))
                    count += 1
                except OSError:
                    continue
        return count, size

    @staticmethod
    def remove_path(path: str) -> None:
        """Delete a file or a directory tree if present"""
        if os.path.isdir(path):
            shutil.rmtree(path, ignore_errors=True)
        elif os.path.exists(path):
            os.remove(path)
