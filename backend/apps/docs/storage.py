"""
File storage service for document attachments.

Uploaded originals are kept on the local filesystem under UPLOAD_ROOT,
one directory per owner: {UPLOAD_ROOT}/{owner_id}/{sanitized filename}.
"""
import re
import logging
from pathlib import Path
from typing import BinaryIO, Optional

from django.conf import settings

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 128
UNSAFE_FILENAME_CHARS = re.compile(r'[^\w.\-]')


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


def sanitize_filename(filename: str) -> str:
    """
    Make a client-supplied filename safe to use as a path component.

    Directory parts are dropped, unsafe characters become underscores and
    the result is capped at MAX_FILENAME_LENGTH.
    """
    name = Path(filename or '').name
    name = UNSAFE_FILENAME_CHARS.sub('_', name).lstrip('.')
    return name[:MAX_FILENAME_LENGTH] or 'upload'


def sanitize_owner(owner_id: str) -> str:
    return UNSAFE_FILENAME_CHARS.sub('_', owner_id)[:MAX_FILENAME_LENGTH]


class FileStorage:
    """
    Simple file storage for uploaded documents.

    Files are stored at: {UPLOAD_ROOT}/{owner_id}/{filename}
    """

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root or settings.UPLOAD_ROOT)
        self._ensure_root_exists()

    def _ensure_root_exists(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create upload root {self.root}: {e}")
            raise StorageError(f"Cannot create upload directory: {e}")

    def save(self, owner_id: str, filename: str, file: BinaryIO) -> str:
        """
        Save a file to storage.

        Args:
            owner_id: Owning user ID
            filename: Client-supplied filename (sanitized here)
            file: File-like object with read() method

        Returns:
            Relative storage path (e.g., 'user-1/report.txt')

        Raises:
            StorageError: If file cannot be saved
        """
        relative = Path(sanitize_owner(owner_id)) / sanitize_filename(filename)
        filepath = self.root / relative

        try:
            filepath.parent.mkdir(parents=True, exist_ok=True)
            with open(filepath, 'wb') as dest:
                # Read and write in chunks to handle large files
                chunk_size = 8192
                while True:
                    chunk = file.read(chunk_size)
                    if not chunk:
                        break
                    dest.write(chunk)

            logger.info(f"Saved file: {relative} ({filepath.stat().st_size} bytes)")
            return str(relative)

        except OSError as e:
            logger.error(f"Failed to save file {relative}: {e}")
            raise StorageError(f"Failed to save file: {e}")

    def get_path(self, storage_path: str) -> Path:
        return self.root / storage_path

    def exists(self, storage_path: str) -> bool:
        return (self.root / storage_path).exists()

    def delete(self, storage_path: str) -> bool:
        """
        Delete a file from storage.

        Returns:
            True if deleted, False if file didn't exist
        """
        filepath = self.root / storage_path
        try:
            if filepath.exists():
                filepath.unlink()
                logger.info(f"Deleted file: {storage_path}")
                return True
            return False
        except OSError as e:
            logger.error(f"Failed to delete file {storage_path}: {e}")
            raise StorageError(f"Failed to delete file: {e}")


# Singleton instance
_storage: Optional[FileStorage] = None


def get_storage() -> FileStorage:
    """Get the file storage instance (lazy initialization)."""
    global _storage
    if _storage is None:
        _storage = FileStorage()
    return _storage
