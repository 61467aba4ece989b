"""
Blob storage for partial and final audio artifacts.
"""

import asyncio
from pathlib import Path

from audiobook.logging_config import get_logger


class StorageError(Exception):
    """Exception raised when a blob cannot be written, read or deleted."""
    pass


class BlobStore:
    """
    Interface for artifact storage.

    Keys are slash-separated relative paths such as
    ``audiobooks/<job_id>.mp3``. ``put`` returns the reference used to read
    the blob back, which for the built-in store is the key itself.
    """

    async def put(self, data: bytes, key: str) -> str:
        raise NotImplementedError

    async def get(self, ref: str) -> bytes:
        raise NotImplementedError

    async def delete(self, ref: str) -> None:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    """
    Blob store backed by a directory on the local filesystem.

    Writes go to a temporary sibling file that is renamed into place, so a
    reader never sees a half-written artifact. Filesystem calls run in a
    worker thread.
    """

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.logger = get_logger(__name__)

    def _path(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if self.root not in path.parents:
            raise StorageError(f"Invalid blob reference: {ref}")
        return path

    async def put(self, data: bytes, key: str) -> str:
        path = self._path(key)
        await asyncio.to_thread(self._write, path, data)
        self.logger.debug(f"Stored {len(data)} bytes at {key}")
        return key

    async def get(self, ref: str) -> bytes:
        path = self._path(ref)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StorageError(f"Blob not found: {ref}") from e
        except OSError as e:
            raise StorageError(f"Failed to read blob {ref}: {e}") from e

    async def delete(self, ref: str) -> None:
        path = self._path(ref)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise StorageError(f"Failed to delete blob {ref}: {e}") from e

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
        except OSError as e:
            raise StorageError(f"Failed to write blob {path.name}: {e}") from e
