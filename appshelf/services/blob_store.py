"""File storage for uploaded artifacts. Everything under ``root`` is owned by the catalog."""
import logging
import os
import uuid
from typing import BinaryIO, Iterator, Optional, Tuple

from appshelf.config import MAX_UPLOAD_SIZE_GB, UPLOAD_STORAGE_PATH
from appshelf.exceptions import InvalidArtifact, NotFound

logger = logging.getLogger("blob_store")

CHUNK_SIZE = 1024 * 1024


def _safe_name(filename: str) -> str:
    name = os.path.basename(filename or "").strip()
    return name or "upload.bin"


class BlobStore:
    def __init__(self, root: str, max_bytes: int = 0):
        self.root = os.path.realpath(root)
        self.max_bytes = max_bytes  # 0 = pas de limite
        os.makedirs(self.root, exist_ok=True)

    def _unique_path(self, filename: str) -> str:
        # Préfixe aléatoire : deux uploads du même nom ne se marchent pas dessus
        return os.path.join(self.root, f"{uuid.uuid4().hex[:12]}-{_safe_name(filename)}")

    def put(self, stream: BinaryIO, filename: str) -> Tuple[str, int]:
        """Copy ``stream`` into the store. Returns (path, size in bytes)."""
        path = self._unique_path(filename)
        size = 0
        try:
            with open(path, "wb") as f:
                while chunk := stream.read(CHUNK_SIZE):
                    size += len(chunk)
                    if self.max_bytes and size > self.max_bytes:
                        raise InvalidArtifact(
                            f"{filename} exceeds the upload limit of {self.max_bytes} bytes"
                        )
                    f.write(chunk)
        except (OSError, InvalidArtifact):
            if os.path.exists(path):
                os.remove(path)
            raise
        logger.info(f"Stored {filename} as {path} ({size} bytes)")
        return path, size

    def delete(self, path: str) -> None:
        """Remove a stored file. Deleting a missing file is not an error."""
        try:
            os.remove(path)
            logger.info(f"Deleted {path}")
        except FileNotFoundError:
            pass

    def stat(self, path: str) -> int:
        """Size of a regular file, NotFound otherwise."""
        if not path or not os.path.isfile(path):
            raise NotFound(f"File not found or not a regular file: {path}")
        return os.path.getsize(path)

    def stream(self, path: str, start: int = 0, end: Optional[int] = None) -> Iterator[bytes]:
        """Yield the bytes of ``path`` from ``start`` to ``end`` (inclusive) in chunks."""
        with open(path, "rb") as f:
            f.seek(start)
            remaining = None if end is None else end - start + 1
            while remaining is None or remaining > 0:
                read_size = CHUNK_SIZE if remaining is None else min(CHUNK_SIZE, remaining)
                data = f.read(read_size)
                if not data:
                    break
                yield data
                if remaining is not None:
                    remaining -= len(data)

    def is_managed(self, path: Optional[str]) -> bool:
        """True only for paths inside the store root (uploads, never path references)."""
        if not path:
            return False
        real = os.path.realpath(path)
        return real.startswith(self.root + os.sep)

    def list_files(self) -> Iterator[str]:
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for name in filenames:
                yield os.path.join(dirpath, name)


blob_store = BlobStore(UPLOAD_STORAGE_PATH, max_bytes=MAX_UPLOAD_SIZE_GB * 1024 ** 3)
