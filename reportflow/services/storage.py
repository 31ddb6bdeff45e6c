"""
StorageService - Artifact storage on the local filesystem.
"""

from typing import Optional, List
from pathlib import Path
import asyncio
import logging

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class InvalidPathError(StorageError):
    """Invalid or unsafe path."""
    pass


class StorageFullError(StorageError):
    """Artifact exceeds the configured size limit."""
    pass


class StorageService:
    """
    Stores exported artifacts under a base directory.

    Layout:
    - {base}/reports/ - artifacts of scheduled runs
    - {base}/objects/{bucket}/ - object-storage deliveries
    """

    STORAGE_CATEGORIES = ("reports", "objects", "temp")

    def __init__(self, config=None, base_path: Optional[str] = None):
        self.config = config
        self._base_path_setting = base_path
        self.base_path: Optional[Path] = None
        self.max_file_size_mb: int = 100
        self._initialized = False

    async def initialize(self) -> None:
        """Create the directory structure."""
        base_path_str = self._base_path_setting
        if base_path_str is None and self.config:
            base_path_str = self.config.get("storage.base_path", "./data")
            self.max_file_size_mb = self.config.get("storage.max_file_size_mb", 100)
        self.base_path = Path(base_path_str or "./data").resolve()

        for category in self.STORAGE_CATEGORIES:
            (self.base_path / category).mkdir(parents=True, exist_ok=True)

        self._initialized = True
        logger.info(f"StorageService initialized at {self.base_path}")

    async def shutdown(self) -> None:
        self._initialized = False
        logger.info("StorageService shutdown complete")

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise StorageError("StorageService not initialized")

    def _resolve(self, path: str, category: str) -> Path:
        if category not in self.STORAGE_CATEGORIES:
            raise InvalidPathError(f"Unknown storage category: {category}")
        parts = [p for p in Path(path.replace("\\", "/")).parts if p not in ("", "/", ".")]
        if not parts or ".." in parts:
            raise InvalidPathError(f"Unsafe path: {path}")
        return self.base_path / category / Path(*parts)

    async def store(self, path: str, content: bytes, category: str = "reports") -> str:
        """
        Write content under a category.

        Returns:
            Location of the stored file, relative to the base directory.
        """
        self._ensure_initialized()

        size_mb = len(content) / (1024 * 1024)
        if size_mb > self.max_file_size_mb:
            raise StorageFullError(
                f"File size {size_mb:.1f}MB exceeds maximum {self.max_file_size_mb}MB"
            )

        full_path = self._resolve(path, category)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(full_path.write_bytes, content)

        location = full_path.relative_to(self.base_path).as_posix()
        logger.debug(f"Stored file: {location} ({len(content)} bytes)")
        return location

    async def retrieve(self, location: str) -> bytes:
        self._ensure_initialized()
        category, _, rest = location.partition("/")
        full_path = self._resolve(rest, category)
        if not full_path.exists():
            raise StorageError(f"File not found: {location}")
        return await asyncio.to_thread(full_path.read_bytes)

    async def delete(self, location: str) -> bool:
        self._ensure_initialized()
        category, _, rest = location.partition("/")
        full_path = self._resolve(rest, category)
        if not full_path.exists():
            return False
        await asyncio.to_thread(full_path.unlink)
        return True

    async def list_files(self, category: str = "reports") -> List[str]:
        self._ensure_initialized()
        root = self.base_path / category
        return sorted(
            p.relative_to(self.base_path).as_posix()
            for p in root.rglob("*")
            if p.is_file()
        )
