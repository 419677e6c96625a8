import os
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from .abstract_storage import AbstractStorage


class FileSystemStorage(AbstractStorage):
    """
    File system implementation of the storage backend

    Stores generated media in the local file system.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize filesystem storage

        Args:
            config: Storage configuration dictionary with at least:
                   - path: Base path for storage
                   - url_prefix: Optional prefix for returned references
        """
        self.config = config
        self.base_path = Path(config.get('path', 'storage/media'))
        self.url_prefix = config.get('url_prefix')
        self.ensure_storage_exists()

    def ensure_storage_exists(self) -> None:
        """Ensure storage directory exists"""
        self.base_path.mkdir(parents=True, exist_ok=True)

    def get_path(self, key: str) -> Path:
        """
        Get full path for a storage key with path traversal protection

        Args:
            key: Storage key

        Returns:
            Full path

        Raises:
            ValueError: If path traversal is detected or key is invalid
        """
        if not key:
            raise ValueError("Storage key cannot be empty")

        if '..' in key or os.path.isabs(key):
            raise ValueError(f"Invalid storage key: {key} - path traversal detected")

        normalized_key = os.path.normpath(key)
        if normalized_key.startswith('..') or os.path.isabs(normalized_key):
            raise ValueError(f"Invalid storage key: {key} - path traversal detected")

        full_path = (self.base_path / normalized_key).resolve()

        # Resolved path must stay under base_path
        try:
            full_path.relative_to(self.base_path.resolve())
        except ValueError:
            raise ValueError(f"Invalid storage key: {key} - path outside storage directory")

        return full_path

    def save(self, key: str, content: bytes) -> None:
        """
        Save content to storage

        The write goes to a temp file first and is moved into place, so
        readers never observe a partial file and concurrent writers of the
        same key leave one complete copy.

        Raises:
            ValueError: If path traversal is detected or key is invalid
        """
        path = self.get_path(key)

        if path.exists() and path.is_symlink():
            raise ValueError(f"Invalid storage key: {key} - symlinks not allowed")

        path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            with temp_path.open('wb') as f:
                f.write(content)
            temp_path.replace(path)
        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise

    def load(self, key: str) -> Optional[bytes]:
        path = self.get_path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self.get_path(key).exists()

    def delete(self, key: str) -> bool:
        path = self.get_path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def get_url(self, key: str) -> str:
        if self.url_prefix:
            return f"{self.url_prefix.rstrip('/')}/{key}"
        return str(self.get_path(key))
