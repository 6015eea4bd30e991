import os
import shutil
import urllib.parse
from pathlib import Path
from typing import List
from .base import StorageBackend, StorageConfig


class LocalStorageBackend(StorageBackend):
    """Local filesystem storage backend for development."""

    def __init__(self, config: StorageConfig):
        if not config.base_path:
            raise ValueError("base_path is required for local storage")
        self.base_path = Path(config.base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, object_key: str) -> Path:
        """Convert object key to local filesystem path."""
        # Normalize path to prevent directory traversal
        parts = object_key.split('/')
        safe_parts = [p for p in parts if p and p != '..']
        return self.base_path / Path(*safe_parts)

    def _existing(self, object_key: str) -> Path:
        path = self._get_full_path(object_key)
        if not path.is_file():
            raise FileNotFoundError(f"Object not found: {object_key}")
        return path

    def put_bytes(self, object_key: str, data: bytes) -> str:
        target_path = self._get_full_path(object_key)
        target_path.parent.mkdir(parents=True, exist_ok=True)
        target_path.write_bytes(data)
        return f"file://{target_path}"

    def get_bytes(self, object_key: str) -> bytes:
        return self._existing(object_key).read_bytes()

    def get_range(self, object_key: str, start: int, length: int) -> bytes:
        with open(self._existing(object_key), 'rb') as f:
            f.seek(max(0, start))
            return f.read(max(0, length))

    def object_size(self, object_key: str) -> int:
        return self._existing(object_key).stat().st_size

    def upload_folder(self, local_folder: str, prefix: str) -> List[str]:
        """Upload all files in a folder."""
        local_path = Path(local_folder)
        if not local_path.is_dir():
            raise ValueError(f"Not a directory: {local_folder}")

        uploaded_keys = []
        for file_path in local_path.rglob('*'):
            if file_path.is_file():
                relative_path = file_path.relative_to(local_path)
                object_key = f"{prefix}/{relative_path}".replace('\\', '/')
                target_path = self._get_full_path(object_key)
                target_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(file_path, target_path)
                uploaded_keys.append(object_key)

        return uploaded_keys

    def list_prefix(self, prefix: str) -> List[str]:
        """List all files under a prefix."""
        prefix_path = self._get_full_path(prefix)
        if not prefix_path.exists():
            return []

        if prefix_path.is_file():
            return [prefix]
        keys = []
        for file_path in prefix_path.rglob('*'):
            if file_path.is_file():
                relative = file_path.relative_to(self.base_path)
                keys.append(str(relative).replace('\\', '/'))
        return sorted(keys)

    def get_signed_url(self, object_key: str, expires_in: int = 3600) -> str:
        """For local storage, return an API URL that serves the file."""
        self._existing(object_key)
        encoded_key = urllib.parse.quote(object_key, safe='/')
        api_host = os.getenv("API_BASE_URL", "http://localhost:8000")
        return f"{api_host}/storage/{encoded_key}"

    def delete_object(self, object_key: str) -> None:
        """Delete an object from local storage."""
        target_path = self._get_full_path(object_key)
        if target_path.exists():
            if target_path.is_file():
                target_path.unlink()
            elif target_path.is_dir():
                shutil.rmtree(target_path)
