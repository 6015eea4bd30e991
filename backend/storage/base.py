from abc import ABC, abstractmethod
from typing import Optional, List
from dataclasses import dataclass


@dataclass
class StorageConfig:
    backend: str  # 'local' or 's3'
    base_path: Optional[str] = None  # For local storage
    bucket_name: Optional[str] = None  # For S3
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: Optional[str] = None
    endpoint_url: Optional[str] = None  # For S3-compatible services like MinIO


class StorageBackend(ABC):
    """Abstract base class for dataset and evidence storage."""

    @abstractmethod
    def put_bytes(self, object_key: str, data: bytes) -> str:
        """Store raw bytes under a key. Returns the object URI."""
        pass

    @abstractmethod
    def get_bytes(self, object_key: str) -> bytes:
        """Read a whole object."""
        pass

    @abstractmethod
    def get_range(self, object_key: str, start: int, length: int) -> bytes:
        """Read `length` bytes starting at offset `start` (short at end of object)."""
        pass

    @abstractmethod
    def object_size(self, object_key: str) -> int:
        """Size of an object in bytes."""
        pass

    @abstractmethod
    def upload_folder(self, local_folder: str, prefix: str) -> List[str]:
        """Upload all files in a folder. Returns list of object keys."""
        pass

    @abstractmethod
    def list_prefix(self, prefix: str) -> List[str]:
        """List all object keys under a prefix."""
        pass

    @abstractmethod
    def get_signed_url(self, object_key: str, expires_in: int = 3600) -> str:
        """Get a signed URL for temporary access. Expires in seconds."""
        pass

    @abstractmethod
    def delete_object(self, object_key: str) -> None:
        """Delete an object from storage."""
        pass
