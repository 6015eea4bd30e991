from .base import StorageBackend, StorageConfig
from .factory import create_storage_backend, storage_config_from_env
from .local import LocalStorageBackend
from .s3 import S3StorageBackend

__all__ = [
    'StorageBackend',
    'StorageConfig',
    'LocalStorageBackend',
    'S3StorageBackend',
    'create_storage_backend',
    'storage_config_from_env',
]
