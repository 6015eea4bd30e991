import os

from .base import StorageBackend, StorageConfig
from .local import LocalStorageBackend
from .s3 import S3StorageBackend


def storage_config_from_env() -> StorageConfig:
    """Storage settings shared by the API and the worker."""
    return StorageConfig(
        backend=os.getenv("STORAGE_BACKEND", "local"),
        base_path=os.getenv("STORAGE_BASE_PATH", "./storage"),
        bucket_name=os.getenv("S3_BUCKET_NAME"),
        aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        aws_region=os.getenv("AWS_REGION", "us-east-1"),
        endpoint_url=os.getenv("S3_ENDPOINT_URL"),
    )


def create_storage_backend(config: StorageConfig) -> StorageBackend:
    """Factory function to create the appropriate storage backend."""
    if config.backend == 'local':
        return LocalStorageBackend(config)
    elif config.backend == 's3':
        return S3StorageBackend(config)
    else:
        raise ValueError(f"Unknown storage backend: {config.backend}")
