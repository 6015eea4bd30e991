import asyncio
from typing import Optional

from .config import Config
from .engine import VerificationEngine
from .inline import UploadInfo
from .registry import InMemoryRegistryStorage, RegistryStorage, RegistryStorageError
from .types import DatasetMetadata, MetadataError, Verdict, VerificationReport


def verify_dataset(
    metadata: DatasetMetadata,
    buffer: bytes,
    config: Optional[Config] = None,
    registry_storage: Optional[RegistryStorage] = None,
) -> VerificationReport:
    """
    Public entrypoint for the sensorproof engine.

    Run every enabled module over the buffer and return the
    VerificationReport. Failures degrade to a suspicious report with an
    `error` entry rather than raising.
    """
    engine = VerificationEngine(config or Config(), registry_storage=registry_storage)
    return asyncio.run(engine.verify(metadata, buffer))


__all__ = [
    "verify_dataset",
    "Config",
    "DatasetMetadata",
    "InMemoryRegistryStorage",
    "MetadataError",
    "RegistryStorage",
    "RegistryStorageError",
    "UploadInfo",
    "Verdict",
    "VerificationEngine",
    "VerificationReport",
]
