from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

import numpy as np
import pytest

from sensorproof.types import DatasetMetadata

FIFTY_MB = 50 * 1024 * 1024


def make_metadata(**overrides: Any) -> DatasetMetadata:
    record: Dict[str, Any] = {
        "id": "ds-1",
        "title": "Warehouse walk",
        "category": "robotics",
        "declared_source": {
            "sensor_types": ["camera", "lidar", "imu"],
            "robot_model": "Boston Dynamics Spot",
        },
        "file_size": FIFTY_MB,
        "file_format": "rosbag",
        "uploaded_at": datetime.now(timezone.utc).isoformat(),
        "uploader_id": "lab-7",
    }
    record.update(overrides)
    return DatasetMetadata.from_dict(record)


def natural_buffer(n_bytes: int = 300_000, seed: int = 42) -> bytes:
    """Bytes uniform over 0..180: about 7.5 bits of entropy, no degenerate runs."""
    rng = np.random.default_rng(seed)
    return rng.integers(0, 181, size=n_bytes, dtype=np.uint8).tobytes()


@pytest.fixture
def spot_metadata() -> DatasetMetadata:
    return make_metadata()


@pytest.fixture
def natural_bytes() -> bytes:
    return natural_buffer()


@pytest.fixture
def zero_bytes() -> bytes:
    return bytes(100)


@pytest.fixture
def alternating_bytes() -> bytes:
    return b"\x00\xff" * 5000
