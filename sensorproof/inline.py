from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

from .types import DatasetCategory, DatasetMetadata, DeclaredSource, SensorType

_FILENAME_HINTS = (
    (("camera", "image"), SensorType.CAMERA),
    (("lidar", "pointcloud"), SensorType.LIDAR),
    (("imu", "gyro", "accel"), SensorType.IMU),
    (("gps", "gnss"), SensorType.GPS),
)


@dataclass(frozen=True)
class UploadInfo:
    """What an upload form tells us about a file before anyone has looked inside it."""

    id: str
    uploader_id: str
    filename: str
    file_size: int
    file_type: str


def infer_sensor_types(filename: str, file_type: str) -> Tuple[SensorType, ...]:
    lower = filename.lower()
    if file_type.lower().startswith("image/"):
        return (SensorType.CAMERA,)
    for hints, sensor in _FILENAME_HINTS:
        if any(h in lower for h in hints):
            return (sensor,)
    return (SensorType.CAMERA,)


def build_inline_metadata(upload: UploadInfo, uploaded_at: Optional[datetime] = None) -> DatasetMetadata:
    return DatasetMetadata(
        id=upload.id,
        title=upload.filename,
        category=DatasetCategory.ROBOTICS,
        declared_source=DeclaredSource(sensor_types=infer_sensor_types(upload.filename, upload.file_type)),
        file_size=upload.file_size,
        file_format=upload.file_type,
        uploaded_at=uploaded_at or datetime.now(timezone.utc),
        uploader_id=upload.uploader_id,
    )
