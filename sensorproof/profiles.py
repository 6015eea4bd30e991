from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .types import SensorType


@dataclass(frozen=True)
class DeviceProfile:
    sensors: Tuple[SensorType, ...]
    frame_rate: Optional[float] = None
    typical_resolution: Optional[str] = None


KNOWN_DEVICES: Dict[str, DeviceProfile] = {
    "DJI Mavic 3": DeviceProfile(
        sensors=(SensorType.CAMERA, SensorType.GPS, SensorType.IMU),
        frame_rate=30.0,
        typical_resolution="5472x3648",
    ),
    "Boston Dynamics Spot": DeviceProfile(
        sensors=(SensorType.CAMERA, SensorType.LIDAR, SensorType.IMU, SensorType.DEPTH),
        frame_rate=30.0,
    ),
    "Tesla Autopilot": DeviceProfile(
        sensors=(SensorType.CAMERA, SensorType.RADAR, SensorType.ULTRASONIC, SensorType.GPS),
        frame_rate=36.0,
    ),
    "Unitree Go1": DeviceProfile(
        sensors=(SensorType.CAMERA, SensorType.IMU, SensorType.DEPTH),
    ),
    "Clearpath Husky": DeviceProfile(
        sensors=(SensorType.LIDAR, SensorType.IMU, SensorType.GPS, SensorType.CAMERA),
        frame_rate=20.0,
    ),
}


def lookup(robot_model: Optional[str]) -> Optional[DeviceProfile]:
    if not robot_model:
        return None
    return KNOWN_DEVICES.get(robot_model)
