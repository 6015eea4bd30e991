from __future__ import annotations

import numpy as np

from sensorproof.config import Config
from sensorproof.cross_modal import (
    CrossModalChecker,
    SensorStream,
    embedding_distance,
    should_correlate,
    spatial_alignment,
    temporal_alignment,
)
from sensorproof.types import AnomalyKind, SensorType, Severity

T0 = 1_700_000_000.0


def _clock(n: int = 100, rate: float = 30.0, start: float = T0) -> np.ndarray:
    return start + np.arange(n) / rate


def test_zero_imu_against_camera_is_inconsistent(natural_bytes: bytes) -> None:
    camera = SensorStream(SensorType.CAMERA, natural_bytes[:100_000], _clock())
    imu = SensorStream(SensorType.IMU, bytes(100_000), _clock())
    result = CrossModalChecker(Config()).check([camera, imu])

    assert len(result.anomalies) == 1
    anomaly = result.anomalies[0]
    assert anomaly.kind == AnomalyKind.CROSS_MODAL_INCONSISTENCY
    assert anomaly.severity == Severity.HIGH
    alignment = result.metadata["alignments"][0]
    assert alignment["embedding_distance"] == 1.0
    assert alignment["cross_correlation"] == 0.0
    assert abs(alignment["consistency_score"] - 0.5) < 1e-9
    assert result.score == 5.0


def test_similar_streams_are_consistent(natural_bytes: bytes) -> None:
    streams = [
        SensorStream(SensorType.LIDAR, natural_bytes[:100_000], _clock()),
        SensorStream(SensorType.RADAR, natural_bytes[100_000:200_000], _clock()),
    ]
    result = CrossModalChecker(Config()).check(streams)
    assert result.anomalies == []
    assert result.confidence > 0.95
    assert result.metadata["pair_count"] == 1


def test_three_streams_give_three_pairs(natural_bytes: bytes) -> None:
    streams = [
        SensorStream(s, natural_bytes[i * 1000 : (i + 1) * 1000], _clock())
        for i, s in enumerate([SensorType.CAMERA, SensorType.LIDAR, SensorType.IMU])
    ]
    result = CrossModalChecker(Config()).check(streams)
    pairs = [(a["modality1"], a["modality2"]) for a in result.metadata["alignments"]]
    assert pairs == [("camera", "lidar"), ("camera", "imu"), ("lidar", "imu")]


def test_temporal_alignment() -> None:
    assert temporal_alignment(_clock(), _clock()) == 1.0
    assert temporal_alignment(_clock(), _clock(start=T0 + 100)) == 0.0
    assert temporal_alignment(np.array([T0]), _clock()) == 1.0
    half = temporal_alignment(_clock(100), _clock(50))
    assert 0.0 < half < 1.0


def test_spatial_alignment_bands() -> None:
    assert spatial_alignment(None, (0.0, 0.0)) is None
    assert spatial_alignment((10.0, 10.0), (10.0, 10.0)) == 1.0
    # ~111 m per 0.001 degree of latitude
    assert spatial_alignment((10.0, 10.0), (10.001, 10.0)) == 0.3


def test_pair_table_and_embedding_distance() -> None:
    assert should_correlate(SensorType.CAMERA, SensorType.DEPTH)
    assert should_correlate(SensorType.IMU, SensorType.GPS)
    assert not should_correlate(SensorType.LIDAR, SensorType.IMU)
    assert embedding_distance(np.zeros(3), np.ones(3)) == 1.0
    assert embedding_distance(np.ones(3), np.ones(3)) == 0.0
