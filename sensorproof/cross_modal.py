from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from itertools import combinations
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import Config
from .types import (
    AnomalyKind,
    CrossModalAlignment,
    ModuleResult,
    SensorType,
    Severity,
    VerificationAnomaly,
    to_plain,
)
from .utils.logging import get_logger, log_params
from .utils.signal import as_bytes_array, coarse_spectrum, haversine_m, pearson_abs, sha256_hex

logger = get_logger(__name__)

CORRELATED_PAIRS = {
    frozenset((SensorType.CAMERA, SensorType.DEPTH)),
    frozenset((SensorType.CAMERA, SensorType.LIDAR)),
    frozenset((SensorType.GPS, SensorType.IMU)),
    frozenset((SensorType.IMU, SensorType.CAMERA)),
}


@dataclass
class SensorStream:
    sensor_type: SensorType
    data: bytes
    timestamps: np.ndarray
    gps: Optional[Tuple[float, float]] = None


def should_correlate(a: SensorType, b: SensorType) -> bool:
    return frozenset((a, b)) in CORRELATED_PAIRS


def temporal_alignment(ts1: np.ndarray, ts2: np.ndarray) -> float:
    """0.7 * overlap ratio + 0.3 * sampling density ratio."""
    if ts1.size < 2 or ts2.size < 2:
        return 1.0
    start1, end1 = float(ts1.min()), float(ts1.max())
    start2, end2 = float(ts2.min()), float(ts2.max())
    overlap_start = max(start1, start2)
    overlap_end = min(end1, end2)
    if overlap_end <= overlap_start:
        return 0.0
    total = max(end1 - start1, end2 - start2)
    overlap_ratio = (overlap_end - overlap_start) / total

    # 1 ms padding keeps single-instant streams finite
    density1 = ts1.size / (end1 - start1 + 1e-3)
    density2 = ts2.size / (end2 - start2 + 1e-3)
    density_ratio = min(density1, density2) / max(density1, density2)
    return 0.7 * overlap_ratio + 0.3 * density_ratio


def spatial_alignment(
    gps1: Optional[Tuple[float, float]], gps2: Optional[Tuple[float, float]]
) -> Optional[float]:
    if gps1 is None or gps2 is None:
        return None
    distance = haversine_m(gps1, gps2)
    # Sensors on one platform sit within metres of each other.
    if distance < 1:
        return 1.0
    if distance < 5:
        return 0.9
    if distance < 10:
        return 0.8
    if distance < 50:
        return 0.6
    return 0.3


def statistical_features(data: bytes, sample_bytes: int = 1000, fft_window: int = 256, fft_bins: int = 5) -> np.ndarray:
    """Proxy embedding: normalised order statistics plus a coarse spectrum."""
    sample = as_bytes_array(data, sample_bytes)
    if sample.size == 0:
        return np.zeros(5 + fft_bins)
    x = sample.astype(float)
    q1, median, q3 = np.percentile(x, [25, 50, 75])
    stats = np.array(
        [x.mean(), x.std(), median, q3 - q1, x.max() - x.min()]
    ) / 255.0
    return np.concatenate([stats, coarse_spectrum(sample, fft_window, fft_bins)])


def embedding_distance(f1: np.ndarray, f2: np.ndarray) -> float:
    n1 = float(np.linalg.norm(f1))
    n2 = float(np.linalg.norm(f2))
    if n1 == 0.0 or n2 == 0.0:
        return 1.0
    cosine = float(np.dot(f1, f2)) / (n1 * n2)
    return float(min(1.0, max(0.0, 1.0 - cosine)))


class CrossModalChecker:
    """Pairwise consistency between the declared sensor streams."""

    name = "CrossModalChecker"

    def __init__(self, config: Config):
        self.config = config.cross_modal

    def features(self, stream: SensorStream) -> np.ndarray:
        cfg = self.config
        return statistical_features(stream.data, cfg.feature_sample_bytes, cfg.fft_window, cfg.fft_bins)

    def check_pair(self, s1: SensorStream, s2: SensorStream) -> CrossModalAlignment:
        notes: List[str] = []

        temporal = temporal_alignment(s1.timestamps, s2.timestamps)
        if temporal < 0.7:
            notes.append(f"Temporal misalignment: {temporal * 100:.1f}%")

        spatial = spatial_alignment(s1.gps, s2.gps)
        if spatial is not None and spatial < 0.8:
            notes.append("Spatial inconsistency detected")

        distance = embedding_distance(self.features(s1), self.features(s2))
        if distance > 0.7:
            notes.append(f"High embedding distance: {distance:.3f}")

        correlated = should_correlate(s1.sensor_type, s2.sensor_type)
        correlation = None
        if correlated:
            limit = self.config.feature_sample_bytes
            correlation = pearson_abs(as_bytes_array(s1.data, limit), as_bytes_array(s2.data, limit))
            if correlation < 0.3:
                notes.append(f"Expected correlation not found: {correlation:.3f}")

        consistency = (
            0.3 * temporal
            + 0.2 * (1.0 if spatial is None else spatial)
            + 0.3 * (1.0 - distance)
            + 0.2 * (1.0 if correlation is None else correlation)
        )
        return CrossModalAlignment(
            modality1=s1.sensor_type,
            modality2=s2.sensor_type,
            embedding_distance=distance,
            temporal_alignment=temporal,
            spatial_alignment=spatial,
            cross_correlation=correlation,
            consistency_score=float(min(1.0, max(0.0, consistency))),
            anomalies=notes,
        )

    def check(self, streams: Sequence[SensorStream]) -> ModuleResult:
        started = time.perf_counter()
        cfg = self.config
        log_params(
            logger,
            "cross_modal",
            {"streams": [s.sensor_type.value for s in streams], "sizes": [len(s.data) for s in streams]},
        )
        input_hash = sha256_hex(
            json.dumps([{"type": s.sensor_type.value, "size": len(s.data)} for s in streams]).encode("utf-8")
        )

        alignments: List[CrossModalAlignment] = []
        anomalies: List[VerificationAnomaly] = []
        for s1, s2 in combinations(streams, 2):
            alignment = self.check_pair(s1, s2)
            alignments.append(alignment)
            if alignment.consistency_score < cfg.consistency_threshold:
                anomalies.append(
                    VerificationAnomaly(
                        kind=AnomalyKind.CROSS_MODAL_INCONSISTENCY,
                        severity=(
                            Severity.CRITICAL
                            if alignment.consistency_score < cfg.critical_threshold
                            else Severity.HIGH
                        ),
                        description=(
                            f"Poor alignment between {s1.sensor_type.value} and "
                            f"{s2.sensor_type.value}: {', '.join(alignment.anomalies) or 'low consistency'}"
                        ),
                        confidence=1.0 - alignment.consistency_score,
                        detected_by=self.name,
                    )
                )

        if alignments:
            mean = sum(a.consistency_score for a in alignments) / len(alignments)
        else:
            mean = 1.0
        logger.info("Cross-modal: pairs=%d mean_consistency=%.3f", len(alignments), mean)

        plain = [to_plain(asdict(a)) for a in alignments]
        return ModuleResult(
            module_name=self.name,
            score=10.0 * mean,
            confidence=mean,
            anomalies=anomalies,
            metadata={"alignments": plain, "pair_count": len(alignments)},
            processing_ms=(time.perf_counter() - started) * 1000.0,
            input_hash=input_hash,
            preconditions={
                "sensor_count": len(streams),
                "sensor_types": [s.sensor_type.value for s in streams],
            },
            intermediate_outputs={"alignments": plain},
        )
