from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .base import AnalysisInput, AnalysisModule
from .config import Config
from .types import AnomalyKind, ModuleResult, Severity, VerificationAnomaly
from .utils.logging import get_logger, log_params
from .utils.signal import haversine_m

logger = get_logger(__name__)

ONE_YEAR_SECONDS = 365 * 24 * 60 * 60


@dataclass
class TimeSeries:
    timestamps: np.ndarray
    gps_track: Sequence[Tuple[float, float]] = ()
    expected_frame_rate: Optional[float] = None
    reference_time: float = field(default_factory=time.time)


def actual_frame_rate(timestamps: np.ndarray) -> float:
    if timestamps.size < 2:
        return 0.0
    mean_interval = float(np.mean(np.diff(timestamps)))
    if mean_interval <= 0:
        return 0.0
    return 1.0 / mean_interval


class TemporalSpatialChecker(AnalysisModule):
    """Timestamp-stream integrity and GPS trajectory plausibility."""

    name = "TemporalSpatialChecker"

    def __init__(self, config: Config):
        self.config = config.temporal

    def analyze(self, inputs: AnalysisInput) -> ModuleResult:
        series = TimeSeries(
            timestamps=inputs.timestamps,
            gps_track=inputs.gps_track,
            expected_frame_rate=inputs.expected_frame_rate,
            reference_time=inputs.reference_time,
        )
        return self.check(series)

    def detect_gaps(self, timestamps: np.ndarray, expected_frame_rate: Optional[float]) -> List[int]:
        if timestamps.size < 2:
            return []
        intervals = np.diff(timestamps)
        if expected_frame_rate:
            limit = 2.0 / expected_frame_rate
        else:
            limit = self.config.max_gap_seconds
        # Time running backwards counts as a gap too.
        mask = (intervals > limit) | (intervals < 0)
        return [int(i) + 1 for i in np.nonzero(mask)[0]]

    @staticmethod
    def detect_duplicates(timestamps: np.ndarray) -> List[int]:
        seen = set()
        duplicates = []
        for idx, ts in enumerate(timestamps.tolist()):
            if ts in seen:
                duplicates.append(idx)
            seen.add(ts)
        return duplicates

    @staticmethod
    def detect_out_of_range(timestamps: np.ndarray, reference_time: float) -> List[int]:
        low = reference_time - ONE_YEAR_SECONDS
        high = reference_time + ONE_YEAR_SECONDS
        mask = (timestamps < low) | (timestamps > high) | (timestamps < 0)
        return [int(i) for i in np.nonzero(mask)[0]]

    def spatial_anomalies(self, track: Sequence[Tuple[float, float]]) -> List[VerificationAnomaly]:
        anomalies: List[VerificationAnomaly] = []
        jumps = [
            i
            for i in range(1, len(track))
            if haversine_m(track[i - 1], track[i]) > self.config.max_gps_jump_m
        ]
        if jumps:
            anomalies.append(
                VerificationAnomaly(
                    kind=AnomalyKind.SPATIAL_INCONSISTENCY,
                    severity=Severity.HIGH if len(jumps) > 5 else Severity.MEDIUM,
                    description=(
                        f"Detected {len(jumps)} impossible GPS jumps "
                        f"(> {self.config.max_gps_jump_m / 1000:g}km between frames)"
                    ),
                    confidence=0.9,
                    detected_by=self.name,
                    affected_indices=jumps,
                )
            )

        if len(track) >= self.config.stuck_gps_min_samples and len(set(track)) == 1:
            anomalies.append(
                VerificationAnomaly(
                    kind=AnomalyKind.QUALITY_ISSUE,
                    severity=Severity.MEDIUM,
                    description="GPS appears stuck (all coordinates identical)",
                    confidence=0.95,
                    detected_by=self.name,
                )
            )
        return anomalies

    def check(self, series: TimeSeries) -> ModuleResult:
        timestamps = np.asarray(series.timestamps, dtype=float)
        track = [tuple(p) for p in series.gps_track]
        log_params(
            logger,
            "temporal",
            {
                "frames": int(timestamps.size),
                "gps_points": len(track),
                "expected_frame_rate": series.expected_frame_rate,
            },
        )
        anomalies: List[VerificationAnomaly] = []

        gaps = self.detect_gaps(timestamps, series.expected_frame_rate)
        if gaps:
            anomalies.append(
                VerificationAnomaly(
                    kind=AnomalyKind.TEMPORAL_GAP,
                    severity=Severity.HIGH if len(gaps) > 10 else Severity.MEDIUM,
                    description=f"Detected {len(gaps)} temporal gaps in data stream",
                    confidence=0.95,
                    detected_by=self.name,
                    affected_indices=gaps,
                )
            )

        duplicates = self.detect_duplicates(timestamps)
        if duplicates:
            anomalies.append(
                VerificationAnomaly(
                    kind=AnomalyKind.DUPLICATE_FRAMES,
                    severity=Severity.HIGH if len(duplicates) > 5 else Severity.LOW,
                    description=f"Found {len(duplicates)} duplicate timestamps",
                    confidence=1.0,
                    detected_by=self.name,
                    affected_indices=duplicates,
                )
            )

        invalid = self.detect_out_of_range(timestamps, series.reference_time)
        if invalid:
            anomalies.append(
                VerificationAnomaly(
                    kind=AnomalyKind.TEMPORAL_GAP,
                    severity=Severity.CRITICAL,
                    description="Detected impossible timestamps (future or invalid)",
                    confidence=1.0,
                    detected_by=self.name,
                    affected_indices=invalid,
                )
            )

        if len(track) > 1:
            anomalies.extend(self.spatial_anomalies(track))

        rate = actual_frame_rate(timestamps)
        expected = series.expected_frame_rate
        if expected and timestamps.size >= 2:
            deviation = abs(rate - expected) / expected
            if deviation > 0.2:
                anomalies.append(
                    VerificationAnomaly(
                        kind=AnomalyKind.QUALITY_ISSUE,
                        severity=Severity.HIGH if deviation > 0.5 else Severity.MEDIUM,
                        description=(
                            f"Frame rate deviation: expected {expected:g}fps, got {rate:.2f}fps"
                        ),
                        confidence=0.9,
                        detected_by=self.name,
                    )
                )

        score = 10.0 - min(10.0, 1.5 * len(anomalies))
        confidence = 0.95 if not anomalies else 0.7

        logger.info(
            "Temporal: frames=%d gaps=%d duplicates=%d invalid=%d fps=%.2f",
            timestamps.size,
            len(gaps),
            len(duplicates),
            len(invalid),
            rate,
        )

        return ModuleResult(
            module_name=self.name,
            score=score,
            confidence=confidence,
            anomalies=anomalies,
            metadata={
                "total_frames": int(timestamps.size),
                "gaps_detected": len(gaps),
                "duplicates_detected": len(duplicates),
                "actual_frame_rate": rate,
            },
            preconditions={"expected_frame_rate": expected, "gps_points": len(track)},
        )
