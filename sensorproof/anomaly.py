from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np

from .base import AnalysisInput, AnalysisModule
from .config import Config
from .types import AnomalyKind, ModuleResult, Severity, VerificationAnomaly
from .utils.logging import get_logger, log_params
from .utils.signal import as_bytes_array, shannon_entropy

logger = get_logger(__name__)

JPEG_SOI = b"\xff\xd8\xff"
PNG_SIGNATURE = b"\x89PNG"


def count_outliers(data: np.ndarray, sigma: float = 3.0) -> Tuple[int, float]:
    """Values further than `sigma` standard deviations from the mean."""
    if data.size == 0:
        return 0, 0.0
    x = data.astype(float)
    deviation = np.abs(x - x.mean())
    count = int(np.count_nonzero(deviation > sigma * x.std()))
    return count, 100.0 * count / x.size


def periodic_patterns(data: np.ndarray, match_rate: float, max_period: int = 64) -> int:
    """Count lags in [2, max_period) at which the sample repeats itself."""
    n = data.size
    found = 0
    for period in range(2, max_period):
        span = n - 2 * period
        if span <= 0:
            break
        matches = np.count_nonzero(data[:span] == data[period : period + span])
        if matches / span > match_rate:
            found += 1
    return found


def calculate_confidence(anomalies: List[VerificationAnomaly]) -> float:
    if not anomalies:
        return 0.95
    critical = sum(1 for a in anomalies if a.severity == Severity.CRITICAL)
    high = sum(1 for a in anomalies if a.severity == Severity.HIGH)
    if critical:
        return 0.4
    if high > 2:
        return 0.5
    if high:
        return 0.7
    return 0.85


class AnomalyDetector(AnalysisModule):
    """Sensor-agnostic statistical scan for tampering and generation artifacts."""

    name = "AnomalyDetector"

    def __init__(self, config: Config):
        self.config = config.anomaly

    def analyze(self, inputs: AnalysisInput) -> ModuleResult:
        return self.detect(inputs.buffer)

    def _anomaly(self, kind, severity, description, confidence) -> VerificationAnomaly:
        return VerificationAnomaly(
            kind=kind,
            severity=severity,
            description=description,
            confidence=confidence,
            detected_by=self.name,
        )

    def entropy_anomaly(self, entropy: float) -> Optional[VerificationAnomaly]:
        if entropy < self.config.entropy_low:
            return self._anomaly(
                AnomalyKind.TAMPER_DETECTED,
                Severity.HIGH,
                f"Abnormally low entropy ({entropy:.2f}), possible compression or synthetic data",
                0.8,
            )
        if entropy > self.config.entropy_high:
            return self._anomaly(
                AnomalyKind.TAMPER_DETECTED,
                Severity.MEDIUM,
                f"Abnormally high entropy ({entropy:.2f}), possible encryption or manipulation",
                0.7,
            )
        return None

    def detect(self, buffer: bytes) -> ModuleResult:
        cfg = self.config
        log_params(logger, "anomaly", {"bytes": len(buffer)})
        anomalies: List[VerificationAnomaly] = []

        outliers, pct = count_outliers(as_bytes_array(buffer, cfg.outlier_sample_bytes))
        if outliers:
            anomalies.append(
                self._anomaly(
                    AnomalyKind.QUALITY_ISSUE,
                    Severity.MEDIUM if outliers > 100 else Severity.LOW,
                    f"Detected {outliers} statistical outliers ({pct:.2f}%)",
                    0.75,
                )
            )

        entropy = shannon_entropy(as_bytes_array(buffer, 10_000))
        entropy_anomaly = self.entropy_anomaly(entropy)
        if entropy_anomaly is not None:
            anomalies.append(entropy_anomaly)

        periods = periodic_patterns(
            as_bytes_array(buffer, cfg.periodicity_sample_bytes), cfg.periodicity_match_rate
        )
        if periods > cfg.periodicity_max_periods:
            anomalies.append(
                self._anomaly(
                    AnomalyKind.TAMPER_DETECTED,
                    Severity.MEDIUM,
                    "Detected artificial periodic patterns, possible synthetic generation",
                    0.75,
                )
            )

        head = buffer[: cfg.marker_scan_bytes]
        if JPEG_SOI in head or PNG_SIGNATURE in head:
            anomalies.append(
                self._anomaly(
                    AnomalyKind.QUALITY_ISSUE,
                    Severity.MEDIUM,
                    "Detected image compression markers in sensor data",
                    0.9,
                )
            )

        sample = as_bytes_array(buffer, 10_000)
        zero_rate = float(np.mean(sample == 0)) if sample.size else 0.0
        ones_rate = float(np.mean(sample == 255)) if sample.size else 0.0
        if zero_rate > cfg.degenerate_rate or ones_rate > cfg.degenerate_rate:
            anomalies.append(
                self._anomaly(
                    AnomalyKind.TAMPER_DETECTED,
                    Severity.HIGH,
                    (
                        f"Suspicious data distribution: {zero_rate * 100:.1f}% zeros, "
                        f"{ones_rate * 100:.1f}% 0xFF"
                    ),
                    0.85,
                )
            )

        score = 10.0 - min(10.0, 2.0 * len(anomalies))
        confidence = calculate_confidence(anomalies)
        logger.info(
            "Anomaly: outliers=%d entropy=%.3f periods=%d anomalies=%d",
            outliers,
            entropy,
            periods,
            len(anomalies),
        )

        return ModuleResult(
            module_name=self.name,
            score=score,
            confidence=confidence,
            anomalies=anomalies,
            metadata={
                "outlier_count": outliers,
                "entropy": entropy,
                "periodic_patterns": periods,
                "zero_rate": zero_rate,
                "ones_rate": ones_rate,
            },
        )
