from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .base import AnalysisInput, AnalysisModule
from .config import Config
from .types import (
    AnomalyKind,
    ModuleResult,
    SensorType,
    Severity,
    VerificationAnomaly,
)
from .utils.logging import get_logger, log_params
from .utils.signal import as_bytes_array, noise_floor, shannon_entropy

logger = get_logger(__name__)


@dataclass(frozen=True)
class SignatureProfile:
    entropy: Tuple[float, float]
    noise_floor: Tuple[float, float]
    spectral_peaks_hz: Tuple[float, ...] = ()


# Expected byte-level signatures of raw captures per sensor type.
SENSOR_PROFILES: Dict[SensorType, SignatureProfile] = {
    SensorType.CAMERA: SignatureProfile(entropy=(6.0, 8.0), noise_floor=(0.03, 0.35)),
    SensorType.LIDAR: SignatureProfile(
        entropy=(5.5, 8.0), noise_floor=(0.01, 0.35), spectral_peaks_hz=(40.0, 120.0)
    ),
    SensorType.IMU: SignatureProfile(
        entropy=(4.5, 8.0), noise_floor=(0.02, 0.35), spectral_peaks_hz=(50.0, 100.0, 200.0)
    ),
    SensorType.GPS: SignatureProfile(entropy=(2.5, 7.5), noise_floor=(0.0005, 0.3)),
    SensorType.RADAR: SignatureProfile(entropy=(5.0, 8.0), noise_floor=(0.02, 0.35)),
    SensorType.DEPTH: SignatureProfile(entropy=(5.0, 8.0), noise_floor=(0.02, 0.35)),
    SensorType.THERMAL: SignatureProfile(entropy=(4.0, 7.8), noise_floor=(0.01, 0.3)),
    SensorType.ULTRASONIC: SignatureProfile(entropy=(3.0, 7.5), noise_floor=(0.005, 0.3)),
}

ENTROPY_WEIGHT = 0.6
NOISE_WEIGHT = 0.4


def _range_deviation(value: float, expected: Tuple[float, float]) -> float:
    """Relative distance of `value` outside `expected`, capped at 1."""
    low, high = expected
    if value < low:
        return min(1.0, (low - value) / max(low, 1e-9))
    if value > high:
        return min(1.0, (value - high) / max(high, 1e-9))
    return 0.0


def profile_match(entropy: float, noise: float, profile: SignatureProfile) -> float:
    deviation = (
        ENTROPY_WEIGHT * _range_deviation(entropy, profile.entropy)
        + NOISE_WEIGHT * _range_deviation(noise, profile.noise_floor)
    )
    return float(1.0 - deviation)


def count_repeated_windows(data: np.ndarray, window: int) -> int:
    """Number of `window`-byte windows that already occurred earlier in `data`."""
    raw = data.tobytes()
    seen = set()
    repeats = 0
    for i in range(len(raw) - window + 1):
        chunk = raw[i : i + window]
        if chunk in seen:
            repeats += 1
        else:
            seen.add(chunk)
    return repeats


class SensorSignatureClassifier(AnalysisModule):
    """Match the buffer's statistical signature against each declared sensor."""

    name = "SensorSignatureClassifier"

    def __init__(self, config: Config):
        self.config = config.signature

    def analyze(self, inputs: AnalysisInput) -> ModuleResult:
        return self.classify(inputs.metadata.sensor_types, inputs.buffer)

    def synthetic_probability(self, buffer: bytes) -> Tuple[float, Optional[str], Dict[str, float]]:
        """
        Probability that the buffer is generated rather than captured.

        Returns (probability, reason, details); reason is None when nothing
        synthetic was found.
        """
        cfg = self.config
        entropy = shannon_entropy(as_bytes_array(buffer, cfg.entropy_prefix_bytes))
        repeats = count_repeated_windows(
            as_bytes_array(buffer, cfg.repeat_prefix_bytes), cfg.repeat_window
        )
        details = {"entropy": entropy, "repeated_windows": float(repeats)}

        if entropy < cfg.synthetic_entropy_low or entropy > cfg.synthetic_entropy_high:
            if entropy < cfg.synthetic_entropy_low:
                distance = cfg.synthetic_entropy_low - entropy
            else:
                distance = entropy - cfg.synthetic_entropy_high
            return min(0.99, 0.75 + 0.1 * distance), "entropy outside natural band", details

        if repeats > cfg.max_repeats:
            windows = max(1, cfg.repeat_prefix_bytes - cfg.repeat_window + 1)
            return min(0.95, 0.7 + 0.25 * repeats / windows), "repeated byte windows", details

        return 0.2, None, details

    def classify(self, sensor_types: Sequence[SensorType], buffer: bytes) -> ModuleResult:
        cfg = self.config
        log_params(logger, "signature", {"sensors": [s.value for s in sensor_types], "bytes": len(buffer)})

        entropy = shannon_entropy(as_bytes_array(buffer, cfg.entropy_prefix_bytes))
        noise = noise_floor(as_bytes_array(buffer, cfg.noise_prefix_bytes))

        anomalies: List[VerificationAnomaly] = []
        matches: Dict[str, float] = {}
        for sensor in sensor_types:
            profile = SENSOR_PROFILES.get(sensor)
            if profile is None:
                continue
            match = profile_match(entropy, noise, profile)
            matches[sensor.value] = match
            if match < cfg.match_threshold:
                anomalies.append(
                    VerificationAnomaly(
                        kind=AnomalyKind.SENSOR_MISMATCH,
                        severity=Severity.HIGH if match < 0.4 else Severity.MEDIUM,
                        description=(
                            f"{sensor.value} signal characteristics don't match expected "
                            f"profile ({round(match * 100)}% match)"
                        ),
                        confidence=0.8,
                        detected_by=self.name,
                    )
                )

        probability, reason, details = self.synthetic_probability(buffer)
        if reason is not None:
            anomalies.append(
                VerificationAnomaly(
                    kind=AnomalyKind.TAMPER_DETECTED,
                    severity=Severity.CRITICAL,
                    description=(
                        f"High probability of synthetic/AI-generated data "
                        f"({round(probability * 100)}%): {reason}"
                    ),
                    confidence=probability,
                    detected_by=self.name,
                )
            )

        score = 10.0 - 2.0 * len(anomalies)
        confidence = 0.9 if not anomalies else 0.6

        logger.info(
            "Signature: entropy=%.3f noise=%.4f synthetic_p=%.2f anomalies=%d",
            entropy,
            noise,
            probability,
            len(anomalies),
        )

        return ModuleResult(
            module_name=self.name,
            score=score,
            confidence=confidence,
            anomalies=anomalies,
            metadata={
                "entropy": entropy,
                "noise_floor": noise,
                "profile_matches": matches,
                "synthetic_probability": probability,
                "repeated_windows": details["repeated_windows"],
            },
            preconditions={"sensor_types": [s.value for s in sensor_types]},
        )
