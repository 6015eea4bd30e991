from __future__ import annotations

import asyncio
import math
import time
from typing import List, Optional, Sequence

import cv2
import numpy as np

from .config import ChallengeConfig, Config
from .types import (
    AnomalyKind,
    ChallengeTest,
    ModuleResult,
    SensorType,
    Severity,
    VerificationAnomaly,
)
from .utils.logging import get_logger, log_params
from .utils.signal import as_bytes_array, sha256_hex, shannon_entropy

logger = get_logger(__name__)

IMAGE_SENSORS = (SensorType.CAMERA, SensorType.THERMAL, SensorType.DEPTH)
MIN_IMAGE_BYTES = 64
MAX_IMAGE_SIDE = 512

PERTURBATION, COMPRESSION, NOISE_INJECTION, TEMPORAL_SHIFT = range(4)


def derive_seed(data: np.ndarray, seed: Optional[int]) -> int:
    if seed is not None:
        return int(seed)
    return int(sha256_hex(data.tobytes())[:16], 16)


def box_muller(rng: np.random.Generator, size: int) -> np.ndarray:
    """Standard normal samples from pairs of uniforms."""
    u1 = 1.0 - rng.random(size)  # (0, 1], keeps log finite
    u2 = rng.random(size)
    return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)


def snr_db(signal: np.ndarray, noisy: np.ndarray) -> float:
    s = signal.astype(float)
    signal_power = float(np.sum(s * s))
    if signal_power == 0.0:
        return 0.0
    diff = s - noisy.astype(float)
    noise_power = float(np.sum(diff * diff))
    return 10.0 * math.log10(signal_power / (noise_power + 1e-10))


def _error_test(kind: str, exc: Exception) -> ChallengeTest:
    return ChallengeTest(
        kind=kind,
        parameters={},
        expected_behavior=f"Should handle {kind.replace('_', ' ')} gracefully",
        actual_response={"error": f"{exc.__class__.__name__}: {exc}"},
        passed=False,
        confidence=0.0,
    )


class ChallengeResponder:
    """
    Active probing of a buffer. Captured sensor data reacts to small
    perturbations in predictable ways; generated data often does not.

    Four probes run concurrently: byte jitter, JPEG round-trip, Gaussian
    noise injection and a timestamp shift. Each probe draws randomness from
    its own generator seeded with [seed, probe index].
    """

    name = "ChallengeResponder"

    def __init__(self, config: Config):
        self.config: ChallengeConfig = config.challenge

    def perturbation(self, data: np.ndarray, seed: int) -> ChallengeTest:
        try:
            rng = np.random.default_rng([seed, PERTURBATION])
            cfg = self.config
            perturbed = data.astype(np.int16)
            idx = np.arange(0, data.size, cfg.perturbation_stride)
            jitter = np.floor(
                (rng.random(idx.size) - 0.5) * cfg.perturbation_intensity * 255
            ).astype(np.int16)
            perturbed[idx] = np.clip(perturbed[idx] + jitter, 0, 255)
            before = shannon_entropy(data)
            after = shannon_entropy(perturbed.astype(np.uint8))
            drift = abs(before - after)
            passed = drift < 0.5
            return ChallengeTest(
                kind="perturbation",
                parameters={"intensity": cfg.perturbation_intensity, "stride": cfg.perturbation_stride},
                expected_behavior="Entropy should remain stable under small perturbations",
                actual_response={"original_entropy": before, "perturbed_entropy": after, "drift": drift},
                passed=passed,
                confidence=max(0.0, 1.0 - drift),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Perturbation probe failed: %s", exc)
            return _error_test("perturbation", exc)

    def compression(self, data: np.ndarray, sensor_type: Optional[SensorType]) -> ChallengeTest:
        if sensor_type not in IMAGE_SENSORS:
            return ChallengeTest(
                kind="compression",
                parameters={"skipped": True},
                expected_behavior="N/A for non-image sensors",
                actual_response={},
                passed=True,
                confidence=1.0,
            )
        cfg = self.config
        try:
            if data.size < MIN_IMAGE_BYTES:
                raise ValueError(f"need at least {MIN_IMAGE_BYTES} bytes for an image probe")
            side = min(MAX_IMAGE_SIDE, int(math.isqrt(int(data.size))))
            image = data[: side * side].reshape(side, side)
            ok, encoded = cv2.imencode(
                ".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(cfg.compression_quality)]
            )
            if not ok:
                raise RuntimeError("JPEG encoding failed")
            decoded = cv2.imdecode(encoded, cv2.IMREAD_GRAYSCALE)
            if decoded is None or decoded.shape != image.shape:
                raise RuntimeError("JPEG round-trip changed the image shape")

            artifact = float(
                np.mean(np.abs(image.astype(float) - decoded.astype(float))) / 255.0
            )
            size_ratio = float(encoded.size) / float(image.size)
            a_low, a_high = cfg.artifact_band
            r_low, r_high = cfg.size_ratio_band
            passed = a_low < artifact < a_high and r_low < size_ratio < r_high
            return ChallengeTest(
                kind="compression",
                parameters={"quality": cfg.compression_quality, "side": side},
                expected_behavior="Compression artifacts should match real sensor imagery",
                actual_response={"artifact_score": artifact, "size_ratio": size_ratio},
                passed=passed,
                confidence=0.8 if passed else 0.3,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Compression probe failed: %s", exc)
            return _error_test("compression", exc)

    def noise_injection(self, data: np.ndarray, seed: int) -> ChallengeTest:
        cfg = self.config
        try:
            rng = np.random.default_rng([seed, NOISE_INJECTION])
            noise = box_muller(rng, data.size) * cfg.noise_std * 255
            noisy = np.clip(data.astype(float) + noise, 0, 255).astype(np.uint8)
            snr = snr_db(data, noisy)
            low, high = cfg.snr_band_db
            passed = low < snr < high
            return ChallengeTest(
                kind="noise_injection",
                parameters={"std_dev": cfg.noise_std},
                expected_behavior=f"SNR should degrade predictably ({low:g}-{high:g} dB)",
                actual_response={"snr": snr},
                passed=passed,
                confidence=0.85 if passed else 0.4,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Noise injection probe failed: %s", exc)
            return _error_test("noise_injection", exc)

    def temporal_shift(self, timestamps: Sequence[float]) -> ChallengeTest:
        shift = self.config.temporal_shift_seconds
        ts = np.asarray(timestamps, dtype=float)
        if ts.size < 2:
            return ChallengeTest(
                kind="temporal_shift",
                parameters={"skipped": True},
                expected_behavior="N/A without timestamp data",
                actual_response={},
                passed=True,
                confidence=1.0,
            )
        original = np.diff(ts)
        shifted = np.diff(ts + shift)
        # 1 ms tolerance
        match = bool(np.all(np.abs(original - shifted) < 1e-3))
        return ChallengeTest(
            kind="temporal_shift",
            parameters={"shift_seconds": shift},
            expected_behavior="Relative timing should remain constant after shift",
            actual_response={"intervals_match": match},
            passed=match,
            confidence=0.9 if match else 0.2,
        )

    async def challenge(
        self,
        buffer: bytes,
        sensor_type: Optional[SensorType],
        timestamps: Sequence[float] = (),
    ) -> ModuleResult:
        started = time.perf_counter()
        data = as_bytes_array(buffer, self.config.max_probe_bytes)
        seed = derive_seed(data, self.config.seed)
        log_params(
            logger,
            "challenge",
            {
                "sensor_type": sensor_type.value if sensor_type else None,
                "probe_bytes": int(data.size),
                "seeded": self.config.seed is not None,
            },
        )

        tests: List[ChallengeTest] = list(
            await asyncio.gather(
                asyncio.to_thread(self.perturbation, data, seed),
                asyncio.to_thread(self.compression, data, sensor_type),
                asyncio.to_thread(self.noise_injection, data, seed),
                asyncio.to_thread(self.temporal_shift, timestamps),
            )
        )

        passed = sum(1 for t in tests if t.passed)
        anomalies = [
            VerificationAnomaly(
                kind=AnomalyKind.CHALLENGE_FAILURE,
                severity=Severity.CRITICAL if t.confidence < 0.5 else Severity.HIGH,
                description=f"Failed {t.kind} challenge: {t.expected_behavior}",
                confidence=1.0 - t.confidence,
                detected_by=self.name,
            )
            for t in tests
            if not t.passed
        ]
        pass_rate = passed / len(tests)
        logger.info("Challenge: passed=%d/%d", passed, len(tests))

        test_dicts = [
            {
                "kind": t.kind,
                "parameters": t.parameters,
                "expected_behavior": t.expected_behavior,
                "actual_response": t.actual_response,
                "passed": t.passed,
                "confidence": t.confidence,
            }
            for t in tests
        ]
        return ModuleResult(
            module_name=self.name,
            score=10.0 * pass_rate,
            confidence=sum(t.confidence for t in tests) / len(tests),
            anomalies=anomalies,
            metadata={"tests": test_dicts, "pass_rate": pass_rate},
            processing_ms=(time.perf_counter() - started) * 1000.0,
            input_hash=sha256_hex(buffer),
            preconditions={
                "sensor_type": sensor_type.value if sensor_type else None,
                "buffer_size": len(buffer),
            },
            intermediate_outputs={"test_results": test_dicts},
        )
