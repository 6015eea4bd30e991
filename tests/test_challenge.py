from __future__ import annotations

import asyncio

import numpy as np

from sensorproof.challenge import ChallengeResponder, derive_seed, snr_db
from sensorproof.config import Config
from sensorproof.types import AnomalyKind, SensorType, Severity


def _tests_by_kind(result):
    return {t["kind"]: t for t in result.metadata["tests"]}


def test_natural_camera_data_passes_every_probe(natural_bytes: bytes) -> None:
    timestamps = 1_700_000_000.0 + np.arange(100) / 30.0
    result = asyncio.run(
        ChallengeResponder(Config()).challenge(natural_bytes, SensorType.CAMERA, timestamps)
    )
    tests = _tests_by_kind(result)
    assert set(tests) == {"perturbation", "compression", "noise_injection", "temporal_shift"}
    assert all(t["passed"] for t in tests.values()), tests
    assert result.score == 10.0
    assert result.anomalies == []
    assert 15.0 < tests["noise_injection"]["actual_response"]["snr"] < 40.0
    assert result.intermediate_outputs["test_results"] == result.metadata["tests"]


def test_probes_are_reproducible_for_identical_bytes(natural_bytes: bytes) -> None:
    responder = ChallengeResponder(Config())
    first = asyncio.run(responder.challenge(natural_bytes, SensorType.LIDAR))
    second = asyncio.run(responder.challenge(natural_bytes, SensorType.LIDAR))
    assert first.metadata["tests"] == second.metadata["tests"]
    assert first.input_hash == second.input_hash


def test_configured_seed_overrides_derived_seed() -> None:
    data = np.arange(10, dtype=np.uint8)
    assert derive_seed(data, 1234) == 1234
    assert derive_seed(data, None) == derive_seed(data.copy(), None)


def test_non_image_sensor_skips_compression(natural_bytes: bytes) -> None:
    result = asyncio.run(ChallengeResponder(Config()).challenge(natural_bytes, SensorType.IMU))
    compression = _tests_by_kind(result)["compression"]
    assert compression["passed"] is True
    assert compression["parameters"] == {"skipped": True}


def test_tiny_image_buffer_fails_compression_probe() -> None:
    result = asyncio.run(ChallengeResponder(Config()).challenge(bytes(10), SensorType.CAMERA))
    compression = _tests_by_kind(result)["compression"]
    assert compression["passed"] is False
    assert "error" in compression["actual_response"]
    failures = [a for a in result.anomalies if "compression" in a.description]
    assert failures[0].kind == AnomalyKind.CHALLENGE_FAILURE
    assert failures[0].severity == Severity.CRITICAL
    assert result.score < 10.0


def test_temporal_shift_skipped_without_timestamps() -> None:
    test = ChallengeResponder(Config()).temporal_shift([])
    assert test.passed is True
    assert test.parameters == {"skipped": True}


def test_snr_of_silent_signal_is_zero() -> None:
    zeros = np.zeros(16, dtype=np.uint8)
    assert snr_db(zeros, zeros) == 0.0
