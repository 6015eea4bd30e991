from __future__ import annotations

import asyncio
import json
from typing import List, Optional

import pytest

from sensorproof import verify_dataset
from sensorproof.audit import verify_chain
from sensorproof.config import Config
from sensorproof.engine import VerificationEngine
from sensorproof.inline import UploadInfo, infer_sensor_types
from sensorproof.registry import RegistryStorage, RegistryStorageError
from sensorproof.scoring import decide_verdict
from sensorproof.types import (
    AnomalyKind,
    SensorRegistry,
    SensorType,
    Severity,
    Verdict,
    VerificationAnomaly,
)

from conftest import make_metadata, natural_buffer

VERDICT_ORDER = [
    Verdict.SYNTHETIC,
    Verdict.LIKELY_SYNTHETIC,
    Verdict.SUSPICIOUS,
    Verdict.LIKELY_AUTHENTIC,
    Verdict.AUTHENTIC,
]


def _verify(metadata, buffer, config: Optional[Config] = None, **kwargs):
    engine = VerificationEngine(config or Config(), **kwargs)
    return asyncio.run(engine.verify(metadata, buffer))


def _module(report, name):
    return next(r for r in report.module_results if r.module_name == name)


def _assert_bounded(report) -> None:
    assert 0.0 <= report.overall_confidence <= 1.0
    for score in (
        report.quality_score,
        report.metadata_score,
        report.source_match_score,
        report.cross_modal_score,
        report.challenge_response_score,
    ):
        assert 0.0 <= score <= 10.0
    for r in report.module_results:
        assert 0.0 <= r.score <= 10.0
        assert 0.0 <= r.confidence <= 1.0


def test_tiny_all_zero_dataset_is_not_authentic(zero_bytes: bytes) -> None:
    meta = make_metadata(declared_source={"sensor_types": ["camera"]}, file_size=100)
    report = _verify(meta, zero_bytes)
    _assert_bounded(report)
    assert report.verdict in (Verdict.SUSPICIOUS, Verdict.LIKELY_SYNTHETIC, Verdict.SYNTHETIC)
    metadata_result = _module(report, "MetadataValidator")
    assert any(
        "suspiciously small" in a.description and a.severity == Severity.HIGH
        for a in metadata_result.anomalies
    )
    anomaly_result = _module(report, "AnomalyDetector")
    assert any("zeros" in a.description for a in anomaly_result.anomalies)
    assert any("low entropy" in a.description for a in anomaly_result.anomalies)


def test_natural_multi_sensor_dataset_is_authentic(spot_metadata, natural_bytes: bytes) -> None:
    report = _verify(spot_metadata, natural_bytes)
    _assert_bounded(report)
    assert report.verdict in (Verdict.AUTHENTIC, Verdict.LIKELY_AUTHENTIC)
    assert report.metadata_score >= 7
    assert report.source_match_score >= 7
    assert [r.module_name for r in report.module_results] == [
        "MetadataValidator",
        "SensorSignatureClassifier",
        "AnomalyDetector",
        "TemporalSpatialChecker",
        "ChallengeResponder",
        "CrossModalChecker",
    ]
    assert not any(a.severity == Severity.CRITICAL for a in report.anomalies)
    assert report.error is None


def test_alternating_pattern_is_synthetic(spot_metadata, alternating_bytes: bytes) -> None:
    report = _verify(spot_metadata, alternating_bytes)
    assert report.verdict in (Verdict.LIKELY_SYNTHETIC, Verdict.SYNTHETIC)
    anomaly_result = _module(report, "AnomalyDetector")
    assert any("periodic" in a.description for a in anomaly_result.anomalies)
    assert any("Suspicious data distribution" in a.description for a in anomaly_result.anomalies)
    assert _module(report, "SensorSignatureClassifier").metadata["synthetic_probability"] > 0.7


def test_zero_imu_stream_breaks_cross_modal_consistency(natural_bytes: bytes) -> None:
    meta = make_metadata(declared_source={"sensor_types": ["camera", "imu"]})
    buffer = natural_bytes[:100_000] + bytes(100_000)
    report = _verify(meta, buffer)
    cross = _module(report, "CrossModalChecker")
    assert [a.kind for a in cross.anomalies] == [AnomalyKind.CROSS_MODAL_INCONSISTENCY]
    alignment = cross.metadata["alignments"][0]
    assert alignment["cross_correlation"] < 0.3
    assert alignment["embedding_distance"] > 0.7


def test_identical_inputs_reproduce_root_and_hash(spot_metadata, natural_bytes: bytes) -> None:
    first = _verify(spot_metadata, natural_bytes)
    second = _verify(spot_metadata, natural_bytes)
    assert first.merkle_root
    assert first.merkle_root == second.merkle_root
    assert first.reproducibility_hash == second.reproducibility_hash
    assert [r.score for r in first.module_results] == [r.score for r in second.module_results]


def test_parallel_and_sequential_runs_agree(spot_metadata, natural_bytes: bytes) -> None:
    sequential = Config()
    sequential.parallel_processing = False
    a = _verify(spot_metadata, natural_bytes)
    b = _verify(spot_metadata, natural_bytes, sequential)
    assert [(r.module_name, r.score, r.confidence) for r in a.module_results] == [
        (r.module_name, r.score, r.confidence) for r in b.module_results
    ]
    assert a.verdict == b.verdict
    assert a.merkle_root == b.merkle_root


def test_audit_chain_covers_every_module(spot_metadata, natural_bytes: bytes) -> None:
    report = _verify(spot_metadata, natural_bytes)
    assert len(report.audit_chain) == len(report.module_results)
    assert verify_chain(report.audit_chain, report.merkle_root)

    config = Config()
    config.enable_audit_chain = False
    bare = _verify(spot_metadata, natural_bytes, config)
    assert bare.audit_chain == ()
    assert bare.merkle_root == ""


def test_optional_modules_can_be_disabled(spot_metadata, natural_bytes: bytes) -> None:
    config = Config()
    config.enable_challenge_response = False
    config.enable_cross_modal = False
    config.enable_reputation = False
    report = _verify(spot_metadata, natural_bytes, config)
    assert len(report.module_results) == 4
    assert report.challenge_response_score == 0.0
    assert report.sensor_fingerprint is None


def test_report_serialises_to_json(spot_metadata, natural_bytes: bytes) -> None:
    as_dict = _verify(spot_metadata, natural_bytes).to_dict()
    decoded = json.loads(json.dumps(as_dict))
    assert decoded["verdict"] == as_dict["verdict"]
    assert decoded["uploader_reputation"]["grade"] == "B"


def test_failing_module_is_contained(monkeypatch, spot_metadata, natural_bytes: bytes) -> None:
    engine = VerificationEngine(Config())

    def boom(buffer):
        raise ValueError("detector exploded")

    monkeypatch.setattr(engine.anomaly_detector, "detect", boom)
    report = asyncio.run(engine.verify(spot_metadata, natural_bytes))
    failed = _module(report, "AnomalyDetector")
    assert failed.score == 0.0
    assert failed.confidence == 0.0
    assert failed.anomalies[0].severity == Severity.HIGH
    assert "detector exploded" in failed.anomalies[0].description
    assert len(report.module_results) == 6


def test_orchestration_failure_degrades_to_suspicious(monkeypatch, spot_metadata, natural_bytes) -> None:
    engine = VerificationEngine(Config())

    def broken(*args, **kwargs):
        raise RuntimeError("no inputs for you")

    monkeypatch.setattr(engine, "build_inputs", broken)
    report = asyncio.run(engine.verify(spot_metadata, natural_bytes))
    assert report.verdict == Verdict.SUSPICIOUS
    assert report.overall_confidence == 0.0
    assert report.audit_chain == ()
    assert report.error == {"message": "no inputs for you", "type": "RuntimeError"}
    assert report.anomalies[0].severity == Severity.CRITICAL


class FailingStorage(RegistryStorage):
    def get(self, fingerprint: str) -> Optional[SensorRegistry]:
        raise RegistryStorageError("database is down")

    def set(self, fingerprint: str, registry: SensorRegistry) -> None:
        raise RegistryStorageError("database is down")

    def get_by_uploader(self, uploader_id: str) -> List[SensorRegistry]:
        raise RegistryStorageError("database is down")


def test_registry_failure_omits_reputation(spot_metadata, natural_bytes: bytes) -> None:
    report = _verify(spot_metadata, natural_bytes, registry_storage=FailingStorage())
    assert report.uploader_reputation is None
    assert report.error is None
    assert report.verdict in (Verdict.AUTHENTIC, Verdict.LIKELY_AUTHENTIC)


def test_reputation_accumulates_per_engine(spot_metadata, natural_bytes: bytes) -> None:
    engine = VerificationEngine(Config())
    asyncio.run(engine.verify(spot_metadata, natural_bytes))
    report = asyncio.run(engine.verify(spot_metadata, natural_bytes))
    assert report.uploader_reputation.upload_count == 2
    assert report.uploader_reputation.uploader_id == "lab-7"

    fresh = _verify(spot_metadata, natural_bytes)
    assert fresh.uploader_reputation.upload_count == 1


def test_metadata_only_tier(spot_metadata) -> None:
    engine = VerificationEngine(Config())
    report = asyncio.run(engine.verify_metadata_only(spot_metadata))
    assert [r.module_name for r in report.module_results] == ["MetadataValidator"]
    assert report.metadata_score == 9.0
    assert report.reproducibility_hash


def test_inline_verification_infers_sensors() -> None:
    buffer = natural_buffer(50_000, seed=5)
    upload = UploadInfo(
        id="up-1",
        uploader_id="web",
        filename="front_camera.bin",
        file_size=len(buffer),
        file_type="application/octet-stream",
    )
    report = asyncio.run(VerificationEngine(Config()).verify_inline(upload, buffer))
    assert report.dataset_id == "up-1"
    assert report.uploader_reputation.uploader_id == "web"
    assert "CrossModalChecker" not in [r.module_name for r in report.module_results]


@pytest.mark.parametrize(
    "filename,file_type,expected",
    [
        ("scan.png", "image/png", SensorType.CAMERA),
        ("run3_lidar.pcd", "application/octet-stream", SensorType.LIDAR),
        ("imu_log.csv", "text/csv", SensorType.IMU),
        ("track.gnss", "application/octet-stream", SensorType.GPS),
        ("mystery.bin", "application/octet-stream", SensorType.CAMERA),
    ],
)
def test_infer_sensor_types(filename, file_type, expected) -> None:
    assert infer_sensor_types(filename, file_type) == (expected,)


def test_sample_rate_keeps_every_nth_frame() -> None:
    config = Config()
    config.sample_rate = 2
    engine = VerificationEngine(config)
    assert len(engine.prepare_buffer(bytes(1000))) == 500


def test_verify_dataset_wrapper(spot_metadata, natural_bytes: bytes) -> None:
    report = verify_dataset(spot_metadata, natural_bytes)
    assert report.verdict in (Verdict.AUTHENTIC, Verdict.LIKELY_AUTHENTIC)


def _anomaly(severity: Severity) -> VerificationAnomaly:
    return VerificationAnomaly(
        kind=AnomalyKind.QUALITY_ISSUE,
        severity=severity,
        description="x",
        confidence=0.9,
        detected_by="test",
    )


def test_verdict_never_improves_with_severity() -> None:
    config = Config()
    ranks = [
        VERDICT_ORDER.index(decide_verdict(9.0, 0.9, [_anomaly(s)], config))
        for s in (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)
    ]
    assert ranks == sorted(ranks, reverse=True)
    assert decide_verdict(9.0, 0.9, [], config) == Verdict.AUTHENTIC
    assert decide_verdict(9.0, 0.9, [_anomaly(Severity.HIGH)] * 3, config) == Verdict.LIKELY_SYNTHETIC
    assert decide_verdict(9.0, 0.9, [_anomaly(Severity.CRITICAL)], config) == Verdict.SYNTHETIC


def test_strict_mode_raises_confidence_bar() -> None:
    config = Config()
    assert decide_verdict(9.0, 0.8, [], config) == Verdict.LIKELY_AUTHENTIC
    config.strict_mode = True
    assert decide_verdict(9.0, 0.8, [], config) == Verdict.SUSPICIOUS
    assert decide_verdict(4.0, 0.99, [], Config()) == Verdict.SUSPICIOUS


def test_old_upload_date_does_not_make_derived_timestamps_impossible(natural_bytes: bytes) -> None:
    fresh = make_metadata()
    old = make_metadata(uploaded_at="2019-03-01T12:00:00+00:00")
    fresh_report = _verify(fresh, natural_bytes)
    old_report = _verify(old, natural_bytes)

    assert old_report.verdict == fresh_report.verdict
    assert old_report.verdict in (Verdict.AUTHENTIC, Verdict.LIKELY_AUTHENTIC)
    assert not [a for a in old_report.anomalies if a.severity == Severity.CRITICAL]
    assert _module(old_report, "TemporalSpatialChecker").score == _module(
        fresh_report, "TemporalSpatialChecker"
    ).score


class TickingClock:
    def __init__(self, start: float = 1_700_000_000.0, step: float = 5.0):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def test_audit_durations_follow_the_run_clock(spot_metadata, natural_bytes: bytes) -> None:
    report = _verify(spot_metadata, natural_bytes, clock=TickingClock())
    chain = report.audit_chain
    assert len(chain) == 6
    # the chain opens before the first module runs
    assert chain[0].duration_ms >= 5000.0
    for previous, step in zip(chain, chain[1:]):
        assert step.duration_ms == pytest.approx((step.timestamp - previous.timestamp) * 1000.0)
        assert step.duration_ms == pytest.approx(5000.0)
