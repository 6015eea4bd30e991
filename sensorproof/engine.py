from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .anomaly import AnomalyDetector
from .audit import AuditChainBuilder, canonical_json, compute_merkle_root, reproducibility_hash
from .base import AnalysisInput, AnalysisModule, failure_result, guarded
from .challenge import ChallengeResponder
from .config import Config
from .cross_modal import CrossModalChecker, SensorStream
from .inline import UploadInfo, build_inline_metadata
from .metadata import MetadataValidator
from .profiles import lookup
from .registry import (
    InMemoryRegistryStorage,
    RegistryStorage,
    RegistryStorageError,
    SensorRegistryManager,
)
from .scoring import aggregate
from .signature import SensorSignatureClassifier
from .temporal import TemporalSpatialChecker
from .types import (
    AnomalyKind,
    DatasetMetadata,
    ModuleResult,
    ReputationScore,
    Severity,
    Verdict,
    VerificationAnomaly,
    VerificationReport,
)
from .utils.logging import get_logger, log_params
from .utils.signal import frame_clock, sha256_hex, signal_characteristics, subsample_frames

logger = get_logger(__name__)


def expected_frame_rate(metadata: DatasetMetadata) -> Optional[float]:
    """Declared hardware frame rate, else the catalog rate for the device."""
    declared = metadata.declared_source.hardware_specs.get("frame_rate")
    if declared is not None:
        try:
            rate = float(declared)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric frame_rate %r", declared)
        else:
            if rate > 0:
                return rate
    profile = lookup(metadata.declared_source.robot_model)
    if profile is not None and profile.frame_rate:
        return profile.frame_rate
    return None


def fallback_report(
    dataset_id: str,
    exc: BaseException,
    processing_ms: float,
    input_hash: str = "",
) -> VerificationReport:
    """Degraded report returned when the orchestration itself fails."""
    return VerificationReport(
        dataset_id=dataset_id,
        verdict=Verdict.SUSPICIOUS,
        overall_confidence=0.0,
        quality_score=0.0,
        metadata_score=0.0,
        source_match_score=0.0,
        cross_modal_score=0.0,
        challenge_response_score=0.0,
        anomalies=(
            VerificationAnomaly(
                kind=AnomalyKind.QUALITY_ISSUE,
                severity=Severity.CRITICAL,
                description=f"Verification failed: {exc}",
                confidence=1.0,
                detected_by="VerificationEngine",
            ),
        ),
        module_results=(),
        explanation="Verification process encountered an error",
        badges=(),
        timestamp=datetime.now(timezone.utc),
        processing_ms=processing_ms,
        audit_chain=(),
        merkle_root="",
        reproducibility_hash=input_hash,
        error={"message": str(exc), "type": exc.__class__.__name__},
    )


def record_results(audit: Optional[AuditChainBuilder], results: Sequence[ModuleResult]) -> None:
    """Append results to the chain in order, as they become available."""
    if audit is None:
        return
    for result in results:
        audit.record_module_result(result)


class VerificationEngine:
    """
    Orchestrates the analysis modules over one dataset and folds their
    results into a VerificationReport.

    The registry storage is owned by the engine instance, so separate
    engines never share reputation state unless given the same storage.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        registry_storage: Optional[RegistryStorage] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or Config()
        self.clock = clock
        self.metadata_validator = MetadataValidator(self.config)
        self.signature_classifier = SensorSignatureClassifier(self.config)
        self.anomaly_detector = AnomalyDetector(self.config)
        self.temporal_checker = TemporalSpatialChecker(self.config)
        self.challenge_responder = ChallengeResponder(self.config)
        self.cross_modal_checker = CrossModalChecker(self.config)
        self.registry = SensorRegistryManager(
            registry_storage or InMemoryRegistryStorage(), self.config, clock=clock
        )

    def open_audit(self) -> Optional[AuditChainBuilder]:
        """Chain for one run, started before the first module; None when disabled."""
        if not self.config.enable_audit_chain:
            return None
        return AuditChainBuilder(clock=self.clock)

    @property
    def core_modules(self) -> List[AnalysisModule]:
        return [
            self.metadata_validator,
            self.signature_classifier,
            self.anomaly_detector,
            self.temporal_checker,
        ]

    def prepare_buffer(self, buffer: bytes) -> bytes:
        rate = self.config.sample_rate
        if rate and rate > 1:
            return subsample_frames(buffer, rate, self.config.temporal.frame_bytes)
        return buffer

    def timestamps_for(
        self,
        metadata: DatasetMetadata,
        n_bytes: int,
        rate: Optional[float],
        end_time: float,
    ) -> np.ndarray:
        """Declared telemetry timestamps, else a frame clock ending at `end_time`."""
        if metadata.telemetry is not None and metadata.telemetry.timestamps:
            return np.asarray(metadata.telemetry.timestamps, dtype=float)
        cfg = self.config.temporal
        return frame_clock(
            n_bytes,
            rate or cfg.default_frame_rate,
            end_time=end_time,
            frame_bytes=cfg.frame_bytes,
            max_frames=cfg.max_frames,
        )

    def build_inputs(self, metadata: DatasetMetadata, buffer: bytes, input_hash: str) -> AnalysisInput:
        rate = expected_frame_rate(metadata)
        has_telemetry = metadata.telemetry is not None and bool(metadata.telemetry.timestamps)
        if rate is None and not has_telemetry:
            # the derived clock runs at the default rate
            rate = self.config.temporal.default_frame_rate
        track = metadata.telemetry.gps_track if metadata.telemetry is not None else ()
        # derived clocks end at the run's reference time, never at uploaded_at
        reference_time = self.clock()
        return AnalysisInput(
            metadata=metadata,
            buffer=buffer,
            input_hash=input_hash,
            timestamps=self.timestamps_for(metadata, len(buffer), rate, reference_time),
            gps_track=track,
            expected_frame_rate=rate,
            reference_time=reference_time,
        )

    def split_streams(
        self, metadata: DatasetMetadata, buffer: bytes, end_time: float
    ) -> List[SensorStream]:
        sensors = metadata.sensor_types
        per_sensor = len(buffer) // len(sensors)
        rate = expected_frame_rate(metadata)
        streams = []
        for index, sensor in enumerate(sensors):
            chunk = buffer[index * per_sensor : (index + 1) * per_sensor]
            streams.append(
                SensorStream(
                    sensor_type=sensor,
                    data=chunk,
                    timestamps=self.timestamps_for(metadata, len(chunk), rate, end_time),
                    gps=metadata.declared_source.gps,
                )
            )
        return streams

    async def run_core(self, inputs: AnalysisInput) -> List[ModuleResult]:
        modules = self.core_modules
        if self.config.parallel_processing:
            results = await asyncio.gather(*(asyncio.to_thread(m.run, inputs) for m in modules))
            return list(results)
        return [await asyncio.to_thread(m.run, inputs) for m in modules]

    async def run_challenge(self, inputs: AnalysisInput) -> ModuleResult:
        sensors = inputs.metadata.sensor_types
        started = time.perf_counter()
        try:
            return await self.challenge_responder.challenge(
                inputs.buffer, sensors[0] if sensors else None, inputs.timestamps
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("ChallengeResponder raised, continuing with a failure result")
            result = failure_result(self.challenge_responder.name, exc)
            result.processing_ms = (time.perf_counter() - started) * 1000.0
            result.input_hash = inputs.input_hash
            return result

    async def run_cross_modal(self, inputs: AnalysisInput) -> ModuleResult:
        streams = self.split_streams(inputs.metadata, inputs.buffer, inputs.reference_time)
        checker = self.cross_modal_checker
        result = await asyncio.to_thread(guarded, checker.name, lambda: checker.check(streams))
        if result.input_hash is None:
            result.input_hash = inputs.input_hash
        return result

    def update_reputation(
        self,
        metadata: DatasetMetadata,
        buffer: bytes,
        verdict: Verdict,
        confidence: float,
    ) -> Tuple[str, Optional[ReputationScore]]:
        fingerprint = self.registry.generate_fingerprint(metadata, signal_characteristics(buffer))
        try:
            registry = self.registry.update_registry(
                fingerprint, metadata.id, metadata.uploader_id, verdict, confidence, metadata
            )
        except RegistryStorageError as exc:
            logger.warning("Registry update failed for %s: %s", fingerprint, exc)
            return fingerprint, None
        return fingerprint, registry.reputation

    async def verify(self, metadata: DatasetMetadata, buffer: bytes) -> VerificationReport:
        """Run every enabled module over `buffer`. Never raises."""
        started = time.perf_counter()
        try:
            return await self._verify(metadata, buffer, started)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Verification of %s failed", getattr(metadata, "id", "?"))
            return fallback_report(
                getattr(metadata, "id", ""), exc, (time.perf_counter() - started) * 1000.0
            )

    async def _verify(self, metadata: DatasetMetadata, buffer: bytes, started: float) -> VerificationReport:
        cfg = self.config
        buffer = self.prepare_buffer(buffer)
        input_hash = sha256_hex(buffer)
        log_params(
            logger,
            "verify",
            {
                "dataset_id": metadata.id,
                "bytes": len(buffer),
                "sensors": [s.value for s in metadata.sensor_types],
                "parallel": cfg.parallel_processing,
                "strict": cfg.strict_mode,
                "config_version": cfg.config_version,
            },
        )

        audit = self.open_audit()
        inputs = self.build_inputs(metadata, buffer, input_hash)
        results = await self.run_core(inputs)
        record_results(audit, results)
        if cfg.enable_challenge_response:
            results.append(await self.run_challenge(inputs))
            record_results(audit, results[-1:])
        if cfg.enable_cross_modal and len(metadata.sensor_types) > 1:
            results.append(await self.run_cross_modal(inputs))
            record_results(audit, results[-1:])

        summary = aggregate(results, cfg)

        fingerprint = None
        reputation: Optional[ReputationScore] = None
        if cfg.enable_reputation:
            fingerprint, reputation = await asyncio.to_thread(
                self.update_reputation, metadata, buffer, summary["verdict"], summary["avg_confidence"]
            )

        return self._build_report(
            metadata, input_hash, results, summary, started, audit, fingerprint, reputation
        )

    def _build_report(
        self,
        metadata: DatasetMetadata,
        input_hash: str,
        results: Sequence[ModuleResult],
        summary: dict,
        started: float,
        audit: Optional[AuditChainBuilder] = None,
        fingerprint: Optional[str] = None,
        reputation: Optional[ReputationScore] = None,
    ) -> VerificationReport:
        chain = tuple(audit.get_chain()) if audit is not None else ()
        root = compute_merkle_root([s.step_hash for s in chain])

        return VerificationReport(
            dataset_id=metadata.id,
            verdict=summary["verdict"],
            overall_confidence=summary["avg_confidence"],
            quality_score=summary["quality_score"],
            metadata_score=summary["metadata_score"],
            source_match_score=summary["source_match_score"],
            cross_modal_score=summary["cross_modal_score"],
            challenge_response_score=summary["challenge_response_score"],
            anomalies=tuple(summary["anomalies"]),
            module_results=tuple(results),
            explanation=summary["explanation"],
            badges=tuple(summary["badges"]),
            timestamp=datetime.now(timezone.utc),
            processing_ms=(time.perf_counter() - started) * 1000.0,
            audit_chain=chain,
            merkle_root=root,
            reproducibility_hash=reproducibility_hash(metadata.id, input_hash, results, root),
            sensor_fingerprint=fingerprint,
            uploader_reputation=reputation,
        )

    async def verify_inline(self, upload: UploadInfo, buffer: bytes) -> VerificationReport:
        metadata = build_inline_metadata(upload)
        logger.info("Inline verification of %s as %s", upload.filename, [s.value for s in metadata.sensor_types])
        return await self.verify(metadata, buffer)

    async def verify_metadata_only(self, metadata: DatasetMetadata) -> VerificationReport:
        """Metadata tier for files too large to scan; no buffer is read."""
        started = time.perf_counter()
        input_hash = sha256_hex(canonical_json(metadata.to_dict()).encode("utf-8"))
        try:
            audit = self.open_audit()
            inputs = AnalysisInput(
                metadata=metadata,
                buffer=b"",
                input_hash=input_hash,
                timestamps=np.array([], dtype=float),
                reference_time=self.clock(),
            )
            results = [await asyncio.to_thread(self.metadata_validator.run, inputs)]
            record_results(audit, results)
            summary = aggregate(results, self.config)
            return self._build_report(metadata, input_hash, results, summary, started, audit)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Metadata-only verification of %s failed", metadata.id)
            return fallback_report(metadata.id, exc, (time.perf_counter() - started) * 1000.0)
