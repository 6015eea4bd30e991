import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from dataclasses import dataclass, asdict, field
from typing import Optional, Dict, Any

from sensorproof import Config, DatasetMetadata, MetadataError
from sensorproof.engine import VerificationEngine, fallback_report
from sensorproof.evidence import write_evidence
from sensorproof.registry import RegistryStorage
from backend.storage.base import StorageBackend

logger = logging.getLogger(__name__)

MB = 1024 * 1024
METADATA_ONLY_THRESHOLD = 500 * MB
SAMPLED_THRESHOLD = 50 * MB
SAMPLE_CHUNK = 10 * MB
VERIFY_TIMEOUT_SECONDS = float(os.getenv("VERIFY_TIMEOUT_SECONDS", "300"))


@dataclass
class JobSpec:
    verification_id: str
    input_uri: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    output_uri_prefix: str = ""


@dataclass
class JobResult:
    verification_id: str
    status: str  # 'done' or 'failed'
    tier: Optional[str] = None
    verdict: Optional[str] = None
    confidence: Optional[float] = None
    report: Optional[Dict[str, Any]] = None
    evidence_index: Optional[str] = None
    engine_version: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def select_tier(size: int) -> str:
    if size > METADATA_ONLY_THRESHOLD:
        return 'metadata_only'
    if size >= SAMPLED_THRESHOLD:
        return 'sampled'
    return 'full'


def read_for_tier(storage: StorageBackend, object_key: str, size: int, tier: str) -> bytes:
    """Bytes the engine sees: everything, head+tail ranges, or nothing."""
    if tier == 'metadata_only':
        return b''
    if tier == 'sampled':
        head = storage.get_range(object_key, 0, SAMPLE_CHUNK)
        tail_start = max(SAMPLE_CHUNK, size - SAMPLE_CHUNK)
        tail = storage.get_range(object_key, tail_start, size - tail_start)
        return head + tail
    return storage.get_bytes(object_key)


def _run_with_budget(coro, timeout: float):
    # loop.close() does not wait on executor threads still busy after a timeout
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(asyncio.wait_for(coro, timeout))
    finally:
        loop.close()


def run_verification(
    job: JobSpec,
    storage: StorageBackend,
    config: Optional[Config] = None,
    registry_storage: Optional[RegistryStorage] = None,
    timeout: float = VERIFY_TIMEOUT_SECONDS,
) -> JobResult:
    """
    Execute a verification job.

    Reads the dataset for its tier, runs the engine within the time budget,
    uploads evidence, returns result.
    """
    config = config or Config()
    temp_dir = None
    try:
        try:
            metadata = DatasetMetadata.from_dict(job.metadata)
        except MetadataError as e:
            return JobResult(
                verification_id=job.verification_id,
                status='failed',
                error_code='INVALID_METADATA',
                error_message=str(e),
            )

        try:
            size = storage.object_size(job.input_uri)
            tier = select_tier(size)
            buffer = read_for_tier(storage, job.input_uri, size, tier)
        except Exception as e:
            return JobResult(
                verification_id=job.verification_id,
                status='failed',
                error_code='DOWNLOAD_FAILED',
                error_message=f"Failed to read input dataset: {str(e)}",
            )
        logger.info(f"Verification {job.verification_id}: {size} bytes, tier={tier}")

        engine = VerificationEngine(config, registry_storage=registry_storage)
        if tier == 'metadata_only':
            coro = engine.verify_metadata_only(metadata)
        else:
            coro = engine.verify(metadata, buffer)
        try:
            report = _run_with_budget(coro, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Verification {job.verification_id} exceeded {timeout}s budget")
            report = fallback_report(
                metadata.id,
                TimeoutError(f"verification exceeded {timeout:g}s budget"),
                timeout * 1000.0,
            )
        report_dict = report.to_dict()

        # Write evidence artifacts
        temp_dir = Path(tempfile.mkdtemp(prefix=f"sensorproof_{job.verification_id}_"))
        evidence_dir = temp_dir / "evidence"
        try:
            artifacts = write_evidence(str(evidence_dir), report_dict, config, buffer=buffer or None)
            logger.info(f"Evidence artifacts written: {list(artifacts.keys())}")
        except Exception as e:
            # Evidence writing failure is non-fatal
            logger.error(f"Evidence writing failed (non-fatal): {e}", exc_info=True)

        prefix = job.output_uri_prefix or f"evidence/{job.verification_id}"
        evidence_index = None
        if evidence_dir.is_dir():
            try:
                storage.upload_folder(str(evidence_dir), prefix)
                evidence_index = f"{prefix}/index.json"
            except Exception as e:
                return JobResult(
                    verification_id=job.verification_id,
                    status='failed',
                    tier=tier,
                    error_code='UPLOAD_FAILED',
                    error_message=f"Failed to upload evidence: {str(e)}",
                )

        return JobResult(
            verification_id=job.verification_id,
            status='done',
            tier=tier,
            verdict=report_dict['verdict'],
            confidence=report_dict['overall_confidence'],
            report=report_dict,
            evidence_index=evidence_index,
            engine_version=config.config_version,
        )

    except Exception as e:
        logger.exception(f"Verification {job.verification_id} failed")
        return JobResult(
            verification_id=job.verification_id,
            status='failed',
            error_code='INTERNAL_ERROR',
            error_message=f"Unexpected error: {str(e)}",
        )
    finally:
        if temp_dir and temp_dir.exists():
            shutil.rmtree(temp_dir, ignore_errors=True)
