from __future__ import annotations

import json
import threading
import time
from pathlib import Path

from backend.runner.runner import (
    METADATA_ONLY_THRESHOLD,
    SAMPLE_CHUNK,
    SAMPLED_THRESHOLD,
    JobSpec,
    read_for_tier,
    run_verification,
    select_tier,
)
from backend.storage import StorageConfig, create_storage_backend
from sensorproof.registry import FINGERPRINT_LOCKS, InMemoryRegistryStorage

from conftest import natural_buffer

METADATA = {
    "id": "walk-1",
    "uploader_id": "lab-7",
    "declared_source": {
        "sensor_types": ["camera", "lidar", "imu"],
        "robot_model": "Boston Dynamics Spot",
    },
    "file_size": 300_000,
    "file_format": "rosbag",
}


def _storage(tmp_path: Path):
    return create_storage_backend(StorageConfig(backend="local", base_path=str(tmp_path / "store")))


def test_tier_selection() -> None:
    assert select_tier(1024) == "full"
    assert select_tier(SAMPLED_THRESHOLD - 1) == "full"
    assert select_tier(SAMPLED_THRESHOLD) == "sampled"
    assert select_tier(METADATA_ONLY_THRESHOLD) == "sampled"
    assert select_tier(METADATA_ONLY_THRESHOLD + 1) == "metadata_only"


class RangeRecorder:
    def __init__(self):
        self.calls = []

    def get_range(self, key, start, length):
        self.calls.append((start, length))
        return b"r" * length


def test_sampled_tier_reads_head_and_tail() -> None:
    storage = RangeRecorder()
    size = 60 * 1024 * 1024
    data = read_for_tier(storage, "k", size, "sampled")
    assert storage.calls == [(0, SAMPLE_CHUNK), (size - SAMPLE_CHUNK, SAMPLE_CHUNK)]
    assert len(data) == 2 * SAMPLE_CHUNK
    assert read_for_tier(storage, "k", size, "metadata_only") == b""


def test_full_run_uploads_evidence(tmp_path: Path) -> None:
    storage = _storage(tmp_path)
    storage.put_bytes("uploads/v1/walk.bag", natural_buffer())
    job = JobSpec(
        verification_id="v1",
        input_uri="uploads/v1/walk.bag",
        metadata=METADATA,
        output_uri_prefix="evidence/v1",
    )
    result = run_verification(job, storage)

    assert result.status == "done"
    assert result.tier == "full"
    assert result.verdict == result.report["verdict"]
    assert result.evidence_index == "evidence/v1/index.json"
    index = json.loads(storage.get_bytes("evidence/v1/index.json"))
    assert "summary" in index
    summary = json.loads(storage.get_bytes("evidence/v1/summary.json"))
    assert summary["dataset_id"] == "walk-1"


def test_invalid_metadata_fails_job(tmp_path: Path) -> None:
    storage = _storage(tmp_path)
    job = JobSpec(verification_id="v2", input_uri="uploads/v2/x", metadata={"id": "x"})
    result = run_verification(job, storage)
    assert result.status == "failed"
    assert result.error_code == "INVALID_METADATA"


def test_missing_input_fails_job(tmp_path: Path) -> None:
    job = JobSpec(verification_id="v3", input_uri="uploads/v3/missing.bag", metadata=METADATA)
    result = run_verification(job, _storage(tmp_path))
    assert result.status == "failed"
    assert result.error_code == "DOWNLOAD_FAILED"


def test_budget_overrun_yields_suspicious_fallback(tmp_path: Path) -> None:
    storage = _storage(tmp_path)
    storage.put_bytes("uploads/v4/walk.bag", natural_buffer())
    job = JobSpec(verification_id="v4", input_uri="uploads/v4/walk.bag", metadata=METADATA)
    result = run_verification(job, storage, timeout=0)
    assert result.status == "done"
    assert result.verdict == "suspicious"
    assert result.report["error"]["type"] == "TimeoutError"
    assert result.evidence_index == "evidence/v4/index.json"


class SlowRegistryStorage(InMemoryRegistryStorage):
    """Widens the read-modify-write window so overlapping updates would collide."""

    def get(self, fingerprint):
        time.sleep(0.2)
        return super().get(fingerprint)


def test_concurrent_jobs_on_one_fingerprint_keep_every_upload(tmp_path: Path) -> None:
    storage = _storage(tmp_path)
    storage.put_bytes("uploads/shared/walk.bag", natural_buffer())
    registry_storage = SlowRegistryStorage()
    results = {}

    def work(verification_id):
        job = JobSpec(
            verification_id=verification_id,
            input_uri="uploads/shared/walk.bag",
            metadata=METADATA,
        )
        results[verification_id] = run_verification(job, storage, registry_storage=registry_storage)

    threads = [threading.Thread(target=work, args=(f"c{i}",)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    fingerprints = {r.report["sensor_fingerprint"] for r in results.values()}
    assert len(fingerprints) == 1
    registry = registry_storage.get(fingerprints.pop())
    assert registry.statistics.total_datasets == 2
    assert len(FINGERPRINT_LOCKS) == 0
