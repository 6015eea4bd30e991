from __future__ import annotations

import copy
import hashlib
import json
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from threading import Lock
from typing import Any, Callable, Dict, Iterator, List, Optional

import numpy as np

from .config import Config, RegistryConfig
from .types import (
    DatasetMetadata,
    HistoryEntry,
    RegistryStatistics,
    ReputationGrade,
    ReputationScore,
    SensorRegistry,
    Verdict,
)
from .utils.logging import get_logger

logger = get_logger(__name__)

GRADE_VALUES = {
    ReputationGrade.A_PLUS: 12,
    ReputationGrade.A: 10,
    ReputationGrade.B_PLUS: 8,
    ReputationGrade.B: 6,
    ReputationGrade.C: 4,
    ReputationGrade.D: 2,
    ReputationGrade.F: 0,
}

FLAG_SYNTHETIC = "High synthetic rate"
FLAG_ANOMALIES = "Frequent anomalies detected"
FLAG_LOW_CONFIDENCE = "Consistently low confidence"
FLAG_BURST = "Burst upload pattern detected"
FLAG_REGULAR = "Bot-like regular upload intervals"
FLAG_QUALITY_DROP = "Recent quality degradation"


class RegistryStorageError(RuntimeError):
    """Raised by storage backends when the registry cannot be read or written."""


class KeyedLocks:
    """
    Process-wide mutexes keyed by string.

    An entry lives only while some thread holds or waits on it, so the
    table stays as small as the set of fingerprints in flight.
    """

    def __init__(self):
        self._guard = Lock()
        self._entries: Dict[str, List[Any]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = [Lock(), 0]
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


# One table per process, shared by every storage instance.
FINGERPRINT_LOCKS = KeyedLocks()

RegistryMutation = Callable[[Optional[SensorRegistry]], SensorRegistry]


class RegistryStorage(ABC):
    @abstractmethod
    def get(self, fingerprint: str) -> Optional[SensorRegistry]:
        ...

    @abstractmethod
    def set(self, fingerprint: str, registry: SensorRegistry) -> None:
        ...

    @abstractmethod
    def get_by_uploader(self, uploader_id: str) -> List[SensorRegistry]:
        ...

    def update(self, fingerprint: str, mutate: RegistryMutation) -> SensorRegistry:
        """Atomic read-modify-write of one fingerprint within this process."""
        with FINGERPRINT_LOCKS.hold(fingerprint):
            registry = mutate(self.get(fingerprint))
            self.set(fingerprint, registry)
            return registry


class InMemoryRegistryStorage(RegistryStorage):
    def __init__(self):
        self._data: Dict[str, SensorRegistry] = {}
        self._lock = Lock()

    def get(self, fingerprint: str) -> Optional[SensorRegistry]:
        with self._lock:
            registry = self._data.get(fingerprint)
            return copy.deepcopy(registry) if registry is not None else None

    def set(self, fingerprint: str, registry: SensorRegistry) -> None:
        with self._lock:
            self._data[fingerprint] = copy.deepcopy(registry)

    def get_by_uploader(self, uploader_id: str) -> List[SensorRegistry]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._data.values()
                if r.reputation.uploader_id == uploader_id
            ]


def generate_fingerprint(metadata: DatasetMetadata, signal_characteristics: Dict[str, Any]) -> str:
    source = metadata.declared_source
    components = {
        "robot_model": source.robot_model,
        "sensor_types": sorted(s.value for s in source.sensor_types),
        "hardware_specs": source.hardware_specs,
        "signal_signature": signal_characteristics,
    }
    payload = json.dumps(components, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def calculate_grade(
    synthetic_rate: float,
    anomaly_rate: float,
    avg_confidence: float,
    upload_count: int,
    min_uploads: int = 5,
) -> ReputationGrade:
    # New sources start at B
    if upload_count < min_uploads:
        return ReputationGrade.B
    score = (1 - synthetic_rate) * 0.4 + (1 - anomaly_rate) * 0.3 + avg_confidence * 0.3
    if score >= 0.95:
        return ReputationGrade.A_PLUS
    if score >= 0.85:
        return ReputationGrade.A
    if score >= 0.75:
        return ReputationGrade.B_PLUS
    if score >= 0.65:
        return ReputationGrade.B
    if score >= 0.50:
        return ReputationGrade.C
    if score >= 0.35:
        return ReputationGrade.D
    return ReputationGrade.F


def closest_grade(value: float) -> ReputationGrade:
    best = ReputationGrade.B
    for grade, grade_value in GRADE_VALUES.items():
        if abs(grade_value - value) < abs(GRADE_VALUES[best] - value):
            best = grade
    return best


class SensorRegistryManager:
    """
    Fingerprint registry with rolling statistics and reputation.

    Each update is one `storage.update` call, so read-modify-write of a
    fingerprint is serialised by the storage for every manager in the
    process (and, for SQL storage, across processes); distinct
    fingerprints update in parallel.
    """

    def __init__(
        self,
        storage: RegistryStorage,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.config: RegistryConfig = (config or Config()).registry
        self.clock = clock

    generate_fingerprint = staticmethod(generate_fingerprint)

    def update_registry(
        self,
        fingerprint: str,
        dataset_id: str,
        uploader_id: str,
        verdict: Verdict,
        confidence: float,
        metadata: DatasetMetadata,
    ) -> SensorRegistry:
        def apply(registry: Optional[SensorRegistry]) -> SensorRegistry:
            now = self.clock()
            if registry is None:
                source = metadata.declared_source
                registry = SensorRegistry(
                    fingerprint=fingerprint,
                    robot_model=source.robot_model,
                    sensor_types=list(source.sensor_types),
                    hardware_signature=json.dumps(source.hardware_specs, sort_keys=True, default=str),
                    statistics=RegistryStatistics(),
                    reputation=ReputationScore(
                        fingerprint=fingerprint,
                        uploader_id=uploader_id,
                        upload_count=0,
                        avg_confidence=0.0,
                        synthetic_rate=0.0,
                        anomaly_rate=0.0,
                        grade=ReputationGrade.B,
                        flags=[],
                        first_seen_at=now,
                        last_seen_at=now,
                    ),
                )

            stats = registry.statistics
            total = stats.total_datasets
            stats.avg_confidence = (stats.avg_confidence * total + confidence) / (total + 1)
            stats.total_datasets = total + 1
            if verdict.is_authentic:
                stats.authentic += 1
            elif verdict.is_synthetic:
                stats.synthetic += 1
            else:
                stats.suspicious += 1

            registry.history.append(
                HistoryEntry(dataset_id=dataset_id, timestamp=now, verdict=verdict, confidence=confidence)
            )
            limit = self.config.history_limit
            if len(registry.history) > limit:
                registry.history = registry.history[-limit:]

            registry.reputation = self.calculate_reputation(registry, uploader_id, now)
            return registry

        registry = self.storage.update(fingerprint, apply)

        logger.info(
            "Registry %s: uploads=%d grade=%s flags=%s",
            fingerprint,
            registry.statistics.total_datasets,
            registry.reputation.grade.value,
            registry.reputation.flags,
        )
        return copy.deepcopy(registry)

    def calculate_reputation(self, registry: SensorRegistry, uploader_id: str, now: float) -> ReputationScore:
        cfg = self.config
        stats = registry.statistics
        history = registry.history
        upload_count = stats.total_datasets

        synthetic_rate = stats.synthetic / upload_count
        anomaly_rate = (stats.synthetic + stats.suspicious) / upload_count
        recent = history[-cfg.recent_window :]
        avg_confidence = sum(h.confidence for h in recent) / len(recent) if recent else 0.0

        grade = calculate_grade(
            synthetic_rate, anomaly_rate, avg_confidence, upload_count, cfg.min_uploads_for_grade
        )

        flags: List[str] = []
        if synthetic_rate > 0.3:
            flags.append(FLAG_SYNTHETIC)
        if anomaly_rate > 0.5:
            flags.append(FLAG_ANOMALIES)
        if upload_count > 50 and avg_confidence < 0.5:
            flags.append(FLAG_LOW_CONFIDENCE)
        if self.detect_burst(history, now):
            flags.append(FLAG_BURST)
        if self.detect_regular_intervals(history):
            flags.append(FLAG_REGULAR)
        if self.detect_quality_drop(history):
            flags.append(FLAG_QUALITY_DROP)

        return ReputationScore(
            fingerprint=registry.fingerprint,
            uploader_id=uploader_id,
            upload_count=upload_count,
            avg_confidence=avg_confidence,
            synthetic_rate=synthetic_rate,
            anomaly_rate=anomaly_rate,
            grade=grade,
            flags=flags,
            first_seen_at=registry.reputation.first_seen_at,
            last_seen_at=now,
        )

    def detect_burst(self, history: List[HistoryEntry], now: float) -> bool:
        if len(history) < 10:
            return False
        cutoff = now - self.config.burst_window_seconds
        recent = [h for h in history[-20:] if h.timestamp > cutoff]
        return len(recent) > self.config.burst_max_uploads

    @staticmethod
    def detect_regular_intervals(history: List[HistoryEntry]) -> bool:
        if len(history) < 10:
            return False
        intervals = np.diff([h.timestamp for h in history[-20:]])
        if intervals.size <= 5:
            return False
        mean = float(intervals.mean())
        return mean > 0 and float(intervals.std()) < 0.05 * mean

    @staticmethod
    def detect_quality_drop(history: List[HistoryEntry]) -> bool:
        if len(history) < 10:
            return False
        recent = history[-5:]
        older = history[-15:-5]
        recent_avg = sum(h.confidence for h in recent) / len(recent)
        older_avg = sum(h.confidence for h in older) / len(older)
        return older_avg - recent_avg > 0.3

    def get_registry(self, fingerprint: str) -> Optional[SensorRegistry]:
        return self.storage.get(fingerprint)

    def get_reputation(self, fingerprint: str) -> Optional[ReputationScore]:
        registry = self.storage.get(fingerprint)
        return copy.deepcopy(registry.reputation) if registry is not None else None

    def get_uploader_profile(self, uploader_id: str) -> Dict[str, Any]:
        sensors = self.storage.get_by_uploader(uploader_id)
        flags: List[str] = []
        for s in sensors:
            for flag in s.reputation.flags:
                if flag not in flags:
                    flags.append(flag)
        if sensors:
            mean_value = sum(GRADE_VALUES[s.reputation.grade] for s in sensors) / len(sensors)
        else:
            mean_value = GRADE_VALUES[ReputationGrade.B]
        return {
            "uploader_id": uploader_id,
            "total_sensors": len(sensors),
            "total_uploads": sum(s.statistics.total_datasets for s in sensors),
            "avg_reputation": closest_grade(mean_value).value,
            "flags": flags,
            "sensors": [s.to_dict() for s in sensors],
        }
