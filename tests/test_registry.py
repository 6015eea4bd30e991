from __future__ import annotations

import threading
import time

import pytest

from backend.database.db import init_db
from backend.database.registry_store import SqlRegistryStorage
from sensorproof.config import Config
from sensorproof.registry import (
    FLAG_BURST,
    FLAG_QUALITY_DROP,
    FLAG_REGULAR,
    FLAG_SYNTHETIC,
    FINGERPRINT_LOCKS,
    InMemoryRegistryStorage,
    KeyedLocks,
    SensorRegistryManager,
    calculate_grade,
    closest_grade,
    generate_fingerprint,
)
from sensorproof.types import ReputationGrade, Verdict

from conftest import make_metadata


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def _upload(manager, fingerprint, i, verdict=Verdict.AUTHENTIC, confidence=0.9, uploader="lab-7"):
    return manager.update_registry(
        fingerprint, f"ds-{i}", uploader, verdict, confidence, make_metadata(id=f"ds-{i}")
    )


def test_fingerprint_is_stable_and_short() -> None:
    meta = make_metadata()
    signal = {"mean": 90.0, "std": 52.0}
    fp = generate_fingerprint(meta, signal)
    assert len(fp) == 16
    assert fp == generate_fingerprint(make_metadata(id="other"), dict(signal))
    assert fp != generate_fingerprint(meta, {"mean": 91.0, "std": 52.0})


def test_new_sources_start_at_b() -> None:
    assert calculate_grade(1.0, 1.0, 0.0, upload_count=4) == ReputationGrade.B
    assert calculate_grade(0.0, 0.0, 1.0, upload_count=5) == ReputationGrade.A_PLUS
    assert calculate_grade(1.0, 1.0, 0.0, upload_count=5) == ReputationGrade.F


def test_grade_is_non_increasing_in_rates() -> None:
    previous = ReputationGrade.A_PLUS
    for step in range(11):
        rate = step / 10
        grade = calculate_grade(rate, rate, 0.8, upload_count=20)
        assert grade.rank <= previous.rank
        previous = grade


def test_closest_grade() -> None:
    assert closest_grade(12) == ReputationGrade.A_PLUS
    assert closest_grade(6.9) == ReputationGrade.B
    assert closest_grade(0.4) == ReputationGrade.F


def test_statistics_accumulate() -> None:
    manager = SensorRegistryManager(InMemoryRegistryStorage(), clock=FakeClock())
    _upload(manager, "fp", 0, Verdict.AUTHENTIC, 0.9)
    _upload(manager, "fp", 1, Verdict.SUSPICIOUS, 0.5)
    registry = _upload(manager, "fp", 2, Verdict.SYNTHETIC, 0.4)
    stats = registry.statistics
    assert (stats.total_datasets, stats.authentic, stats.suspicious, stats.synthetic) == (3, 1, 1, 1)
    assert stats.avg_confidence == pytest.approx(0.6)
    rep = registry.reputation
    assert rep.upload_count == 3
    assert rep.grade == ReputationGrade.B
    assert rep.synthetic_rate == pytest.approx(1 / 3)
    assert FLAG_SYNTHETIC in rep.flags
    assert manager.get_reputation("fp") == rep


def test_burst_and_regular_interval_flags() -> None:
    clock = FakeClock()
    manager = SensorRegistryManager(InMemoryRegistryStorage(), clock=clock)
    for i in range(12):
        clock.now += 60.0
        registry = _upload(manager, "fp", i)
    assert FLAG_BURST in registry.reputation.flags
    assert FLAG_REGULAR in registry.reputation.flags


def test_quality_drop_flag() -> None:
    clock = FakeClock()
    manager = SensorRegistryManager(InMemoryRegistryStorage(), clock=clock)
    confidences = [0.95] * 10 + [0.3] * 5
    for i, c in enumerate(confidences):
        clock.now += 7200.0 + 1000.0 * (i % 3)
        registry = _upload(manager, "fp", i, confidence=c)
    flags = registry.reputation.flags
    assert FLAG_QUALITY_DROP in flags
    assert FLAG_BURST not in flags


def test_history_is_capped() -> None:
    config = Config()
    config.registry.history_limit = 5
    manager = SensorRegistryManager(InMemoryRegistryStorage(), config, clock=FakeClock())
    for i in range(8):
        registry = _upload(manager, "fp", i)
    assert len(registry.history) == 5
    assert registry.history[0].dataset_id == "ds-3"
    assert registry.statistics.total_datasets == 8


def test_concurrent_updates_lose_nothing() -> None:
    manager = SensorRegistryManager(InMemoryRegistryStorage(), clock=FakeClock())
    threads = [threading.Thread(target=_upload, args=(manager, "fp", i)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert manager.get_registry("fp").statistics.total_datasets == 16


def test_uploader_profile() -> None:
    manager = SensorRegistryManager(InMemoryRegistryStorage(), clock=FakeClock())
    _upload(manager, "fp-a", 0)
    _upload(manager, "fp-b", 1, Verdict.SYNTHETIC)
    _upload(manager, "fp-c", 2, uploader="someone-else")
    profile = manager.get_uploader_profile("lab-7")
    assert profile["total_sensors"] == 2
    assert profile["total_uploads"] == 2
    assert profile["avg_reputation"] == "B"
    assert FLAG_SYNTHETIC in profile["flags"]

    empty = manager.get_uploader_profile("nobody")
    assert empty["total_sensors"] == 0
    assert empty["avg_reputation"] == "B"


def test_sql_storage_round_trips_registries() -> None:
    session_factory = init_db("sqlite://")
    storage = SqlRegistryStorage(session_factory)
    manager = SensorRegistryManager(storage, clock=FakeClock())

    assert storage.get("missing") is None
    _upload(manager, "fp-a", 0)
    written = _upload(manager, "fp-a", 1, Verdict.SUSPICIOUS, 0.5)
    _upload(manager, "fp-b", 2, uploader="other")

    loaded = storage.get("fp-a")
    assert loaded == written
    assert [r.fingerprint for r in storage.get_by_uploader("lab-7")] == ["fp-a"]
    assert manager.get_uploader_profile("other")["total_uploads"] == 1


class SlowStorage(InMemoryRegistryStorage):
    def get(self, fingerprint):
        time.sleep(0.02)
        return super().get(fingerprint)


def _run_threads(targets) -> None:
    threads = [threading.Thread(target=t) for t in targets]
    for t in threads:
        t.start()
    for t in threads:
        t.join()


def test_separate_managers_share_fingerprint_locks() -> None:
    storage = SlowStorage()
    # one manager per upload, as every request builds its own engine
    _run_threads(
        [lambda i=i: _upload(SensorRegistryManager(storage, clock=FakeClock()), "fp", i) for i in range(8)]
    )
    assert storage.get("fp").statistics.total_datasets == 8
    assert len(FINGERPRINT_LOCKS) == 0


def test_keyed_locks_drop_released_entries() -> None:
    locks = KeyedLocks()
    with locks.hold("a"):
        with locks.hold("b"):
            assert len(locks) == 2
        assert len(locks) == 1
    assert len(locks) == 0

    seen = []

    def hold_a(tag):
        with locks.hold("a"):
            seen.append(tag)
            time.sleep(0.01)

    _run_threads([lambda i=i: hold_a(i) for i in range(5)])
    assert sorted(seen) == [0, 1, 2, 3, 4]
    assert len(locks) == 0


def test_sql_storage_serialises_concurrent_updates(tmp_path) -> None:
    storage = SqlRegistryStorage(init_db(f"sqlite:///{tmp_path / 'registry.db'}"))
    _run_threads(
        [lambda i=i: _upload(SensorRegistryManager(storage, clock=FakeClock()), "fp", i) for i in range(6)]
    )
    registry = storage.get("fp")
    assert registry.statistics.total_datasets == 6
    assert sorted(h.dataset_id for h in registry.history) == [f"ds-{i}" for i in range(6)]
