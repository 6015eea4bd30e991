from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple

import numpy as np

from .types import (
    AnomalyKind,
    DatasetMetadata,
    ModuleResult,
    Severity,
    VerificationAnomaly,
)
from .utils.logging import get_logger, log_result

logger = get_logger(__name__)


@dataclass
class AnalysisInput:
    """Everything a core module may look at during one verification run."""

    metadata: DatasetMetadata
    buffer: bytes
    input_hash: str
    timestamps: np.ndarray
    gps_track: Tuple[Tuple[float, float], ...] = ()
    expected_frame_rate: Optional[float] = None
    reference_time: float = field(default_factory=time.time)


def failure_result(module_name: str, exc: BaseException) -> ModuleResult:
    """Zero-confidence result standing in for a module that raised."""
    return ModuleResult(
        module_name=module_name,
        score=0.0,
        confidence=0.0,
        anomalies=[
            VerificationAnomaly(
                kind=AnomalyKind.QUALITY_ISSUE,
                severity=Severity.HIGH,
                description=f"{module_name} failed: {exc.__class__.__name__}: {exc}",
                confidence=1.0,
                detected_by=module_name,
            )
        ],
        metadata={"error": {"message": str(exc), "type": exc.__class__.__name__}},
    )


def guarded(module_name: str, fn: Callable[[], ModuleResult]) -> ModuleResult:
    """Run `fn`, converting any exception into a failure result and timing it."""
    started = time.perf_counter()
    try:
        result = fn()
    except Exception as exc:  # noqa: BLE001
        logger.exception("%s raised, continuing with a failure result", module_name)
        result = failure_result(module_name, exc)
    result.processing_ms = (time.perf_counter() - started) * 1000.0
    log_result(logger, result)
    return result


class AnalysisModule(ABC):
    """One independent analysis unit of the verification pipeline."""

    name: str = "AnalysisModule"

    def run(self, inputs: AnalysisInput) -> ModuleResult:
        result = guarded(self.name, lambda: self.analyze(inputs))
        if result.input_hash is None:
            result.input_hash = inputs.input_hash
        return result

    @abstractmethod
    def analyze(self, inputs: AnalysisInput) -> ModuleResult:
        ...
