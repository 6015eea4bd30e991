from __future__ import annotations

from typing import List, Optional

from .base import AnalysisInput, AnalysisModule
from .config import Config
from .profiles import lookup
from .types import (
    AnomalyKind,
    DatasetMetadata,
    ModuleResult,
    Severity,
    VerificationAnomaly,
)
from .utils.logging import get_logger

logger = get_logger(__name__)


class MetadataValidator(AnalysisModule):
    """Sanity-check declared metadata against the device catalog."""

    name = "MetadataValidator"

    def __init__(self, config: Config):
        self.config = config.metadata

    def analyze(self, inputs: AnalysisInput) -> ModuleResult:
        return self.validate(inputs.metadata, inputs.buffer)

    def validate(self, metadata: DatasetMetadata, buffer: Optional[bytes] = None) -> ModuleResult:
        anomalies: List[VerificationAnomaly] = []
        source = metadata.declared_source
        robot_model = source.robot_model
        profile = lookup(robot_model)

        if robot_model and profile is None:
            anomalies.append(
                VerificationAnomaly(
                    kind=AnomalyKind.METADATA_MISMATCH,
                    severity=Severity.LOW,
                    description=f"Unknown robot model: {robot_model}",
                    confidence=0.7,
                    detected_by=self.name,
                )
            )

        if profile is not None:
            missing = [s.value for s in profile.sensors if s not in source.sensor_types]
            if missing:
                anomalies.append(
                    VerificationAnomaly(
                        kind=AnomalyKind.SENSOR_MISMATCH,
                        severity=Severity.MEDIUM,
                        description=f"Expected sensors not declared: {', '.join(missing)}",
                        confidence=0.85,
                        detected_by=self.name,
                    )
                )

        file_format = metadata.file_format.lower()
        if not any(token in file_format for token in self.config.accepted_formats):
            anomalies.append(
                VerificationAnomaly(
                    kind=AnomalyKind.METADATA_MISMATCH,
                    severity=Severity.LOW,
                    description=f"Unusual file format: {metadata.file_format}",
                    confidence=0.6,
                    detected_by=self.name,
                )
            )

        size_mb = metadata.file_size / (1024 * 1024)
        if metadata.file_size < self.config.min_size_bytes:
            anomalies.append(
                VerificationAnomaly(
                    kind=AnomalyKind.QUALITY_ISSUE,
                    severity=Severity.HIGH,
                    description="Dataset suspiciously small (< 1MB)",
                    confidence=0.9,
                    detected_by=self.name,
                )
            )
        elif metadata.file_size > self.config.max_size_bytes:
            anomalies.append(
                VerificationAnomaly(
                    kind=AnomalyKind.QUALITY_ISSUE,
                    severity=Severity.LOW,
                    description="Dataset extremely large (> 100GB), verify authenticity",
                    confidence=0.5,
                    detected_by=self.name,
                )
            )

        penalty = {Severity.CRITICAL: 4.0, Severity.HIGH: 2.0, Severity.MEDIUM: 1.0}
        score = 10.0 - sum(penalty.get(a.severity, 0.0) for a in anomalies)

        if not anomalies:
            confidence = 0.95
        elif len(anomalies) <= 2:
            confidence = 0.75
        else:
            confidence = 0.5

        logger.info(
            "Metadata: model=%s sensors=%d size=%.2fMB anomalies=%d",
            robot_model,
            len(source.sensor_types),
            size_mb,
            len(anomalies),
        )

        return ModuleResult(
            module_name=self.name,
            score=score,
            confidence=confidence,
            anomalies=anomalies,
            metadata={
                "declared_robot_model": robot_model,
                "known_device": profile is not None,
                "sensor_count": len(source.sensor_types),
                "file_size_mb": size_mb,
                "buffer_bytes": len(buffer) if buffer is not None else None,
            },
            preconditions={"file_format": metadata.file_format, "file_size": metadata.file_size},
        )
