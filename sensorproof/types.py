from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class MetadataError(ValueError):
    """Raised when declared dataset metadata fails boundary validation."""


class DatasetCategory(str, Enum):
    ROBOTICS = "robotics"
    AUTONOMOUS_VEHICLES = "autonomous_vehicles"
    DRONE = "drone"
    MANIPULATION = "manipulation"
    SENSOR_DATA = "sensor_data"
    MOTION_CAPTURE = "motion_capture"
    HUMAN_ROBOT_INTERACTION = "human_robot_interaction"
    EMBODIED_AI = "embodied_ai"


class SensorType(str, Enum):
    LIDAR = "lidar"
    CAMERA = "camera"
    IMU = "imu"
    GPS = "gps"
    RADAR = "radar"
    DEPTH = "depth"
    THERMAL = "thermal"
    ULTRASONIC = "ultrasonic"


class AnomalyKind(str, Enum):
    METADATA_MISMATCH = "metadata_mismatch"
    TEMPORAL_GAP = "temporal_gap"
    SPATIAL_INCONSISTENCY = "spatial_inconsistency"
    DUPLICATE_FRAMES = "duplicate_frames"
    SENSOR_MISMATCH = "sensor_mismatch"
    QUALITY_ISSUE = "quality_issue"
    TAMPER_DETECTED = "tamper_detected"
    CROSS_MODAL_INCONSISTENCY = "cross_modal_inconsistency"
    CHALLENGE_FAILURE = "challenge_failure"
    EMBEDDING_OUTLIER = "embedding_outlier"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class Verdict(str, Enum):
    AUTHENTIC = "authentic"
    LIKELY_AUTHENTIC = "likely_authentic"
    SUSPICIOUS = "suspicious"
    LIKELY_SYNTHETIC = "likely_synthetic"
    SYNTHETIC = "synthetic"
    TAMPERED = "tampered"

    @property
    def is_authentic(self) -> bool:
        return self in (Verdict.AUTHENTIC, Verdict.LIKELY_AUTHENTIC)

    @property
    def is_synthetic(self) -> bool:
        return self in (Verdict.SYNTHETIC, Verdict.LIKELY_SYNTHETIC)


class ReputationGrade(str, Enum):
    A_PLUS = "A+"
    A = "A"
    B_PLUS = "B+"
    B = "B"
    C = "C"
    D = "D"
    F = "F"

    @property
    def rank(self) -> int:
        """Higher is better; F is 0."""
        return _GRADE_RANK[self]


_GRADE_RANK = {
    ReputationGrade.F: 0,
    ReputationGrade.D: 1,
    ReputationGrade.C: 2,
    ReputationGrade.B: 3,
    ReputationGrade.B_PLUS: 4,
    ReputationGrade.A: 5,
    ReputationGrade.A_PLUS: 6,
}


def clamp_score(value: float) -> float:
    return float(min(10.0, max(0.0, value)))


def clamp_unit(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


def to_plain(value: Any) -> Any:
    """Recursively convert enums, tuples and datetimes into JSON-ready data."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(to_plain(k)): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


@dataclass(frozen=True)
class Telemetry:
    timestamps: Tuple[float, ...] = ()
    gps_track: Tuple[Tuple[float, float], ...] = ()


@dataclass(frozen=True)
class DeclaredSource:
    sensor_types: Tuple[SensorType, ...]
    robot_model: Optional[str] = None
    gps: Optional[Tuple[float, float]] = None
    environment: Optional[str] = None
    hardware_specs: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DatasetMetadata:
    id: str
    title: str
    category: DatasetCategory
    declared_source: DeclaredSource
    file_size: int
    file_format: str
    uploaded_at: datetime
    uploader_id: str
    telemetry: Optional[Telemetry] = None

    @property
    def sensor_types(self) -> Tuple[SensorType, ...]:
        return self.declared_source.sensor_types

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatasetMetadata":
        """
        Build metadata from an untyped record, validating every closed field.

        Raises MetadataError on anything that would not be a valid input
        to a verification run.
        """
        if not isinstance(data, dict):
            raise MetadataError("metadata must be an object")
        for key in ("id", "uploader_id"):
            if not data.get(key):
                raise MetadataError(f"missing required field: {key}")

        try:
            category = DatasetCategory(data.get("category", "robotics"))
        except ValueError as exc:
            raise MetadataError(f"unknown category: {data.get('category')}") from exc

        source = data.get("declared_source") or {}
        raw_sensors = source.get("sensor_types") or []
        try:
            sensor_types = tuple(SensorType(s) for s in raw_sensors)
        except ValueError as exc:
            raise MetadataError(f"unknown sensor type in {raw_sensors}") from exc

        gps = source.get("gps")
        if gps is not None:
            gps = _parse_point(gps)

        file_size = data.get("file_size", 0)
        if not isinstance(file_size, int) or isinstance(file_size, bool) or file_size < 0:
            raise MetadataError("file_size must be a non-negative integer")

        uploaded_at = data.get("uploaded_at")
        if uploaded_at is None:
            uploaded_at = datetime.now(timezone.utc)
        elif isinstance(uploaded_at, str):
            try:
                uploaded_at = datetime.fromisoformat(uploaded_at)
            except ValueError as exc:
                raise MetadataError(f"invalid uploaded_at: {uploaded_at}") from exc
        elif not isinstance(uploaded_at, datetime):
            raise MetadataError("uploaded_at must be an ISO-8601 string")
        if uploaded_at.tzinfo is None:
            uploaded_at = uploaded_at.replace(tzinfo=timezone.utc)

        telemetry = None
        raw_telemetry = data.get("telemetry")
        if raw_telemetry:
            try:
                timestamps = tuple(float(t) for t in raw_telemetry.get("timestamps") or [])
            except (TypeError, ValueError) as exc:
                raise MetadataError("telemetry timestamps must be numbers") from exc
            track = tuple(_parse_point(p) for p in raw_telemetry.get("gps_track") or [])
            telemetry = Telemetry(timestamps=timestamps, gps_track=track)

        hardware_specs = source.get("hardware_specs") or {}
        if not isinstance(hardware_specs, dict):
            raise MetadataError("hardware_specs must be an object")

        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or data["id"]),
            category=category,
            declared_source=DeclaredSource(
                sensor_types=sensor_types,
                robot_model=source.get("robot_model"),
                gps=gps,
                environment=source.get("environment"),
                hardware_specs=dict(hardware_specs),
            ),
            file_size=file_size,
            file_format=str(data.get("file_format") or "unknown"),
            uploaded_at=uploaded_at,
            uploader_id=str(data["uploader_id"]),
            telemetry=telemetry,
        )

    def to_dict(self) -> Dict[str, Any]:
        return to_plain(asdict(self))


def _parse_point(value: Any) -> Tuple[float, float]:
    try:
        lat, lon = value
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError) as exc:
        raise MetadataError(f"invalid GPS coordinate: {value}") from exc
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        raise MetadataError(f"GPS coordinate out of range: {value}")
    return (lat, lon)


@dataclass
class VerificationAnomaly:
    kind: AnomalyKind
    severity: Severity
    description: str
    confidence: float
    detected_by: str
    affected_indices: Optional[List[int]] = None

    def __post_init__(self) -> None:
        self.confidence = clamp_unit(self.confidence)


@dataclass
class ModuleResult:
    module_name: str
    score: float
    confidence: float
    anomalies: List[VerificationAnomaly] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    processing_ms: float = 0.0
    input_hash: Optional[str] = None
    preconditions: Optional[Dict[str, Any]] = None
    intermediate_outputs: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.score = clamp_score(self.score)
        self.confidence = clamp_unit(self.confidence)


@dataclass
class ComputeTranscript:
    step_id: str
    module: str
    input_hash: str
    preconditions: Dict[str, Any]
    output: Dict[str, Any]
    score: float
    timestamp: float
    duration_ms: float
    previous_hash: str = ""
    step_hash: str = ""


@dataclass
class ChallengeTest:
    kind: str  # perturbation | compression | noise_injection | temporal_shift
    parameters: Dict[str, Any]
    expected_behavior: str
    actual_response: Dict[str, Any]
    passed: bool
    confidence: float


@dataclass
class CrossModalAlignment:
    modality1: SensorType
    modality2: SensorType
    embedding_distance: float
    temporal_alignment: float
    spatial_alignment: Optional[float]
    cross_correlation: Optional[float]
    consistency_score: float
    anomalies: List[str] = field(default_factory=list)


@dataclass
class ReputationScore:
    fingerprint: str
    uploader_id: str
    upload_count: int
    avg_confidence: float
    synthetic_rate: float
    anomaly_rate: float
    grade: ReputationGrade
    flags: List[str]
    first_seen_at: float
    last_seen_at: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReputationScore":
        return cls(
            fingerprint=data["fingerprint"],
            uploader_id=data["uploader_id"],
            upload_count=int(data["upload_count"]),
            avg_confidence=float(data["avg_confidence"]),
            synthetic_rate=float(data["synthetic_rate"]),
            anomaly_rate=float(data["anomaly_rate"]),
            grade=ReputationGrade(data["grade"]),
            flags=list(data.get("flags", [])),
            first_seen_at=float(data["first_seen_at"]),
            last_seen_at=float(data["last_seen_at"]),
        )


@dataclass
class HistoryEntry:
    dataset_id: str
    timestamp: float
    verdict: Verdict
    confidence: float


@dataclass
class RegistryStatistics:
    total_datasets: int = 0
    authentic: int = 0
    suspicious: int = 0
    synthetic: int = 0
    avg_confidence: float = 0.0


@dataclass
class SensorRegistry:
    fingerprint: str
    robot_model: Optional[str]
    sensor_types: List[SensorType]
    hardware_signature: str
    statistics: RegistryStatistics
    reputation: ReputationScore
    history: List[HistoryEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return to_plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SensorRegistry":
        return cls(
            fingerprint=data["fingerprint"],
            robot_model=data.get("robot_model"),
            sensor_types=[SensorType(s) for s in data.get("sensor_types", [])],
            hardware_signature=data.get("hardware_signature", ""),
            statistics=RegistryStatistics(**data.get("statistics", {})),
            reputation=ReputationScore.from_dict(data["reputation"]),
            history=[
                HistoryEntry(
                    dataset_id=h["dataset_id"],
                    timestamp=float(h["timestamp"]),
                    verdict=Verdict(h["verdict"]),
                    confidence=float(h["confidence"]),
                )
                for h in data.get("history", [])
            ],
        )


@dataclass(frozen=True)
class VerificationReport:
    dataset_id: str
    verdict: Verdict
    overall_confidence: float
    quality_score: float
    metadata_score: float
    source_match_score: float
    cross_modal_score: float
    challenge_response_score: float
    anomalies: Tuple[VerificationAnomaly, ...]
    module_results: Tuple[ModuleResult, ...]
    explanation: str
    badges: Tuple[str, ...]
    timestamp: datetime
    processing_ms: float
    audit_chain: Tuple[ComputeTranscript, ...]
    merkle_root: str
    reproducibility_hash: str
    sensor_fingerprint: Optional[str] = None
    uploader_reputation: Optional[ReputationScore] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_plain(asdict(self))
