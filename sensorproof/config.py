from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


@dataclass
class MetadataConfig:
    accepted_formats: Tuple[str, ...] = (
        "rosbag",
        "bag",
        "mcap",
        "hdf5",
        "h5",
        "parquet",
        "tfrecord",
        "json",
        "csv",
    )
    min_size_bytes: int = 1024 * 1024
    max_size_bytes: int = 100 * 1024 ** 3


@dataclass
class SignatureConfig:
    entropy_prefix_bytes: int = 10_000
    noise_prefix_bytes: int = 1_000
    match_threshold: float = 0.7
    # Synthetic data tends to sit outside this entropy band (bits per byte).
    synthetic_entropy_low: float = 5.0
    synthetic_entropy_high: float = 8.5
    repeat_window: int = 10
    repeat_prefix_bytes: int = 1_000
    max_repeats: int = 5


@dataclass
class TemporalConfig:
    default_frame_rate: float = 10.0
    frame_bytes: int = 100
    max_frames: int = 1000
    max_gap_seconds: float = 1.0
    max_gps_jump_m: float = 1000.0
    stuck_gps_min_samples: int = 10


@dataclass
class AnomalyConfig:
    outlier_sample_bytes: int = 50_000
    entropy_low: float = 4.0
    entropy_high: float = 8.5
    periodicity_sample_bytes: int = 1024
    periodicity_match_rate: float = 0.7
    periodicity_max_periods: int = 5
    marker_scan_bytes: int = 1000
    degenerate_rate: float = 0.3


@dataclass
class ChallengeConfig:
    perturbation_intensity: float = 0.05
    perturbation_stride: int = 100
    compression_quality: int = 75
    temporal_shift_seconds: float = 0.1
    noise_std: float = 0.02
    max_probe_bytes: int = 1024 * 1024
    # None derives the seed from the probed bytes.
    seed: Optional[int] = None
    artifact_band: Tuple[float, float] = (0.002, 0.3)
    size_ratio_band: Tuple[float, float] = (0.02, 1.5)
    snr_band_db: Tuple[float, float] = (15.0, 40.0)


@dataclass
class CrossModalConfig:
    feature_sample_bytes: int = 1000
    fft_window: int = 256
    fft_bins: int = 5
    consistency_threshold: float = 0.6
    critical_threshold: float = 0.4


@dataclass
class RegistryConfig:
    history_limit: int = 100
    recent_window: int = 20
    min_uploads_for_grade: int = 5
    burst_window_seconds: float = 3600.0
    burst_max_uploads: int = 10


@dataclass
class EvidenceConfig:
    enable_plots: bool = True


@dataclass
class Config:
    """
    Top-level configuration for the verification engine.
    """

    config_version: str = "0.1.0"
    strict_mode: bool = False
    parallel_processing: bool = True
    min_confidence_threshold: float = 0.7
    anomaly_weights: Dict[str, float] = field(
        default_factory=lambda: {
            "critical": 4.0,
            "high": 2.0,
            "medium": 1.0,
            "low": 0.5,
        }
    )
    enable_challenge_response: bool = True
    enable_cross_modal: bool = True
    enable_audit_chain: bool = True
    enable_reputation: bool = True
    # Keep every Nth frame of huge inputs.
    sample_rate: Optional[int] = None
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    signature: SignatureConfig = field(default_factory=SignatureConfig)
    temporal: TemporalConfig = field(default_factory=TemporalConfig)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)
    challenge: ChallengeConfig = field(default_factory=ChallengeConfig)
    cross_modal: CrossModalConfig = field(default_factory=CrossModalConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    evidence: EvidenceConfig = field(default_factory=EvidenceConfig)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def confidence_threshold(self) -> float:
        if self.strict_mode:
            return max(self.min_confidence_threshold, 0.85)
        return self.min_confidence_threshold


_SECTIONS = (
    "metadata",
    "signature",
    "temporal",
    "anomaly",
    "challenge",
    "cross_modal",
    "registry",
    "evidence",
)


def config_from_dict(data: Dict[str, Any]) -> Config:
    cfg = Config()
    for key, value in data.items():
        if key in _SECTIONS and isinstance(value, dict):
            section = getattr(cfg, key)
            for sub_key, sub_value in value.items():
                if hasattr(section, sub_key):
                    if isinstance(getattr(section, sub_key), tuple):
                        sub_value = tuple(sub_value)
                    setattr(section, sub_key, sub_value)
        elif key == "anomaly_weights" and isinstance(value, dict):
            cfg.anomaly_weights.update({k: float(v) for k, v in value.items()})
        elif hasattr(cfg, key) and key not in _SECTIONS:
            setattr(cfg, key, value)
        else:
            cfg.extra[key] = value
    return cfg


def load_config(config_path: Optional[str]) -> Config:
    if not config_path:
        return Config()
    p = Path(config_path)
    if not p.is_file():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    data: Dict[str, Any] = json.loads(p.read_text(encoding="utf-8"))
    return config_from_dict(data)
