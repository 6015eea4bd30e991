from __future__ import annotations

import hashlib
import math
from typing import Dict, Optional, Sequence

import numpy as np
from scipy import stats

EARTH_RADIUS_M = 6371e3


def as_bytes_array(buffer: bytes, limit: Optional[int] = None) -> np.ndarray:
    data = np.frombuffer(buffer, dtype=np.uint8)
    if limit is not None:
        data = data[:limit]
    return data


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def shannon_entropy(data: np.ndarray) -> float:
    """Shannon entropy of the byte histogram, in bits per byte."""
    if data.size == 0:
        return 0.0
    counts = np.bincount(data, minlength=256)
    return float(stats.entropy(counts, base=2))


def noise_floor(data: np.ndarray) -> float:
    """Standard deviation normalised to the byte range."""
    if data.size == 0:
        return 0.0
    return float(np.std(data.astype(float)) / 255.0)


def signal_characteristics(buffer: bytes, sample_bytes: int = 1000) -> Dict[str, float]:
    """Summary statistics of the buffer prefix used for sensor fingerprinting."""
    sample = as_bytes_array(buffer, sample_bytes).astype(float)
    if sample.size == 0:
        return {"mean": 0.0, "std": 0.0, "median": 0.0, "min": 0.0, "max": 0.0, "sample_size": 0}
    return {
        "mean": round(float(sample.mean()), 6),
        "std": round(float(sample.std()), 6),
        "median": float(np.median(sample)),
        "min": float(sample.min()),
        "max": float(sample.max()),
        "sample_size": int(sample.size),
    }


def coarse_spectrum(data: np.ndarray, window: int, bins: int) -> np.ndarray:
    """First `bins` normalised FFT magnitudes of the first `window` samples."""
    x = data[:window].astype(float)
    if x.size == 0:
        return np.zeros(bins)
    mags = np.abs(np.fft.rfft(x)) / (x.size * 255.0)
    out = np.zeros(bins)
    n = min(bins, mags.size)
    out[:n] = mags[:n]
    return out


def frame_clock(
    n_bytes: int,
    frame_rate: float,
    end_time: float,
    frame_bytes: int = 100,
    max_frames: int = 1000,
) -> np.ndarray:
    """
    Evenly spaced frame timestamps (epoch seconds) for a buffer without
    explicit telemetry. The last frame lands on `end_time`.
    """
    count = min(max_frames, n_bytes // frame_bytes)
    if count <= 0 or frame_rate <= 0:
        return np.array([], dtype=float)
    interval = 1.0 / frame_rate
    return end_time - (count - 1 - np.arange(count)) * interval


def subsample_frames(buffer: bytes, rate: int, frame_bytes: int = 100) -> bytes:
    """Keep every `rate`-th frame of `frame_bytes` bytes."""
    if rate is None or rate <= 1:
        return buffer
    data = as_bytes_array(buffer)
    n_frames = data.size // frame_bytes
    head = data[: n_frames * frame_bytes].reshape(n_frames, frame_bytes)
    kept = head[::rate].reshape(-1)
    return kept.tobytes()


def haversine_m(a: Sequence[float], b: Sequence[float]) -> float:
    phi1 = math.radians(a[0])
    phi2 = math.radians(b[0])
    d_phi = math.radians(b[0] - a[0])
    d_lambda = math.radians(b[1] - a[1])
    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def pearson_abs(a: np.ndarray, b: np.ndarray) -> float:
    """Absolute Pearson correlation over the common prefix; 0 for flat signals."""
    n = min(a.size, b.size)
    if n < 2:
        return 0.0
    x = a[:n].astype(float)
    y = b[:n].astype(float)
    dx = x - x.mean()
    dy = y - y.mean()
    denom = math.sqrt(float(np.sum(dx * dx)) * float(np.sum(dy * dy)))
    if denom < 1e-10:
        return 0.0
    return float(abs(np.sum(dx * dy) / denom))
