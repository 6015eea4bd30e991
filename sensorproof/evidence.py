from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402

from .config import Config  # noqa: E402
from .utils.logging import get_logger  # noqa: E402

logger = get_logger(__name__)


def _plot_module_scores(report: Dict[str, Any], path: Path) -> bool:
    modules = report.get("module_results") or []
    if not modules:
        return False
    names = [m["module_name"] for m in modules]
    scores = [float(m["score"]) for m in modules]
    confidences = [float(m["confidence"]) * 10.0 for m in modules]
    x = np.arange(len(names))
    plt.figure(figsize=(8, 4))
    plt.bar(x - 0.2, scores, width=0.4, label="score")
    plt.bar(x + 0.2, confidences, width=0.4, label="confidence x10")
    plt.xticks(x, names, rotation=30, ha="right")
    plt.ylim(0, 10)
    plt.title(f"Module scores - {report.get('verdict')}")
    plt.legend()
    plt.tight_layout()
    plt.savefig(path)
    plt.close()
    return True


def _plot_byte_histogram(buffer: bytes, path: Path, limit: int = 1_000_000) -> bool:
    data = np.frombuffer(buffer[:limit], dtype=np.uint8)
    if data.size == 0:
        return False
    counts = np.bincount(data, minlength=256)
    plt.figure()
    plt.bar(np.arange(256), counts, width=1.0)
    plt.xlabel("Byte value")
    plt.ylabel("Count")
    plt.title(f"Byte histogram (first {data.size} bytes)")
    plt.tight_layout()
    plt.savefig(path)
    plt.close()
    return True


def write_evidence(
    out_dir: str,
    report_dict: Dict[str, Any],
    config: Config,
    buffer: Optional[bytes] = None,
) -> Dict[str, Any]:
    """
    Write evidence artifacts into out_dir.

    Writes:
      - summary.json (the report)
      - audit_replay.json (chain, Merkle root and reproducibility hash)
      - plots/ module scores and byte histogram when enabled
      - index.json listing artifacts
    """
    root = Path(out_dir)
    root.mkdir(parents=True, exist_ok=True)
    artifacts: Dict[str, Any] = {}

    (root / "summary.json").write_text(
        json.dumps(report_dict, indent=2, sort_keys=True), encoding="utf-8"
    )
    artifacts["summary"] = "summary.json"

    replay = {
        "dataset_id": report_dict.get("dataset_id"),
        "chain": report_dict.get("audit_chain", []),
        "merkle_root": report_dict.get("merkle_root", ""),
        "reproducibility_hash": report_dict.get("reproducibility_hash", ""),
    }
    (root / "audit_replay.json").write_text(
        json.dumps(replay, indent=2, sort_keys=True), encoding="utf-8"
    )
    artifacts["audit_replay"] = "audit_replay.json"

    if config.evidence.enable_plots:
        plots_dir = root / "plots"
        plots_dir.mkdir(exist_ok=True)
        try:
            if _plot_module_scores(report_dict, plots_dir / "module_scores.png"):
                artifacts["module_scores"] = "plots/module_scores.png"
            if buffer is not None and _plot_byte_histogram(buffer, plots_dir / "byte_histogram.png"):
                artifacts["byte_histogram"] = "plots/byte_histogram.png"
        except Exception as exc:  # noqa: BLE001
            logger.warning("Plot generation failed: %s", exc)
            plt.close("all")

    (root / "index.json").write_text(
        json.dumps(artifacts, indent=2, sort_keys=True), encoding="utf-8"
    )
    return artifacts
