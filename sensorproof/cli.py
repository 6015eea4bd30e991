from __future__ import annotations

import argparse
import asyncio
import json
import mimetypes
import sys
from pathlib import Path
from typing import Any, Dict

from .config import Config, load_config
from .engine import VerificationEngine
from .eval import run_evaluation
from .evidence import write_evidence
from .inline import UploadInfo
from .types import DatasetMetadata, MetadataError, Verdict


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="sensorproof")
    sub = parser.add_subparsers(dest="command", required=True)

    verify_p = sub.add_parser("verify", help="Verify a sensor dataset file.")
    verify_p.add_argument("path", help="Path to the dataset file.")
    verify_p.add_argument("--metadata", dest="metadata_path", help="Declared metadata JSON file.")
    verify_p.add_argument("--strict", action="store_true", help="Raise the confidence threshold.")
    verify_p.add_argument(
        "--sequential", action="store_true", help="Run core modules one after another."
    )
    verify_p.add_argument("--format", choices=("text", "json"), default="text")
    verify_p.add_argument("--out", dest="out_dir", help="Output folder for evidence.")
    verify_p.add_argument("--config", dest="config_path", help="Optional JSON config file.")

    eval_p = sub.add_parser("eval", help="Run offline evaluation on a manifest CSV.")
    eval_p.add_argument("manifest", help="Path to manifest CSV.")
    eval_p.add_argument("--out", dest="out_dir", required=True, help="Output folder.")
    eval_p.add_argument("--config", dest="config_path", help="Optional JSON config.")

    return parser.parse_args(argv)


def _load_metadata(path: Path, buffer: bytes, metadata_path: str) -> DatasetMetadata:
    record: Dict[str, Any] = json.loads(Path(metadata_path).read_text(encoding="utf-8"))
    record.setdefault("id", path.stem)
    record.setdefault("uploader_id", "cli")
    record.setdefault("file_size", len(buffer))
    record.setdefault("file_format", path.suffix.lstrip(".") or "unknown")
    return DatasetMetadata.from_dict(record)


def render_text(report: Dict[str, Any]) -> str:
    lines = [
        f"Dataset:     {report['dataset_id']}",
        f"Verdict:     {report['verdict']}",
        f"Confidence:  {report['overall_confidence']:.3f}",
        f"Quality:     {report['quality_score']:.2f}/10",
        f"Metadata:    {report['metadata_score']:.2f}/10",
        f"Source:      {report['source_match_score']:.2f}/10",
        f"Cross-modal: {report['cross_modal_score']:.2f}/10",
        f"Challenge:   {report['challenge_response_score']:.2f}/10",
        "",
        "Modules:",
    ]
    for m in report["module_results"]:
        lines.append(
            f"  {m['module_name']:<28} score={m['score']:.2f} confidence={m['confidence']:.2f}"
        )
    lines.append("")
    if report["anomalies"]:
        lines.append("Anomalies:")
        for a in report["anomalies"]:
            lines.append(f"  [{a['severity']}] {a['kind']}: {a['description']} ({a['detected_by']})")
    else:
        lines.append("Anomalies: none")
    if report["badges"]:
        lines.append(f"Badges: {', '.join(report['badges'])}")
    lines.append("")
    lines.append(report["explanation"])
    if report.get("merkle_root"):
        lines.append(f"Merkle root:          {report['merkle_root']}")
    lines.append(f"Reproducibility hash: {report['reproducibility_hash']}")
    return "\n".join(lines)


def _verify(args: argparse.Namespace) -> int:
    path = Path(args.path)
    try:
        cfg: Config = load_config(args.config_path)
        if args.strict:
            cfg.strict_mode = True
        if args.sequential:
            cfg.parallel_processing = False
        buffer = path.read_bytes()
        engine = VerificationEngine(cfg)
        if args.metadata_path:
            metadata = _load_metadata(path, buffer, args.metadata_path)
            report = asyncio.run(engine.verify(metadata, buffer))
        else:
            upload = UploadInfo(
                id=path.stem,
                uploader_id="cli",
                filename=path.name,
                file_size=len(buffer),
                file_type=mimetypes.guess_type(path.name)[0] or path.suffix.lstrip(".") or "unknown",
            )
            report = asyncio.run(engine.verify_inline(upload, buffer))
    except (OSError, MetadataError, json.JSONDecodeError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    as_dict = report.to_dict()
    if args.format == "json":
        print(json.dumps(as_dict, indent=2, sort_keys=True))
    else:
        print(render_text(as_dict))
    if args.out_dir:
        write_evidence(args.out_dir, as_dict, cfg, buffer=buffer)
    return 0 if Verdict(as_dict["verdict"]).is_authentic else 1


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    if args.command == "verify":
        return _verify(args)

    if args.command == "eval":
        cfg = load_config(getattr(args, "config_path", None))
        report = run_evaluation(args.manifest, args.out_dir, cfg)
        print(json.dumps(report["metrics"], indent=2, sort_keys=True))
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
