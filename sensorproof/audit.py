from __future__ import annotations

import hashlib
import json
import time
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .types import ComputeTranscript, ModuleResult, to_plain

REPLAY_FORMAT_VERSION = "1.0"


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonical_json(value: Any) -> str:
    return json.dumps(to_plain(value), sort_keys=True, separators=(",", ":"), default=str)


def compute_step_hash(step: ComputeTranscript) -> str:
    """Hash of the deterministic content of a step; wall-clock fields are excluded."""
    return _sha256(
        canonical_json(
            {
                "module": step.module,
                "input_hash": step.input_hash,
                "preconditions": step.preconditions,
                "output": step.output,
                "score": step.score,
                "previous_hash": step.previous_hash,
            }
        )
    )


def compute_merkle_root(hashes: Sequence[str]) -> str:
    """Fold leaf hashes pairwise with SHA-256; an odd last node pairs with itself."""
    level = list(hashes)
    if not level:
        return ""
    while len(level) > 1:
        nxt = []
        for i in range(0, len(level), 2):
            left = level[i]
            right = level[i + 1] if i + 1 < len(level) else left
            nxt.append(_sha256(left + right))
        level = nxt
    return level[0]


def verify_chain(chain: Sequence[ComputeTranscript], expected_root: Optional[str] = None) -> bool:
    """Check every link and step hash; optionally compare the Merkle root."""
    previous = ""
    for step in chain:
        if step.previous_hash != previous:
            return False
        if compute_step_hash(step) != step.step_hash:
            return False
        previous = step.step_hash
    if expected_root is not None:
        return compute_merkle_root([s.step_hash for s in chain]) == expected_root
    return True


def reproducibility_hash(
    dataset_id: str,
    input_hash: str,
    module_results: Sequence[ModuleResult],
    chain_root: str,
) -> str:
    components = {
        "dataset_id": dataset_id,
        "input_hash": input_hash,
        "module_scores": [[r.module_name, r.score] for r in module_results],
        "chain_root": chain_root,
    }
    return _sha256(canonical_json(components))


def merkle_proof(hashes: Sequence[str], index: int) -> List[Tuple[str, str]]:
    """Sibling path from leaf `index` to the root as (side, hash) pairs."""
    if not 0 <= index < len(hashes):
        raise IndexError(f"leaf index {index} out of range")
    proof: List[Tuple[str, str]] = []
    level = list(hashes)
    while len(level) > 1:
        if len(level) % 2:
            level.append(level[-1])
        sibling = index ^ 1
        proof.append(("left" if sibling < index else "right", level[sibling]))
        level = [_sha256(level[i] + level[i + 1]) for i in range(0, len(level), 2)]
        index //= 2
    return proof


def verify_merkle_proof(leaf_hash: str, proof: Sequence[Tuple[str, str]], expected_root: str) -> bool:
    current = leaf_hash
    for side, sibling in proof:
        current = _sha256(sibling + current) if side == "left" else _sha256(current + sibling)
    return current == expected_root


class AuditChainBuilder:
    """
    Append-only transcript of one verification run.

    Each step carries the hash of the step before it, and the chain folds
    into a Merkle root. Step hashes ignore timestamps and durations, so
    replaying identical inputs yields the identical root.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.started_at = clock()
        self._chain: List[ComputeTranscript] = []

    def record_step(
        self,
        module: str,
        input_hash: str,
        preconditions: Dict[str, Any],
        output: Dict[str, Any],
        score: float,
        duration_ms: Optional[float] = None,
    ) -> ComputeTranscript:
        now = self.clock()
        previous = self._chain[-1] if self._chain else None
        if duration_ms is None:
            since = previous.timestamp if previous is not None else self.started_at
            duration_ms = (now - since) * 1000.0
        step = ComputeTranscript(
            step_id=f"{len(self._chain):02d}-{module}",
            module=module,
            input_hash=input_hash,
            preconditions=to_plain(preconditions),
            output=to_plain(output),
            score=float(score),
            timestamp=now,
            duration_ms=float(duration_ms),
            previous_hash=previous.step_hash if previous is not None else "",
        )
        step.step_hash = compute_step_hash(step)
        self._chain.append(step)
        return step

    def record_module_result(self, result: ModuleResult) -> ComputeTranscript:
        return self.record_step(
            result.module_name,
            result.input_hash or "unknown",
            result.preconditions or {},
            result.intermediate_outputs or {},
            result.score,
        )

    def get_chain(self) -> List[ComputeTranscript]:
        return list(self._chain)

    def step_hashes(self) -> List[str]:
        return [s.step_hash for s in self._chain]

    def merkle_root(self) -> str:
        return compute_merkle_root(self.step_hashes())

    def verify_step(self, index: int, expected_hash: str) -> bool:
        if not 0 <= index < len(self._chain):
            return False
        return compute_step_hash(self._chain[index]) == expected_hash

    def export_for_replay(self) -> Dict[str, Any]:
        return {
            "version": REPLAY_FORMAT_VERSION,
            "started_at": self.started_at,
            "chain": [to_plain(asdict(s)) for s in self._chain],
            "merkle_root": self.merkle_root(),
        }
