from __future__ import annotations

from typing import Any, Dict, List, Sequence

from .config import Config
from .types import ModuleResult, Severity, Verdict, VerificationAnomaly, clamp_score
from .utils.logging import get_logger

logger = get_logger(__name__)

BADGE_VERIFIED_SOURCE = "Verified Source"
BADGE_HIGH_FIDELITY = "High Fidelity"
BADGE_NO_ANOMALIES = "No Anomalies"
BADGE_QUALITY_ISSUES = "Quality Issues"


def decide_verdict(
    avg_score: float,
    avg_confidence: float,
    anomalies: Sequence[VerificationAnomaly],
    config: Config,
) -> Verdict:
    """
    Verdict from aggregate score, aggregate confidence and anomaly severities.

    Severity gates come first: any critical anomaly means synthetic and
    more than two high ones mean likely synthetic. Otherwise score and
    confidence bands decide.
    """
    critical = sum(1 for a in anomalies if a.severity == Severity.CRITICAL)
    high = sum(1 for a in anomalies if a.severity == Severity.HIGH)

    if critical > 0:
        return Verdict.SYNTHETIC
    if high > 2:
        return Verdict.LIKELY_SYNTHETIC
    if avg_score < 5 or avg_confidence < config.confidence_threshold:
        return Verdict.SUSPICIOUS
    if avg_score >= 8 and avg_confidence >= 0.85:
        return Verdict.AUTHENTIC
    return Verdict.LIKELY_AUTHENTIC


def quality_score(anomalies: Sequence[VerificationAnomaly], config: Config) -> float:
    penalty = sum(config.anomaly_weights.get(a.severity.value, 1.0) for a in anomalies)
    return max(0.0, 10.0 - penalty)


def generate_badges(verdict: Verdict, avg_score: float, anomalies: Sequence[VerificationAnomaly]) -> List[str]:
    badges = []
    if verdict == Verdict.AUTHENTIC:
        badges.append(BADGE_VERIFIED_SOURCE)
    if avg_score >= 9:
        badges.append(BADGE_HIGH_FIDELITY)
    if not anomalies:
        badges.append(BADGE_NO_ANOMALIES)
    if any(a.severity in (Severity.CRITICAL, Severity.HIGH) for a in anomalies):
        badges.append(BADGE_QUALITY_ISSUES)
    return badges


def _plural(count: int, one: str, many: str) -> str:
    return one if count == 1 else many


def generate_explanation(
    module_results: Sequence[ModuleResult],
    anomalies: Sequence[VerificationAnomaly],
    verdict: Verdict,
) -> str:
    parts = []
    if verdict.is_authentic:
        parts.append("Dataset appears authentic with strong verification signals.")
    elif verdict == Verdict.SUSPICIOUS:
        parts.append("Dataset shows suspicious characteristics requiring manual review.")
    else:
        parts.append("Dataset likely contains synthetic or tampered data.")

    good = [r.module_name for r in module_results if r.score >= 7]
    poor = [r.module_name for r in module_results if r.score < 5]
    if good:
        parts.append(f"{', '.join(good)} {_plural(len(good), 'shows', 'show')} strong validation.")
    if poor:
        parts.append(f"{', '.join(poor)} {_plural(len(poor), 'raised', 'raise')} concerns.")

    critical = sum(1 for a in anomalies if a.severity == Severity.CRITICAL)
    high = sum(1 for a in anomalies if a.severity == Severity.HIGH)
    if critical:
        parts.append(f"{critical} critical {_plural(critical, 'issue', 'issues')} detected.")
    if high:
        parts.append(f"{high} high-severity {_plural(high, 'issue', 'issues')} found.")
    return " ".join(parts)


def _module_score(module_results: Sequence[ModuleResult], name: str) -> float:
    for r in module_results:
        if r.module_name == name:
            return r.score
    return 0.0


def aggregate(module_results: Sequence[ModuleResult], config: Config) -> Dict[str, Any]:
    """Fold module results into the verdict and the report's headline scores."""
    if module_results:
        avg_score = sum(r.score for r in module_results) / len(module_results)
        avg_confidence = sum(r.confidence for r in module_results) / len(module_results)
    else:
        avg_score = 0.0
        avg_confidence = 0.0
    anomalies = [a for r in module_results for a in r.anomalies]
    verdict = decide_verdict(avg_score, avg_confidence, anomalies, config)

    logger.info(
        "Verdict=%s avg_score=%.2f avg_confidence=%.3f anomalies=%d",
        verdict.value,
        avg_score,
        avg_confidence,
        len(anomalies),
    )
    return {
        "verdict": verdict,
        "avg_score": clamp_score(avg_score),
        "avg_confidence": avg_confidence,
        "anomalies": anomalies,
        "quality_score": quality_score(anomalies, config),
        "metadata_score": _module_score(module_results, "MetadataValidator"),
        "source_match_score": _module_score(module_results, "SensorSignatureClassifier"),
        "cross_modal_score": _module_score(module_results, "CrossModalChecker"),
        "challenge_response_score": _module_score(module_results, "ChallengeResponder"),
        "badges": generate_badges(verdict, avg_score, anomalies),
        "explanation": generate_explanation(module_results, anomalies, verdict),
    }
