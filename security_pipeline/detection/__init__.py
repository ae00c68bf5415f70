"""Threat detection: pattern detectors and the risk scorer."""
from security_pipeline.detection.patterns import DEFAULT_DETECTORS, PatternDetector, regex_detector
from security_pipeline.detection.risk_scorer import (
    RiskScorer,
    ThreatAnalysis,
    severity_for_score,
)

__all__ = [
    "DEFAULT_DETECTORS",
    "PatternDetector",
    "regex_detector",
    "RiskScorer",
    "ThreatAnalysis",
    "severity_for_score",
]
