"""Report severity triage."""

from resq.severity.classifier import SeverityAssessment, classify_severity, fallback_assessment

__all__ = [
    "SeverityAssessment",
    "classify_severity",
    "fallback_assessment",
]
