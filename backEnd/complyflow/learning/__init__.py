"""Correction capture and pattern analysis."""

from .corrections import CorrectionBatchResult, CorrectionCapture, RejectedCorrection
from .patterns import Pattern, PatternAnalysisResult, PatternAnalyzer, severity_for

__all__ = [
    "CorrectionBatchResult",
    "CorrectionCapture",
    "Pattern",
    "PatternAnalysisResult",
    "PatternAnalyzer",
    "RejectedCorrection",
    "severity_for",
]
