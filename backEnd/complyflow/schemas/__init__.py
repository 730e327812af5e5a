"""Pydantic schemas for certificates, extraction runs, learning and risk."""

from .certificates import (
    AsbestosRecord,
    CertificateRecord,
    CertificateRecordBase,
    ElectricalRecord,
    FireRiskRecord,
    GasSafetyRecord,
    GenericCertificateRecord,
    field_paths,
    parse_certificate_fields,
    parse_date,
)
from .extraction import (
    DocumentInput,
    ExtractionRun,
    HumanReview,
    ReviewDecision,
    ReviewStatus,
    RunStatus,
    TierAttempt,
    TierOutcome,
    utcnow,
)
from .learning import (
    Correction,
    CorrectionInput,
    CorrectionType,
    ImpactLevel,
    PatternSeverity,
    Suggestion,
    SuggestionCategory,
    SuggestionStatus,
)
from .risk import (
    CertificateSummary,
    FactorBreakdown,
    FeedbackType,
    Hyperparameters,
    ModelVersion,
    PredictionFeedback,
    PropertyProfile,
    RemedialAction,
    RiskPrediction,
    RiskTier,
    TrainingRun,
    TrainingStatus,
    blend_scores,
    classify_tier,
)

__all__ = [
    "AsbestosRecord",
    "CertificateRecord",
    "CertificateRecordBase",
    "CertificateSummary",
    "Correction",
    "CorrectionInput",
    "CorrectionType",
    "DocumentInput",
    "ElectricalRecord",
    "ExtractionRun",
    "FactorBreakdown",
    "FeedbackType",
    "FireRiskRecord",
    "GasSafetyRecord",
    "GenericCertificateRecord",
    "HumanReview",
    "Hyperparameters",
    "ImpactLevel",
    "ModelVersion",
    "PatternSeverity",
    "PredictionFeedback",
    "PropertyProfile",
    "RemedialAction",
    "ReviewDecision",
    "ReviewStatus",
    "RiskPrediction",
    "RiskTier",
    "RunStatus",
    "Suggestion",
    "SuggestionCategory",
    "SuggestionStatus",
    "TierAttempt",
    "TierOutcome",
    "TrainingRun",
    "TrainingStatus",
    "blend_scores",
    "classify_tier",
    "field_paths",
    "parse_certificate_fields",
    "parse_date",
    "utcnow",
]
