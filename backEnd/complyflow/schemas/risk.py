"""Risk prediction, feedback and model registry schemas.

A RiskPrediction's blended score and tier are computed from its statistical
and ML components. They cannot be set independently.
"""

from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from .extraction import utcnow

# Tier lower bounds on the 0-100 scale. LOW is everything below MEDIUM.
TIER_BOUNDARIES = {
    "CRITICAL": 75,
    "HIGH": 55,
    "MEDIUM": 35,
}

DEFAULT_FACTOR_WEIGHTS: Dict[str, float] = {
    "expiry": 30.0,
    "defect": 25.0,
    "asset_profile": 20.0,
    "coverage_gap": 15.0,
    "external": 10.0,
}


class RiskTier(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


def classify_tier(score: float) -> RiskTier:
    """Map a 0-100 score to its tier: LOW <35, MEDIUM 35-54, HIGH 55-74, CRITICAL >=75."""
    if score >= TIER_BOUNDARIES["CRITICAL"]:
        return RiskTier.CRITICAL
    if score >= TIER_BOUNDARIES["HIGH"]:
        return RiskTier.HIGH
    if score >= TIER_BOUNDARIES["MEDIUM"]:
        return RiskTier.MEDIUM
    return RiskTier.LOW


def blend_scores(
    stat_score: float,
    stat_confidence: float,
    ml_score: Optional[float] = None,
    ml_confidence: Optional[float] = None,
) -> Tuple[float, float]:
    """
    Confidence-weighted blend of statistical and ML scores.

    Without a usable ML component (no score, or zero confidence) the
    statistical score and confidence pass through unchanged.

    Returns:
        (blended_score, blended_confidence)
    """
    if ml_score is None or not ml_confidence or ml_confidence <= 0:
        return float(stat_score), float(stat_confidence)

    total = stat_confidence + ml_confidence
    blended = stat_score * (stat_confidence / total) + ml_score * (ml_confidence / total)
    return blended, (stat_confidence + ml_confidence) / 2


class CertificateSummary(BaseModel):
    """Current certificate held for a property, as used for risk scoring."""

    certificate_type: str
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None


class RemedialAction(BaseModel):
    description: Optional[str] = None
    priority: str = Field(default="ROUTINE", description="IMMEDIATE, URGENT, PRIORITY, ROUTINE, ADVISORY")
    is_open: bool = True

    @field_validator("priority", mode="before")
    @classmethod
    def _upper(cls, value: str) -> str:
        return str(value).strip().upper()


class PropertyProfile(BaseModel):
    """Facts about a property that drive its risk score."""

    property_id: str
    org_id: str
    uprn: Optional[str] = None
    year_built: Optional[int] = None
    floors: int = Field(default=1, ge=0)
    hrb: Optional[bool] = Field(
        default=None, description="Higher-risk building; defaults to 7+ floors"
    )
    has_gas: bool = False
    has_electricity: bool = True
    has_vulnerable_occupants: bool = False
    has_asbestos: bool = False
    has_sprinklers: bool = False
    epc_rating: Optional[str] = None
    certificates: List[CertificateSummary] = Field(default_factory=list)
    actions: List[RemedialAction] = Field(default_factory=list)
    historical_breach_count: int = Field(default=0, ge=0)

    @property
    def is_hrb(self) -> bool:
        if self.hrb is not None:
            return self.hrb
        return self.floors >= 7

    def certificate_types(self) -> set:
        return {c.certificate_type.upper() for c in self.certificates}


class FactorBreakdown(BaseModel):
    """Per-factor risk scores, each on 0-100."""

    expiry: int = Field(default=0, ge=0, le=100)
    defect: int = Field(default=0, ge=0, le=100)
    asset_profile: int = Field(default=0, ge=0, le=100)
    coverage_gap: int = Field(default=0, ge=0, le=100)
    external: int = Field(default=0, ge=0, le=100)

    def as_dict(self) -> Dict[str, int]:
        return {
            "expiry": self.expiry,
            "defect": self.defect,
            "asset_profile": self.asset_profile,
            "coverage_gap": self.coverage_gap,
            "external": self.external,
        }


class RiskPrediction(BaseModel):
    """One scoring of one property. Later predictions supersede earlier ones."""

    model_config = ConfigDict(protected_namespaces=())

    prediction_id: str = Field(default_factory=lambda: f"pred_{uuid4().hex[:12]}")
    org_id: str
    property_id: str
    statistical_score: float = Field(..., ge=0.0, le=100.0)
    statistical_confidence: float = Field(..., ge=0.0, le=1.0)
    ml_score: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    ml_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    model_version: Optional[str] = None
    factors: FactorBreakdown = Field(default_factory=FactorBreakdown)
    features: List[float] = Field(default_factory=list)
    predicted_breach_date: Optional[date] = None
    legislation_refs: List[str] = Field(default_factory=list)
    recommended_actions: List[str] = Field(default_factory=list)
    is_latest: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def blended_score(self) -> float:
        return blend_scores(
            self.statistical_score, self.statistical_confidence, self.ml_score, self.ml_confidence
        )[0]

    @computed_field
    @property
    def blended_confidence(self) -> float:
        return blend_scores(
            self.statistical_score, self.statistical_confidence, self.ml_score, self.ml_confidence
        )[1]

    @computed_field
    @property
    def risk_tier(self) -> RiskTier:
        return classify_tier(self.blended_score)


class FeedbackType(str, Enum):
    CORRECT = "CORRECT"
    INCORRECT = "INCORRECT"
    PARTIALLY_CORRECT = "PARTIALLY_CORRECT"


class PredictionFeedback(BaseModel):
    """Human correctness signal against a prediction."""

    feedback_id: str = Field(default_factory=lambda: f"fb_{uuid4().hex[:12]}")
    org_id: str
    prediction_id: str
    property_id: str
    feedback_type: FeedbackType
    corrected_score: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    corrected_tier: Optional[RiskTier] = None
    notes: Optional[str] = None
    submitted_by: str
    statistical_score: float = Field(..., description="Snapshot of the prediction's statistical score")
    features: List[float] = Field(default_factory=list, description="Snapshot of model features")
    created_at: datetime = Field(default_factory=utcnow)


class Hyperparameters(BaseModel):
    learning_rate: float = Field(default=0.01, gt=0.0, le=1.0)
    epochs: int = Field(default=100, ge=1)
    batch_size: int = Field(default=32, ge=1)
    validation_split: float = Field(default=0.2, gt=0.0, lt=1.0)
    hidden_layers: Tuple[int, ...] = Field(default=(16, 8))
    feature_weights: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_FACTOR_WEIGHTS)
    )


class ModelVersion(BaseModel):
    """A trained risk model. At most one per organization is active."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str = Field(default_factory=lambda: f"mdl_{uuid4().hex[:12]}")
    org_id: str
    name: str = "risk-mlp"
    version: str
    hyperparameters: Hyperparameters = Field(default_factory=Hyperparameters)
    is_active: bool = False
    accuracy: float = Field(default=0.0, ge=0.0, le=1.0)
    benchmark_score: float = Field(default=0.0, ge=0.0, le=100.0)
    training_samples: int = 0
    feedback_count: int = 0
    correct_feedback_count: int = 0
    artifact: Optional[bytes] = Field(default=None, repr=False, description="Serialized estimator")
    created_at: datetime = Field(default_factory=utcnow)
    activated_at: Optional[datetime] = None


class TrainingStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TrainingRun(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    training_run_id: str = Field(default_factory=lambda: f"trn_{uuid4().hex[:12]}")
    org_id: str
    model_id: Optional[str] = None
    status: TrainingStatus = TrainingStatus.RUNNING
    hyperparameters: Hyperparameters = Field(default_factory=Hyperparameters)
    sample_count: int = 0
    benchmark_score: Optional[float] = None
    passed: Optional[bool] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
