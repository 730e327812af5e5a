"""Correction and improvement-suggestion schemas."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from .extraction import utcnow


class CorrectionType(str, Enum):
    """Why a reviewer changed an extracted value."""

    MISSING = "MISSING"
    WRONG_VALUE = "WRONG_VALUE"
    WRONG_FORMAT = "WRONG_FORMAT"
    HALLUCINATED = "HALLUCINATED"
    EXTRA_TEXT = "EXTRA_TEXT"
    PARTIAL = "PARTIAL"


class CorrectionInput(BaseModel):
    """A single field correction as submitted by a reviewer."""

    field: str = Field(..., description="Field path, e.g. expiry_date")
    original_value: Any = Field(default=None)
    corrected_value: Any = Field(...)
    correction_type: CorrectionType
    notes: Optional[str] = None

    @field_validator("field")
    @classmethod
    def _field_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("field name must not be empty")
        return value

    @field_validator("correction_type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("corrected_value")
    @classmethod
    def _value_present(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError("corrected value must not be empty")
        return value


class Correction(BaseModel):
    """Persisted field correction. Immutable except for used_for_improvement."""

    correction_id: str = Field(default_factory=lambda: f"corr_{uuid4().hex[:12]}")
    org_id: str
    run_id: str
    certificate_id: str
    certificate_type: str = Field(..., description="Stamped at time of correction")
    tier: Optional[int] = Field(
        default=None, description="Tier whose output was corrected"
    )
    field: str
    original_value: Any = None
    corrected_value: Any
    correction_type: CorrectionType
    corrected_by: str
    notes: Optional[str] = None
    used_for_improvement: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class SuggestionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"
    AUTO_RESOLVED = "AUTO_RESOLVED"

    @property
    def is_closed(self) -> bool:
        return self in (
            SuggestionStatus.RESOLVED,
            SuggestionStatus.DISMISSED,
            SuggestionStatus.AUTO_RESOLVED,
        )


class SuggestionCategory(str, Enum):
    PROMPT = "PROMPT"
    PREPROCESSING = "PREPROCESSING"
    VALIDATION = "VALIDATION"
    TRAINING = "TRAINING"
    QUALITY = "QUALITY"
    REVIEW = "REVIEW"


class ImpactLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class PatternSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Suggestion(BaseModel):
    """Deduplicated improvement recommendation derived from correction patterns."""

    suggestion_id: str = Field(default_factory=lambda: f"sug_{uuid4().hex[:12]}")
    org_id: str
    suggestion_key: str = Field(..., description="Stable deduplication key")
    category: SuggestionCategory
    title: str
    description: str
    impact: ImpactLevel = ImpactLevel.MEDIUM
    effort: ImpactLevel = ImpactLevel.MEDIUM
    severity: PatternSeverity = PatternSeverity.LOW
    status: SuggestionStatus = SuggestionStatus.ACTIVE
    occurrences: int = Field(default=0, ge=0)
    current_value: float = Field(default=0.0, description="Tracked metric, e.g. field accuracy")
    target_value: float = Field(default=1.0)
    progress_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    dismiss_reason: Optional[str] = None
    actioned_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
