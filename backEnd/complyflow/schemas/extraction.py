"""Extraction run, tier attempt and human review schemas."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ComplyError, ErrorCategory


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    """Lifecycle of an extraction run."""

    PENDING = "PENDING"
    TIER1_ATTEMPTED = "TIER1_ATTEMPTED"
    TIER2_ATTEMPTED = "TIER2_ATTEMPTED"
    AWAITING_REVIEW = "AWAITING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    FAILED = "FAILED"
    SUPERSEDED = "SUPERSEDED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_processing(self) -> bool:
        return self in PROCESSING_STATUSES


TERMINAL_STATUSES = frozenset({
    RunStatus.APPROVED,
    RunStatus.REJECTED,
    RunStatus.VALIDATION_FAILED,
    RunStatus.FAILED,
    RunStatus.SUPERSEDED,
})

# Statuses the orchestrator moves through without waiting on a person.
PROCESSING_STATUSES = frozenset({
    RunStatus.PENDING,
    RunStatus.TIER1_ATTEMPTED,
    RunStatus.TIER2_ATTEMPTED,
})

# Statuses a reviewer decision may resolve.
REVIEWABLE_STATUSES = frozenset({
    RunStatus.AWAITING_REVIEW,
    RunStatus.VALIDATION_FAILED,
})


class ExtractionRun(BaseModel):
    """One processing cycle of a certificate through the tiers."""

    run_id: str = Field(default_factory=lambda: f"run_{uuid4().hex[:12]}")
    org_id: str = Field(..., description="Owning organization")
    certificate_id: str = Field(..., description="Certificate being processed")
    document_type: str = Field(..., description="Certificate type code, e.g. GAS_SAFETY")
    status: RunStatus = Field(default=RunStatus.PENDING)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    validation_passed: Optional[bool] = Field(default=None)
    final_tier: Optional[int] = Field(default=None, description="Highest tier attempted")
    fields: Dict[str, Any] = Field(
        default_factory=dict, description="Best-so-far structured fields"
    )
    field_confidence: Dict[str, float] = Field(default_factory=dict)
    outcome: Optional[str] = Field(
        default=None, description="Outcome classification from the rules engine"
    )
    failed_rules: List[str] = Field(default_factory=list)
    total_cost: float = Field(default=0.0, ge=0.0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)


class TierAttempt(BaseModel):
    """Immutable audit record of one tier invocation."""

    model_config = ConfigDict(frozen=True)

    attempt_id: str = Field(default_factory=lambda: f"att_{uuid4().hex[:12]}")
    run_id: str
    org_id: str
    sequence: int = Field(..., ge=1, description="Position within the run, 1-based")
    tier: int = Field(..., ge=1, le=3)
    adapter: str
    succeeded: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    raw_text: Optional[str] = None
    structured_fields: Dict[str, Any] = Field(default_factory=dict)
    payload_ref: Optional[str] = Field(
        default=None, description="Reference to the stored raw payload"
    )
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    processing_time_ms: int = Field(default=0, ge=0)
    estimated_cost: float = Field(default=0.0, ge=0.0)
    attempted_at: datetime = Field(default_factory=utcnow)


class TierOutcome(BaseModel):
    """Normalized result returned by every tier adapter."""

    succeeded: bool
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    raw_text: Optional[str] = None
    structured_fields: Dict[str, Any] = Field(default_factory=dict)
    field_confidence: Dict[str, float] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description="Tables, key-value pairs, page count"
    )
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    processing_time_ms: int = Field(default=0, ge=0)
    estimated_cost: float = Field(default=0.0, ge=0.0)

    @classmethod
    def failure(
        cls,
        error: Exception,
        processing_time_ms: int = 0,
        estimated_cost: float = 0.0,
    ) -> "TierOutcome":
        """Build a failed outcome from an exception."""
        if isinstance(error, ComplyError):
            category = error.category
        else:
            category = ErrorCategory.TRANSIENT
        return cls(
            succeeded=False,
            confidence=0.0,
            error=str(error) or type(error).__name__,
            error_category=category,
            processing_time_ms=processing_time_ms,
            estimated_cost=estimated_cost,
        )


class ReviewDecision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class HumanReview(BaseModel):
    """Work-queue entry for tier 3."""

    review_id: str = Field(default_factory=lambda: f"rev_{uuid4().hex[:12]}")
    org_id: str
    run_id: str
    certificate_id: str
    certificate_type: str
    reason: str = Field(..., description="Why the run needs a person")
    failed_rules: List[str] = Field(default_factory=list)
    priority: float = Field(default=0.0, description="Higher is reviewed first")
    status: ReviewStatus = Field(default=ReviewStatus.PENDING)
    reviewer_id: Optional[str] = None
    decision: Optional[ReviewDecision] = None
    error_tags: List[str] = Field(
        default_factory=list, description="Failure-cause taxonomy tags"
    )
    was_correct: Optional[bool] = Field(
        default=None, description="Extraction needed no changes"
    )
    change_count: int = Field(default=0, ge=0)
    field_changes: Dict[str, Any] = Field(default_factory=dict)
    review_time_seconds: Optional[float] = Field(default=None, ge=0.0)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


@dataclass
class DocumentInput:
    """A certificate document entering the pipeline."""

    content: bytes
    mime_type: str
    certificate_type: str
    filename: Optional[str] = None
    page_count: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)
