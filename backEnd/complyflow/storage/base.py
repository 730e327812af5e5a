"""Storage boundary for ComplyFlow.

Every read and write is scoped by organization. Reading another
organization's record raises AuthorizationError, and reading a missing
record raises NotFoundError. Tier attempts are append-only. Run status
changes and active-model promotion are compare-and-swap operations.
"""

from datetime import datetime
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

from ..schemas import (
    Correction,
    ExtractionRun,
    HumanReview,
    ModelVersion,
    PredictionFeedback,
    PropertyProfile,
    ReviewStatus,
    RiskPrediction,
    RunStatus,
    Suggestion,
    SuggestionStatus,
    TierAttempt,
    TrainingRun,
)


@runtime_checkable
class ComplianceStore(Protocol):
    """Persistence contract required by the pipeline."""

    # Extraction runs
    def create_run(self, run: ExtractionRun) -> ExtractionRun: ...

    def get_run(self, org_id: str, run_id: str) -> ExtractionRun: ...

    def list_runs(
        self,
        org_id: str,
        certificate_id: Optional[str] = None,
        statuses: Optional[Sequence[RunStatus]] = None,
        document_type: Optional[str] = None,
    ) -> List[ExtractionRun]: ...

    def latest_run_for_certificate(self, org_id: str, certificate_id: str) -> ExtractionRun: ...

    def transition_run(
        self,
        org_id: str,
        run_id: str,
        expected_status: RunStatus,
        **changes: Any,
    ) -> ExtractionRun: ...

    # Tier attempts (append-only)
    def append_tier_attempt(self, attempt: TierAttempt) -> TierAttempt: ...

    def list_tier_attempts(self, org_id: str, run_id: str) -> List[TierAttempt]: ...

    # Human reviews
    def create_review(self, review: HumanReview) -> HumanReview: ...

    def get_review(self, org_id: str, review_id: str) -> HumanReview: ...

    def update_review(self, review: HumanReview) -> HumanReview: ...

    def list_reviews(
        self,
        org_id: str,
        status: Optional[ReviewStatus] = None,
        run_id: Optional[str] = None,
    ) -> List[HumanReview]: ...

    # Corrections
    def add_correction(self, correction: Correction) -> Correction: ...

    def list_corrections(
        self,
        org_id: str,
        certificate_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[Correction]: ...

    def mark_corrections_used(self, org_id: str, correction_ids: Sequence[str]) -> int: ...

    # Suggestions
    def get_suggestion(self, org_id: str, suggestion_id: str) -> Suggestion: ...

    def find_suggestion_by_key(self, org_id: str, suggestion_key: str) -> Optional[Suggestion]: ...

    def upsert_suggestion(self, suggestion: Suggestion) -> Suggestion: ...

    def list_suggestions(
        self, org_id: str, status: Optional[SuggestionStatus] = None
    ) -> List[Suggestion]: ...

    # Properties and predictions
    def save_property(self, profile: PropertyProfile) -> PropertyProfile: ...

    def get_property(self, org_id: str, property_id: str) -> PropertyProfile: ...

    def list_properties(self, org_id: str) -> List[PropertyProfile]: ...

    def save_prediction(self, prediction: RiskPrediction) -> RiskPrediction: ...

    def get_prediction(self, org_id: str, prediction_id: str) -> RiskPrediction: ...

    def latest_prediction(self, org_id: str, property_id: str) -> Optional[RiskPrediction]: ...

    def add_feedback(self, feedback: PredictionFeedback) -> PredictionFeedback: ...

    def list_feedback(self, org_id: str) -> List[PredictionFeedback]: ...

    # Models and training
    def save_model(self, model: ModelVersion) -> ModelVersion: ...

    def get_model(self, org_id: str, model_id: str) -> ModelVersion: ...

    def get_active_model(self, org_id: str) -> Optional[ModelVersion]: ...

    def list_models(self, org_id: str) -> List[ModelVersion]: ...

    def swap_active_model(
        self, org_id: str, expected_active_id: Optional[str], new_model_id: str
    ) -> ModelVersion: ...

    def record_model_feedback(self, org_id: str, model_id: str, correct: bool) -> ModelVersion: ...

    def begin_training_run(self, run: TrainingRun) -> TrainingRun: ...

    def finish_training_run(self, org_id: str, training_run_id: str, **changes: Any) -> TrainingRun: ...

    def get_training_run(self, org_id: str, training_run_id: str) -> TrainingRun: ...

    def list_training_runs(self, org_id: str) -> List[TrainingRun]: ...
