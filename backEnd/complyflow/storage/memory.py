"""In-process store used by default and throughout the test suite."""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, TypeVar

from pydantic import BaseModel

from ..errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StaleRunError,
    TrainingInProgressError,
)
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
    TrainingStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _check_owner(record: Optional[M], org_id: str, kind: str, record_id: str) -> M:
    if record is None:
        raise NotFoundError(f"{kind} {record_id} not found")
    if getattr(record, "org_id") != org_id:
        raise AuthorizationError(f"{kind} {record_id} does not belong to org {org_id}")
    return record


class InMemoryStore:
    """Dictionary-backed ComplianceStore guarded by a single re-entrant lock.

    Records are copied on the way in and out so callers cannot mutate stored
    state without going through the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._runs: Dict[str, ExtractionRun] = {}
        self._attempts: Dict[str, List[TierAttempt]] = {}
        self._reviews: Dict[str, HumanReview] = {}
        self._corrections: Dict[str, Correction] = {}
        self._suggestions: Dict[str, Suggestion] = {}
        self._properties: Dict[str, PropertyProfile] = {}
        self._predictions: Dict[str, RiskPrediction] = {}
        self._feedback: Dict[str, PredictionFeedback] = {}
        self._models: Dict[str, ModelVersion] = {}
        self._active_models: Dict[str, str] = {}
        self._training_runs: Dict[str, TrainingRun] = {}

    # ------------------------------------------------------------------
    # Extraction runs
    # ------------------------------------------------------------------

    def create_run(self, run: ExtractionRun) -> ExtractionRun:
        with self._lock:
            if run.run_id in self._runs:
                raise ConflictError(f"Run {run.run_id} already exists")
            self._runs[run.run_id] = run.model_copy(deep=True)
            self._attempts[run.run_id] = []
        return run.model_copy(deep=True)

    def get_run(self, org_id: str, run_id: str) -> ExtractionRun:
        with self._lock:
            run = _check_owner(self._runs.get(run_id), org_id, "Run", run_id)
            return run.model_copy(deep=True)

    def list_runs(
        self,
        org_id: str,
        certificate_id: Optional[str] = None,
        statuses: Optional[Sequence[RunStatus]] = None,
        document_type: Optional[str] = None,
    ) -> List[ExtractionRun]:
        with self._lock:
            runs = [
                r for r in self._runs.values()
                if r.org_id == org_id
                and (certificate_id is None or r.certificate_id == certificate_id)
                and (statuses is None or r.status in statuses)
                and (document_type is None or r.document_type == document_type)
            ]
            return [r.model_copy(deep=True) for r in sorted(runs, key=lambda r: r.created_at)]

    def latest_run_for_certificate(self, org_id: str, certificate_id: str) -> ExtractionRun:
        with self._lock:
            matching = [r for r in self._runs.values() if r.certificate_id == certificate_id]
            owned = [r for r in matching if r.org_id == org_id]
            if not owned:
                if matching:
                    raise AuthorizationError(
                        f"Certificate {certificate_id} does not belong to org {org_id}"
                    )
                raise NotFoundError(f"No extraction run for certificate {certificate_id}")
            return sorted(owned, key=lambda r: r.created_at)[-1].model_copy(deep=True)

    def transition_run(
        self,
        org_id: str,
        run_id: str,
        expected_status: RunStatus,
        **changes: Any,
    ) -> ExtractionRun:
        with self._lock:
            current = _check_owner(self._runs.get(run_id), org_id, "Run", run_id)
            if current.status != expected_status:
                raise StaleRunError(run_id, expected_status.value, current.status.value)
            data = current.model_dump()
            data.update(changes)
            data["updated_at"] = utcnow()
            updated = ExtractionRun.model_validate(data)
            self._runs[run_id] = updated
            return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Tier attempts
    # ------------------------------------------------------------------

    def append_tier_attempt(self, attempt: TierAttempt) -> TierAttempt:
        with self._lock:
            _check_owner(self._runs.get(attempt.run_id), attempt.org_id, "Run", attempt.run_id)
            existing = self._attempts.setdefault(attempt.run_id, [])
            if attempt.sequence != len(existing) + 1:
                raise ConflictError(
                    f"Attempt sequence {attempt.sequence} out of order for run {attempt.run_id}",
                    retryable=True,
                )
            if existing and attempt.attempted_at < existing[-1].attempted_at:
                raise ConflictError(f"Attempt for run {attempt.run_id} predates the previous attempt")
            existing.append(attempt)
        return attempt

    def list_tier_attempts(self, org_id: str, run_id: str) -> List[TierAttempt]:
        with self._lock:
            _check_owner(self._runs.get(run_id), org_id, "Run", run_id)
            return list(self._attempts.get(run_id, []))

    # ------------------------------------------------------------------
    # Human reviews
    # ------------------------------------------------------------------

    def create_review(self, review: HumanReview) -> HumanReview:
        with self._lock:
            self._reviews[review.review_id] = review.model_copy(deep=True)
        return review

    def get_review(self, org_id: str, review_id: str) -> HumanReview:
        with self._lock:
            review = _check_owner(self._reviews.get(review_id), org_id, "Review", review_id)
            return review.model_copy(deep=True)

    def update_review(self, review: HumanReview) -> HumanReview:
        with self._lock:
            _check_owner(self._reviews.get(review.review_id), review.org_id, "Review", review.review_id)
            self._reviews[review.review_id] = review.model_copy(deep=True)
        return review

    def list_reviews(
        self,
        org_id: str,
        status: Optional[ReviewStatus] = None,
        run_id: Optional[str] = None,
    ) -> List[HumanReview]:
        with self._lock:
            return [
                r.model_copy(deep=True) for r in self._reviews.values()
                if r.org_id == org_id
                and (status is None or r.status == status)
                and (run_id is None or r.run_id == run_id)
            ]

    # ------------------------------------------------------------------
    # Corrections
    # ------------------------------------------------------------------

    def add_correction(self, correction: Correction) -> Correction:
        with self._lock:
            _check_owner(self._runs.get(correction.run_id), correction.org_id, "Run", correction.run_id)
            self._corrections[correction.correction_id] = correction.model_copy(deep=True)
        return correction

    def list_corrections(
        self,
        org_id: str,
        certificate_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[Correction]:
        with self._lock:
            return [
                c.model_copy(deep=True) for c in self._corrections.values()
                if c.org_id == org_id
                and (certificate_id is None or c.certificate_id == certificate_id)
                and (since is None or c.created_at >= since)
            ]

    def mark_corrections_used(self, org_id: str, correction_ids: Sequence[str]) -> int:
        marked = 0
        with self._lock:
            for correction_id in correction_ids:
                correction = _check_owner(
                    self._corrections.get(correction_id), org_id, "Correction", correction_id
                )
                if not correction.used_for_improvement:
                    self._corrections[correction_id] = correction.model_copy(
                        update={"used_for_improvement": True}
                    )
                    marked += 1
        return marked

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def get_suggestion(self, org_id: str, suggestion_id: str) -> Suggestion:
        with self._lock:
            suggestion = _check_owner(
                self._suggestions.get(suggestion_id), org_id, "Suggestion", suggestion_id
            )
            return suggestion.model_copy(deep=True)

    def find_suggestion_by_key(self, org_id: str, suggestion_key: str) -> Optional[Suggestion]:
        with self._lock:
            for suggestion in self._suggestions.values():
                if suggestion.org_id == org_id and suggestion.suggestion_key == suggestion_key:
                    return suggestion.model_copy(deep=True)
        return None

    def upsert_suggestion(self, suggestion: Suggestion) -> Suggestion:
        with self._lock:
            existing = self.find_suggestion_by_key(suggestion.org_id, suggestion.suggestion_key)
            if existing is not None and existing.suggestion_id != suggestion.suggestion_id:
                raise ConflictError(
                    f"Suggestion key {suggestion.suggestion_key} already exists as {existing.suggestion_id}",
                    retryable=True,
                )
            self._suggestions[suggestion.suggestion_id] = suggestion.model_copy(deep=True)
        return suggestion

    def list_suggestions(
        self, org_id: str, status: Optional[SuggestionStatus] = None
    ) -> List[Suggestion]:
        with self._lock:
            return [
                s.model_copy(deep=True) for s in self._suggestions.values()
                if s.org_id == org_id and (status is None or s.status == status)
            ]

    # ------------------------------------------------------------------
    # Properties, predictions and feedback
    # ------------------------------------------------------------------

    def save_property(self, profile: PropertyProfile) -> PropertyProfile:
        with self._lock:
            existing = self._properties.get(profile.property_id)
            if existing is not None and existing.org_id != profile.org_id:
                raise AuthorizationError(
                    f"Property {profile.property_id} does not belong to org {profile.org_id}"
                )
            self._properties[profile.property_id] = profile.model_copy(deep=True)
        return profile

    def get_property(self, org_id: str, property_id: str) -> PropertyProfile:
        with self._lock:
            profile = _check_owner(self._properties.get(property_id), org_id, "Property", property_id)
            return profile.model_copy(deep=True)

    def list_properties(self, org_id: str) -> List[PropertyProfile]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._properties.values() if p.org_id == org_id]

    def save_prediction(self, prediction: RiskPrediction) -> RiskPrediction:
        with self._lock:
            for pred_id, existing in self._predictions.items():
                if (
                    existing.org_id == prediction.org_id
                    and existing.property_id == prediction.property_id
                    and existing.is_latest
                ):
                    self._predictions[pred_id] = existing.model_copy(update={"is_latest": False})
            stored = prediction.model_copy(update={"is_latest": True}, deep=True)
            self._predictions[prediction.prediction_id] = stored
            return stored.model_copy(deep=True)

    def get_prediction(self, org_id: str, prediction_id: str) -> RiskPrediction:
        with self._lock:
            prediction = _check_owner(
                self._predictions.get(prediction_id), org_id, "Prediction", prediction_id
            )
            return prediction.model_copy(deep=True)

    def latest_prediction(self, org_id: str, property_id: str) -> Optional[RiskPrediction]:
        with self._lock:
            for prediction in self._predictions.values():
                if prediction.org_id == org_id and prediction.property_id == property_id and prediction.is_latest:
                    return prediction.model_copy(deep=True)
        return None

    def add_feedback(self, feedback: PredictionFeedback) -> PredictionFeedback:
        with self._lock:
            _check_owner(
                self._predictions.get(feedback.prediction_id), feedback.org_id, "Prediction", feedback.prediction_id
            )
            self._feedback[feedback.feedback_id] = feedback.model_copy(deep=True)
        return feedback

    def list_feedback(self, org_id: str) -> List[PredictionFeedback]:
        with self._lock:
            feedback = [f for f in self._feedback.values() if f.org_id == org_id]
            return [f.model_copy(deep=True) for f in sorted(feedback, key=lambda f: f.created_at)]

    # ------------------------------------------------------------------
    # Models and training runs
    # ------------------------------------------------------------------

    def save_model(self, model: ModelVersion) -> ModelVersion:
        with self._lock:
            existing = self._models.get(model.model_id)
            if existing is not None and existing.org_id != model.org_id:
                raise AuthorizationError(f"Model {model.model_id} does not belong to org {model.org_id}")
            # Activation only changes through swap_active_model.
            is_active = self._active_models.get(model.org_id) == model.model_id
            stored = model.model_copy(update={"is_active": is_active}, deep=True)
            self._models[model.model_id] = stored
            return stored.model_copy(deep=True)

    def get_model(self, org_id: str, model_id: str) -> ModelVersion:
        with self._lock:
            model = _check_owner(self._models.get(model_id), org_id, "Model", model_id)
            return model.model_copy(deep=True)

    def get_active_model(self, org_id: str) -> Optional[ModelVersion]:
        with self._lock:
            model_id = self._active_models.get(org_id)
            if model_id is None:
                return None
            return self._models[model_id].model_copy(deep=True)

    def list_models(self, org_id: str) -> List[ModelVersion]:
        with self._lock:
            models = [m for m in self._models.values() if m.org_id == org_id]
            return [m.model_copy(deep=True) for m in sorted(models, key=lambda m: m.created_at)]

    def swap_active_model(
        self, org_id: str, expected_active_id: Optional[str], new_model_id: str
    ) -> ModelVersion:
        with self._lock:
            new_model = _check_owner(self._models.get(new_model_id), org_id, "Model", new_model_id)
            current_id = self._active_models.get(org_id)
            if current_id != expected_active_id:
                raise ConflictError(
                    f"Active model for org {org_id} is {current_id}, expected {expected_active_id}",
                    retryable=True,
                )
            if current_id is not None and current_id != new_model_id:
                self._models[current_id] = self._models[current_id].model_copy(
                    update={"is_active": False}
                )
            activated = new_model.model_copy(update={"is_active": True, "activated_at": utcnow()})
            self._models[new_model_id] = activated
            self._active_models[org_id] = new_model_id
            logger.info(f"Active model for org {org_id}: {current_id} -> {new_model_id}")
            return activated.model_copy(deep=True)

    def record_model_feedback(self, org_id: str, model_id: str, correct: bool) -> ModelVersion:
        with self._lock:
            model = _check_owner(self._models.get(model_id), org_id, "Model", model_id)
            updated = model.model_copy(update={
                "feedback_count": model.feedback_count + 1,
                "correct_feedback_count": model.correct_feedback_count + (1 if correct else 0),
            })
            self._models[model_id] = updated
            return updated.model_copy(deep=True)

    def begin_training_run(self, run: TrainingRun) -> TrainingRun:
        with self._lock:
            for existing in self._training_runs.values():
                if existing.org_id == run.org_id and existing.status == TrainingStatus.RUNNING:
                    raise TrainingInProgressError(run.org_id, existing.training_run_id)
            self._training_runs[run.training_run_id] = run.model_copy(deep=True)
        return run

    def finish_training_run(self, org_id: str, training_run_id: str, **changes: Any) -> TrainingRun:
        with self._lock:
            current = _check_owner(
                self._training_runs.get(training_run_id), org_id, "TrainingRun", training_run_id
            )
            if current.status != TrainingStatus.RUNNING:
                raise ConflictError(f"Training run {training_run_id} already finished")
            data = current.model_dump()
            data.update(changes)
            if data.get("finished_at") is None:
                data["finished_at"] = utcnow()
            updated = TrainingRun.model_validate(data)
            self._training_runs[training_run_id] = updated
            return updated.model_copy(deep=True)

    def get_training_run(self, org_id: str, training_run_id: str) -> TrainingRun:
        with self._lock:
            run = _check_owner(
                self._training_runs.get(training_run_id), org_id, "TrainingRun", training_run_id
            )
            return run.model_copy(deep=True)

    def list_training_runs(self, org_id: str) -> List[TrainingRun]:
        with self._lock:
            runs = [r for r in self._training_runs.values() if r.org_id == org_id]
            return [r.model_copy(deep=True) for r in sorted(runs, key=lambda r: r.started_at)]
