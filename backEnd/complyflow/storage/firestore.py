"""
Firestore-backed ComplianceStore.

Each entity lives in a top-level collection and carries its org_id, so a
lookup can tell "belongs to someone else" apart from "does not exist".
Tier attempts are written with create(), which fails if the document
already exists, so the audit trail cannot be overwritten. Run transitions,
training-run exclusivity and active-model promotion run inside Firestore
transactions.
"""

import logging
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core.exceptions import AlreadyExists
from google.cloud.firestore_v1 import Client
from google.cloud.firestore_v1.base_query import FieldFilter
from pydantic import BaseModel

from ..config.settings import Settings, get_settings
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

RUNS = "extraction_runs"
ATTEMPTS = "tier_attempts"
REVIEWS = "human_reviews"
CORRECTIONS = "corrections"
SUGGESTIONS = "suggestions"
PROPERTIES = "properties"
PREDICTIONS = "risk_predictions"
FEEDBACK = "prediction_feedback"
MODELS = "risk_models"
TRAINING_RUNS = "training_runs"
ORG_STATE = "org_state"


def _initialize_firebase(settings: Settings) -> None:
    """Initialize Firebase Admin SDK if not already done."""
    if firebase_admin._apps:
        return

    if settings.google_application_credentials:
        cred = credentials.Certificate(settings.google_application_credentials)
        firebase_admin.initialize_app(cred)
    elif settings.firebase_project_id:
        firebase_admin.initialize_app(options={
            "projectId": settings.firebase_project_id
        })
    else:
        firebase_admin.initialize_app()


@lru_cache()
def get_firestore_client() -> Client:
    """Get the Firestore client (sync)."""
    _initialize_firebase(get_settings())
    return firestore.client()


def to_doc(model: BaseModel) -> Dict[str, Any]:
    """Serialize a schema object for Firestore.

    Dates become ISO strings. Raw bytes (model artifacts) are stored as-is.
    """
    data = model.model_dump(mode="json", exclude={"artifact"})
    if isinstance(model, ModelVersion):
        data["artifact"] = model.artifact
    return data


def from_doc(cls: Type[M], data: Dict[str, Any]) -> M:
    return cls.model_validate(data)


def _suggestion_doc_id(org_id: str, suggestion_key: str) -> str:
    return f"{org_id}__{suggestion_key}".replace("/", "_")


class FirestoreStore:
    """ComplianceStore backed by Cloud Firestore."""

    def __init__(self, db: Optional[Client] = None):
        self._db = db

    @property
    def db(self) -> Client:
        """Lazy-load Firestore client."""
        if self._db is None:
            self._db = get_firestore_client()
        return self._db

    def _owned(self, collection: str, doc_id: str, org_id: str, cls: Type[M], kind: str) -> M:
        snapshot = self.db.collection(collection).document(doc_id).get()
        if not snapshot.exists:
            raise NotFoundError(f"{kind} {doc_id} not found")
        data = snapshot.to_dict()
        if data.get("org_id") != org_id:
            raise AuthorizationError(f"{kind} {doc_id} does not belong to org {org_id}")
        return from_doc(cls, data)

    def _query(self, collection: str, org_id: str, **equals: Any):
        query = self.db.collection(collection).where(filter=FieldFilter("org_id", "==", org_id))
        for field_name, value in equals.items():
            if value is not None:
                query = query.where(filter=FieldFilter(field_name, "==", value))
        return query

    # Extraction runs

    def create_run(self, run: ExtractionRun) -> ExtractionRun:
        try:
            self.db.collection(RUNS).document(run.run_id).create(to_doc(run))
        except AlreadyExists as e:
            raise ConflictError(f"Run {run.run_id} already exists") from e
        return run

    def get_run(self, org_id: str, run_id: str) -> ExtractionRun:
        return self._owned(RUNS, run_id, org_id, ExtractionRun, "Run")

    def list_runs(
        self,
        org_id: str,
        certificate_id: Optional[str] = None,
        statuses: Optional[Sequence[RunStatus]] = None,
        document_type: Optional[str] = None,
    ) -> List[ExtractionRun]:
        query = self._query(RUNS, org_id, certificate_id=certificate_id, document_type=document_type)
        if statuses is not None:
            query = query.where(filter=FieldFilter("status", "in", [s.value for s in statuses]))
        runs = [from_doc(ExtractionRun, doc.to_dict()) for doc in query.stream()]
        return sorted(runs, key=lambda r: r.created_at)

    def latest_run_for_certificate(self, org_id: str, certificate_id: str) -> ExtractionRun:
        docs = list(
            self.db.collection(RUNS)
            .where(filter=FieldFilter("certificate_id", "==", certificate_id))
            .stream()
        )
        runs = [from_doc(ExtractionRun, d.to_dict()) for d in docs]
        owned = [r for r in runs if r.org_id == org_id]
        if not owned:
            if runs:
                raise AuthorizationError(
                    f"Certificate {certificate_id} does not belong to org {org_id}"
                )
            raise NotFoundError(f"No extraction run for certificate {certificate_id}")
        return sorted(owned, key=lambda r: r.created_at)[-1]

    def transition_run(
        self,
        org_id: str,
        run_id: str,
        expected_status: RunStatus,
        **changes: Any,
    ) -> ExtractionRun:
        ref = self.db.collection(RUNS).document(run_id)

        @firestore.transactional
        def _transition(transaction) -> ExtractionRun:
            snapshot = ref.get(transaction=transaction)
            if not snapshot.exists:
                raise NotFoundError(f"Run {run_id} not found")
            current = from_doc(ExtractionRun, snapshot.to_dict())
            if current.org_id != org_id:
                raise AuthorizationError(f"Run {run_id} does not belong to org {org_id}")
            if current.status != expected_status:
                raise StaleRunError(run_id, expected_status.value, current.status.value)
            data = current.model_dump()
            data.update(changes)
            data["updated_at"] = utcnow()
            updated = ExtractionRun.model_validate(data)
            transaction.set(ref, to_doc(updated))
            return updated

        return _transition(self.db.transaction())

    # Tier attempts

    def append_tier_attempt(self, attempt: TierAttempt) -> TierAttempt:
        self.get_run(attempt.org_id, attempt.run_id)
        doc_id = f"{attempt.run_id}_{attempt.sequence:04d}"
        try:
            self.db.collection(ATTEMPTS).document(doc_id).create(to_doc(attempt))
        except AlreadyExists as e:
            raise ConflictError(
                f"Attempt {attempt.sequence} already recorded for run {attempt.run_id}",
                retryable=True,
            ) from e
        return attempt

    def list_tier_attempts(self, org_id: str, run_id: str) -> List[TierAttempt]:
        self.get_run(org_id, run_id)
        docs = self._query(ATTEMPTS, org_id, run_id=run_id).stream()
        attempts = [from_doc(TierAttempt, d.to_dict()) for d in docs]
        return sorted(attempts, key=lambda a: a.sequence)

    # Human reviews

    def create_review(self, review: HumanReview) -> HumanReview:
        self.db.collection(REVIEWS).document(review.review_id).create(to_doc(review))
        return review

    def get_review(self, org_id: str, review_id: str) -> HumanReview:
        return self._owned(REVIEWS, review_id, org_id, HumanReview, "Review")

    def update_review(self, review: HumanReview) -> HumanReview:
        self.get_review(review.org_id, review.review_id)
        self.db.collection(REVIEWS).document(review.review_id).set(to_doc(review))
        return review

    def list_reviews(
        self,
        org_id: str,
        status: Optional[ReviewStatus] = None,
        run_id: Optional[str] = None,
    ) -> List[HumanReview]:
        query = self._query(REVIEWS, org_id, status=status.value if status else None, run_id=run_id)
        return [from_doc(HumanReview, d.to_dict()) for d in query.stream()]

    # Corrections

    def add_correction(self, correction: Correction) -> Correction:
        self.get_run(correction.org_id, correction.run_id)
        self.db.collection(CORRECTIONS).document(correction.correction_id).create(to_doc(correction))
        return correction

    def list_corrections(
        self,
        org_id: str,
        certificate_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[Correction]:
        query = self._query(CORRECTIONS, org_id, certificate_id=certificate_id)
        corrections = [from_doc(Correction, d.to_dict()) for d in query.stream()]
        if since is not None:
            corrections = [c for c in corrections if c.created_at >= since]
        return sorted(corrections, key=lambda c: c.created_at)

    def mark_corrections_used(self, org_id: str, correction_ids: Sequence[str]) -> int:
        batch = self.db.batch()
        marked = 0
        for correction_id in correction_ids:
            correction = self._owned(CORRECTIONS, correction_id, org_id, Correction, "Correction")
            if correction.used_for_improvement:
                continue
            batch.update(
                self.db.collection(CORRECTIONS).document(correction_id),
                {"used_for_improvement": True},
            )
            marked += 1
        batch.commit()
        return marked

    # Suggestions

    def get_suggestion(self, org_id: str, suggestion_id: str) -> Suggestion:
        docs = list(
            self._query(SUGGESTIONS, org_id, suggestion_id=suggestion_id).limit(1).stream()
        )
        if not docs:
            other = list(
                self.db.collection(SUGGESTIONS)
                .where(filter=FieldFilter("suggestion_id", "==", suggestion_id))
                .limit(1)
                .stream()
            )
            if other:
                raise AuthorizationError(f"Suggestion {suggestion_id} does not belong to org {org_id}")
            raise NotFoundError(f"Suggestion {suggestion_id} not found")
        return from_doc(Suggestion, docs[0].to_dict())

    def find_suggestion_by_key(self, org_id: str, suggestion_key: str) -> Optional[Suggestion]:
        snapshot = self.db.collection(SUGGESTIONS).document(
            _suggestion_doc_id(org_id, suggestion_key)
        ).get()
        if not snapshot.exists:
            return None
        return from_doc(Suggestion, snapshot.to_dict())

    def upsert_suggestion(self, suggestion: Suggestion) -> Suggestion:
        # Keyed by (org, suggestion_key) so concurrent analyses converge on one document.
        ref = self.db.collection(SUGGESTIONS).document(
            _suggestion_doc_id(suggestion.org_id, suggestion.suggestion_key)
        )
        ref.set(to_doc(suggestion))
        return suggestion

    def list_suggestions(
        self, org_id: str, status: Optional[SuggestionStatus] = None
    ) -> List[Suggestion]:
        query = self._query(SUGGESTIONS, org_id, status=status.value if status else None)
        return [from_doc(Suggestion, d.to_dict()) for d in query.stream()]

    # Properties, predictions and feedback

    def save_property(self, profile: PropertyProfile) -> PropertyProfile:
        ref = self.db.collection(PROPERTIES).document(profile.property_id)
        snapshot = ref.get()
        if snapshot.exists and snapshot.to_dict().get("org_id") != profile.org_id:
            raise AuthorizationError(
                f"Property {profile.property_id} does not belong to org {profile.org_id}"
            )
        ref.set(to_doc(profile))
        return profile

    def get_property(self, org_id: str, property_id: str) -> PropertyProfile:
        return self._owned(PROPERTIES, property_id, org_id, PropertyProfile, "Property")

    def list_properties(self, org_id: str) -> List[PropertyProfile]:
        return [from_doc(PropertyProfile, d.to_dict()) for d in self._query(PROPERTIES, org_id).stream()]

    def save_prediction(self, prediction: RiskPrediction) -> RiskPrediction:
        batch = self.db.batch()
        previous = self._query(
            PREDICTIONS, org_id=prediction.org_id, property_id=prediction.property_id, is_latest=True
        ).stream()
        for doc in previous:
            batch.update(doc.reference, {"is_latest": False})
        stored = prediction.model_copy(update={"is_latest": True})
        batch.set(self.db.collection(PREDICTIONS).document(prediction.prediction_id), to_doc(stored))
        batch.commit()
        return stored

    def get_prediction(self, org_id: str, prediction_id: str) -> RiskPrediction:
        return self._owned(PREDICTIONS, prediction_id, org_id, RiskPrediction, "Prediction")

    def latest_prediction(self, org_id: str, property_id: str) -> Optional[RiskPrediction]:
        docs = list(
            self._query(PREDICTIONS, org_id, property_id=property_id, is_latest=True).limit(1).stream()
        )
        return from_doc(RiskPrediction, docs[0].to_dict()) if docs else None

    def add_feedback(self, feedback: PredictionFeedback) -> PredictionFeedback:
        self.get_prediction(feedback.org_id, feedback.prediction_id)
        self.db.collection(FEEDBACK).document(feedback.feedback_id).create(to_doc(feedback))
        return feedback

    def list_feedback(self, org_id: str) -> List[PredictionFeedback]:
        feedback = [from_doc(PredictionFeedback, d.to_dict()) for d in self._query(FEEDBACK, org_id).stream()]
        return sorted(feedback, key=lambda f: f.created_at)

    # Models and training runs

    def save_model(self, model: ModelVersion) -> ModelVersion:
        ref = self.db.collection(MODELS).document(model.model_id)
        snapshot = ref.get()
        is_active = False
        if snapshot.exists:
            data = snapshot.to_dict()
            if data.get("org_id") != model.org_id:
                raise AuthorizationError(f"Model {model.model_id} does not belong to org {model.org_id}")
            is_active = bool(data.get("is_active"))
        stored = model.model_copy(update={"is_active": is_active})
        ref.set(to_doc(stored))
        return stored

    def get_model(self, org_id: str, model_id: str) -> ModelVersion:
        return self._owned(MODELS, model_id, org_id, ModelVersion, "Model")

    def get_active_model(self, org_id: str) -> Optional[ModelVersion]:
        state = self.db.collection(ORG_STATE).document(org_id).get()
        if not state.exists or not state.to_dict().get("active_model_id"):
            return None
        return self.get_model(org_id, state.to_dict()["active_model_id"])

    def list_models(self, org_id: str) -> List[ModelVersion]:
        models = [from_doc(ModelVersion, d.to_dict()) for d in self._query(MODELS, org_id).stream()]
        return sorted(models, key=lambda m: m.created_at)

    def swap_active_model(
        self, org_id: str, expected_active_id: Optional[str], new_model_id: str
    ) -> ModelVersion:
        state_ref = self.db.collection(ORG_STATE).document(org_id)
        new_ref = self.db.collection(MODELS).document(new_model_id)

        @firestore.transactional
        def _swap(transaction) -> ModelVersion:
            state = state_ref.get(transaction=transaction)
            current_id = state.to_dict().get("active_model_id") if state.exists else None
            if current_id != expected_active_id:
                raise ConflictError(
                    f"Active model for org {org_id} is {current_id}, expected {expected_active_id}",
                    retryable=True,
                )
            snapshot = new_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise NotFoundError(f"Model {new_model_id} not found")
            new_model = from_doc(ModelVersion, snapshot.to_dict())
            if new_model.org_id != org_id:
                raise AuthorizationError(f"Model {new_model_id} does not belong to org {org_id}")

            activated_at = utcnow()
            if current_id is not None and current_id != new_model_id:
                transaction.update(self.db.collection(MODELS).document(current_id), {"is_active": False})
            transaction.update(new_ref, {"is_active": True, "activated_at": activated_at.isoformat()})
            transaction.set(state_ref, {"org_id": org_id, "active_model_id": new_model_id}, merge=True)
            return new_model.model_copy(update={"is_active": True, "activated_at": activated_at})

        activated = _swap(self.db.transaction())
        logger.info(f"Active model for org {org_id}: {expected_active_id} -> {new_model_id}")
        return activated

    def record_model_feedback(self, org_id: str, model_id: str, correct: bool) -> ModelVersion:
        self.get_model(org_id, model_id)
        updates = {"feedback_count": firestore.Increment(1)}
        if correct:
            updates["correct_feedback_count"] = firestore.Increment(1)
        self.db.collection(MODELS).document(model_id).update(updates)
        return self.get_model(org_id, model_id)

    def begin_training_run(self, run: TrainingRun) -> TrainingRun:
        state_ref = self.db.collection(ORG_STATE).document(run.org_id)
        run_ref = self.db.collection(TRAINING_RUNS).document(run.training_run_id)

        @firestore.transactional
        def _begin(transaction) -> TrainingRun:
            state = state_ref.get(transaction=transaction)
            active_id = state.to_dict().get("training_run_id") if state.exists else None
            if active_id:
                raise TrainingInProgressError(run.org_id, active_id)
            transaction.set(state_ref, {"org_id": run.org_id, "training_run_id": run.training_run_id}, merge=True)
            transaction.set(run_ref, to_doc(run))
            return run

        return _begin(self.db.transaction())

    def finish_training_run(self, org_id: str, training_run_id: str, **changes: Any) -> TrainingRun:
        state_ref = self.db.collection(ORG_STATE).document(org_id)
        run_ref = self.db.collection(TRAINING_RUNS).document(training_run_id)

        @firestore.transactional
        def _finish(transaction) -> TrainingRun:
            snapshot = run_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise NotFoundError(f"TrainingRun {training_run_id} not found")
            current = from_doc(TrainingRun, snapshot.to_dict())
            if current.org_id != org_id:
                raise AuthorizationError(f"TrainingRun {training_run_id} does not belong to org {org_id}")
            if current.status != TrainingStatus.RUNNING:
                raise ConflictError(f"Training run {training_run_id} already finished")
            data = current.model_dump()
            data.update(changes)
            if data.get("finished_at") is None:
                data["finished_at"] = utcnow()
            updated = TrainingRun.model_validate(data)
            transaction.set(run_ref, to_doc(updated))
            transaction.set(state_ref, {"training_run_id": None}, merge=True)
            return updated

        return _finish(self.db.transaction())

    def get_training_run(self, org_id: str, training_run_id: str) -> TrainingRun:
        return self._owned(TRAINING_RUNS, training_run_id, org_id, TrainingRun, "TrainingRun")

    def list_training_runs(self, org_id: str) -> List[TrainingRun]:
        runs = [from_doc(TrainingRun, d.to_dict()) for d in self._query(TRAINING_RUNS, org_id).stream()]
        return sorted(runs, key=lambda r: r.started_at)
