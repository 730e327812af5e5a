"""
Risk prediction ensemble.

Scores a property with the statistical scorer and, when the organization has
an active trained model, with the MLP as well. The two are blended by
confidence (see schemas.risk.blend_scores). Without a model the statistical
score passes through unchanged.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from ..config.settings import Settings
from ..errors import DataError, NotFoundError
from ..schemas import (
    FeedbackType,
    ModelVersion,
    PredictionFeedback,
    RiskPrediction,
    RiskTier,
    utcnow,
)
from ..storage.base import ComplianceStore
from ..utils.cache import TTL_LONG, TTLCache
from .model import RiskModel
from .scoring import StatisticalScorer, predicted_breach_date

logger = logging.getLogger(__name__)

DEFAULT_BULK_CAP = 100


def ml_confidence(model: ModelVersion) -> float:
    """Confidence in a model's predictions from its accuracy and feedback volume."""
    return min(
        0.40 + model.accuracy * 0.40 + min(model.feedback_count * 0.02, 0.20),
        0.95,
    )


@dataclass
class BulkPredictionResult:
    predictions: List[RiskPrediction] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


class RiskEnsemble:
    """Statistical + optional ML property risk scoring."""

    def __init__(
        self,
        store: ComplianceStore,
        settings: Settings,
        scorer: Optional[StatisticalScorer] = None,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.scorer = scorer or StatisticalScorer()
        self.cache = cache or TTLCache(default_ttl=TTL_LONG)
        self._clock = clock

    def _load_model(self, version: ModelVersion) -> RiskModel:
        return self.cache.get_or_set(
            f"model:{version.model_id}",
            lambda: RiskModel.from_bytes(version.artifact),
        )

    def predict(self, org_id: str, property_id: str, today: Optional[date] = None) -> RiskPrediction:
        """
        Score one property and store the prediction as its latest.

        Raises:
            AuthorizationError: Property belongs to another organization
            NotFoundError: Property does not exist
        """
        today = today or self._clock().date()
        profile = self.store.get_property(org_id, property_id)
        stat = self.scorer.score(profile, today)

        ml_score = None
        ml_conf = None
        model_version = None
        active = self.store.get_active_model(org_id)
        if active is not None and active.artifact:
            try:
                ml_score = round(self._load_model(active).predict_one(stat.features), 2)
                ml_conf = ml_confidence(active)
                model_version = active.version
            except (ValueError, RuntimeError) as e:
                logger.warning(f"Model {active.version} failed for {property_id}, using statistical score: {e}")
                ml_score = ml_conf = model_version = None

        prediction = RiskPrediction(
            org_id=org_id,
            property_id=property_id,
            statistical_score=stat.score,
            statistical_confidence=stat.confidence,
            ml_score=ml_score,
            ml_confidence=ml_conf,
            model_version=model_version,
            factors=stat.factors,
            features=stat.features,
            legislation_refs=stat.legislation_refs,
            recommended_actions=stat.recommended_actions,
            created_at=self._clock(),
        )
        prediction = prediction.model_copy(
            update={"predicted_breach_date": predicted_breach_date(prediction.blended_score, today)}
        )
        stored = self.store.save_prediction(prediction)
        logger.info(
            f"Property {property_id}: {stored.blended_score:.1f} ({stored.risk_tier.value})"
            + (f" with model {model_version}" if model_version else "")
        )
        return stored

    def predict_bulk(
        self,
        org_id: str,
        property_ids: Sequence[str],
        cap: int = DEFAULT_BULK_CAP,
        today: Optional[date] = None,
    ) -> BulkPredictionResult:
        """
        Score up to `cap` distinct properties in request order.

        Unknown properties are reported in `errors`; properties past the cap in
        `skipped`. Cross-organization requests still raise.
        """
        if cap < 1:
            raise ValueError("cap must be at least 1")

        unique = list(dict.fromkeys(property_ids))
        result = BulkPredictionResult(skipped=unique[cap:])
        for property_id in unique[:cap]:
            try:
                result.predictions.append(self.predict(org_id, property_id, today))
            except NotFoundError as e:
                result.errors[property_id] = str(e)

        logger.info(
            f"Bulk prediction for {org_id}: {len(result.predictions)} scored, "
            f"{len(result.skipped)} over cap, {len(result.errors)} not found"
        )
        return result

    def submit_feedback(
        self,
        org_id: str,
        prediction_id: str,
        feedback_type: FeedbackType,
        submitted_by: str,
        corrected_score: Optional[float] = None,
        corrected_tier: Optional[RiskTier] = None,
        notes: Optional[str] = None,
    ) -> PredictionFeedback:
        """
        Record a correctness signal against a prediction.

        Raises:
            DataError: Malformed feedback (e.g. score outside 0-100)
            AuthorizationError / NotFoundError: Prediction not visible to the caller
        """
        prediction = self.store.get_prediction(org_id, prediction_id)
        try:
            feedback = PredictionFeedback(
                org_id=org_id,
                prediction_id=prediction_id,
                property_id=prediction.property_id,
                feedback_type=feedback_type,
                corrected_score=corrected_score,
                corrected_tier=corrected_tier,
                notes=notes,
                submitted_by=submitted_by,
                statistical_score=prediction.statistical_score,
                features=prediction.features,
                created_at=self._clock(),
            )
        except ValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(part) for part in first.get("loc", ()))
            raise DataError(f"Invalid feedback: {loc}: {first.get('msg')}", field=loc) from e

        self.store.add_feedback(feedback)

        active = self.store.get_active_model(org_id)
        if active is not None:
            self.store.record_model_feedback(
                org_id, active.model_id, feedback.feedback_type == FeedbackType.CORRECT
            )
        return feedback
