"""
Risk model training and promotion.

Training consumes PredictionFeedback as labelled examples:
- CORRECT feedback labels the prediction's statistical score as the target
- INCORRECT / PARTIALLY_CORRECT use the reviewer's corrected score
  (feedback without one is skipped)

When there are fewer labelled rows than `min_training_samples`, the set is
topped up with statistical scores of the organization's properties.

A trained model is benchmarked on a held-out 20% split. Only a model whose
benchmark reaches `min_benchmark_score` may be promoted, and promotion is an
atomic swap of the organization's active-model pointer.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from sklearn.model_selection import train_test_split
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from ..config.settings import Settings
from ..errors import ConflictError, ConfigurationError
from ..observability.tracing import ComplyTracer, get_tracer, traced
from ..schemas import (
    FeedbackType,
    Hyperparameters,
    ModelVersion,
    TrainingRun,
    TrainingStatus,
    utcnow,
)
from ..storage.base import ComplianceStore
from .model import RiskModel
from .scoring import FEATURE_NAMES, StatisticalScorer

logger = logging.getLogger(__name__)

MODEL_NAME = "risk-mlp"
# Below this a train/test split leaves nothing meaningful to benchmark on.
MIN_SPLIT_SAMPLES = 5


def _is_retryable_conflict(error: BaseException) -> bool:
    return isinstance(error, ConflictError) and error.retryable


@dataclass
class TrainingResult:
    training_run_id: str
    model_id: Optional[str]
    model_version: Optional[str]
    benchmark_score: float
    passed: bool
    sample_count: int
    promoted: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "training_run_id": self.training_run_id,
            "model_id": self.model_id,
            "model_version": self.model_version,
            "benchmark_score": self.benchmark_score,
            "passed": self.passed,
            "sample_count": self.sample_count,
            "promoted": self.promoted,
            "error": self.error,
        }


class TrainingService:
    """Trains, benchmarks and promotes per-organization risk models."""

    def __init__(
        self,
        store: ComplianceStore,
        settings: Settings,
        scorer: Optional[StatisticalScorer] = None,
        tracer: Optional[ComplyTracer] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.scorer = scorer or StatisticalScorer()
        self.tracer = tracer or get_tracer()
        self._clock = clock

    def build_dataset(self, org_id: str, today: Optional[date] = None) -> Tuple[List[List[float]], List[float]]:
        """Labelled rows from feedback, topped up from property scores when short."""
        X: List[List[float]] = []
        y: List[float] = []

        for feedback in self.store.list_feedback(org_id):
            if len(feedback.features) != len(FEATURE_NAMES):
                continue
            if feedback.feedback_type == FeedbackType.CORRECT:
                target = feedback.statistical_score
            elif feedback.corrected_score is not None:
                target = feedback.corrected_score
            else:
                continue
            X.append(list(feedback.features))
            y.append(float(target))

        labelled = len(X)
        if labelled < self.settings.min_training_samples:
            today = today or self._clock().date()
            for profile in self.store.list_properties(org_id):
                stat = self.scorer.score(profile, today)
                X.append(stat.features)
                y.append(float(stat.score))
            logger.info(
                f"Only {labelled} labelled feedback row(s) for {org_id}; "
                f"augmented to {len(X)} with statistical scores"
            )
        return X, y

    @traced("risk_model_training")
    def train(
        self,
        org_id: str,
        hyperparameters: Optional[Hyperparameters] = None,
        auto_promote: bool = False,
    ) -> TrainingResult:
        """
        Train a new model version for an organization.

        Args:
            org_id: Organization to train for
            hyperparameters: Training configuration, defaults if omitted
            auto_promote: Promote the new model when it passes the benchmark

        Returns:
            TrainingResult. Failures report passed=False instead of raising.

        Raises:
            TrainingInProgressError: Another training run is active for the org
        """
        hp = hyperparameters or Hyperparameters()
        run = self.store.begin_training_run(TrainingRun(org_id=org_id, hyperparameters=hp))
        logger.info(f"Training run {run.training_run_id} started for {org_id}")

        try:
            X, y = self.build_dataset(org_id)
            if len(X) < MIN_SPLIT_SAMPLES:
                raise ValueError(
                    f"Insufficient training data: {len(X)} sample(s), need {MIN_SPLIT_SAMPLES}"
                )

            X_train, X_test, y_train, y_test = train_test_split(
                X, y, test_size=hp.validation_split, random_state=42
            )
            model = RiskModel(hp).fit(X_train, y_train)
            benchmark = model.benchmark(X_test, y_test)

            passed = benchmark >= self.settings.min_benchmark_score
            now = self._clock()
            version = self.store.save_model(ModelVersion(
                org_id=org_id,
                name=MODEL_NAME,
                version=f"{MODEL_NAME}-{now:%Y%m%d%H%M%S}-{uuid4().hex[:8]}",
                hyperparameters=hp,
                accuracy=benchmark / 100.0,
                benchmark_score=benchmark,
                training_samples=len(X_train),
                artifact=model.to_bytes(),
                created_at=now,
            ))
            self.store.finish_training_run(
                org_id,
                run.training_run_id,
                status=TrainingStatus.COMPLETED,
                model_id=version.model_id,
                sample_count=len(X),
                benchmark_score=benchmark,
                passed=passed,
                finished_at=now,
            )
        except Exception as e:
            # Finishing the run releases the org's training lock.
            logger.error(f"Training run {run.training_run_id} failed: {e}")
            self.store.finish_training_run(
                org_id,
                run.training_run_id,
                status=TrainingStatus.FAILED,
                passed=False,
                benchmark_score=0.0,
                error=str(e),
                finished_at=self._clock(),
            )
            self.tracer.log_error(e, {"org_id": org_id, "training_run_id": run.training_run_id})
            return TrainingResult(
                training_run_id=run.training_run_id,
                model_id=None,
                model_version=None,
                benchmark_score=0.0,
                passed=False,
                sample_count=0,
                error=str(e),
            )

        self.tracer.log_training_run(org_id, version.version, benchmark, passed, len(X))
        logger.info(
            f"Training run {run.training_run_id}: {version.version} benchmark {benchmark:.1f} "
            f"({'passed' if passed else 'below ' + str(self.settings.min_benchmark_score)})"
        )

        promoted = False
        if auto_promote and passed:
            self.promote(org_id, version.model_id)
            promoted = True

        return TrainingResult(
            training_run_id=run.training_run_id,
            model_id=version.model_id,
            model_version=version.version,
            benchmark_score=benchmark,
            passed=passed,
            sample_count=len(X),
            promoted=promoted,
        )

    def promote(self, org_id: str, model_id: str) -> ModelVersion:
        """
        Make a model the organization's single active model.

        Raises:
            ConfigurationError: Model has no stored artifact
            ConflictError: Model did not pass the benchmark
        """
        model = self.store.get_model(org_id, model_id)
        if not model.artifact:
            raise ConfigurationError(f"Model {model.version} has no stored artifact")
        if model.benchmark_score < self.settings.min_benchmark_score:
            raise ConflictError(
                f"Model {model.version} benchmark {model.benchmark_score:.1f} is below "
                f"{self.settings.min_benchmark_score}; refusing to promote"
            )

        for attempt in Retrying(
            stop=stop_after_attempt(3),
            wait=wait_fixed(0),
            retry=retry_if_exception(_is_retryable_conflict),
            reraise=True,
        ):
            with attempt:
                current = self.store.get_active_model(org_id)
                activated = self.store.swap_active_model(
                    org_id, current.model_id if current else None, model_id
                )

        logger.info(f"Promoted {activated.version} to active for {org_id}")
        return activated

    def history(self, org_id: str) -> List[TrainingRun]:
        return self.store.list_training_runs(org_id)
