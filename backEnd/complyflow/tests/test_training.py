"""Tests for risk model training and promotion."""

import pytest

from complyflow.errors import ConfigurationError, ConflictError, TrainingInProgressError
from complyflow.risk import RiskEnsemble, TrainingService
from complyflow.schemas import (
    FeedbackType,
    Hyperparameters,
    ModelVersion,
    TrainingRun,
    TrainingStatus,
)
from complyflow.storage import InMemoryStore

from .factories import ORG, OTHER_ORG, property_profile, seed_properties


@pytest.fixture
def make_trainer(store, settings, tracer):
    def _make(target_store=None, **overrides):
        return TrainingService(
            target_store or store,
            settings.model_copy(update=overrides) if overrides else settings,
            tracer=tracer,
        )
    return _make


class FlakySwapStore(InMemoryStore):
    """Loses the first `failures` promotion races to a concurrent writer."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.swap_calls = 0

    def swap_active_model(self, org_id, expected_active_id, new_model_id):
        self.swap_calls += 1
        if self.swap_calls <= self.failures:
            raise ConflictError("Active model changed", retryable=True)
        return super().swap_active_model(org_id, expected_active_id, new_model_id)


class FailingModelWriteStore(InMemoryStore):
    """Fails the first `failures` model writes."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    def save_model(self, model):
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("write failed")
        return super().save_model(model)


class TestBuildDataset:
    """Tests for TrainingService.build_dataset."""

    def test_feedback_rows(self, store, settings, make_trainer):
        """CORRECT feedback labels the statistical score; others need a corrected score."""
        for i in range(3):
            store.save_property(property_profile(f"prop_{i}"))
        ensemble = RiskEnsemble(store, settings)
        predictions = [ensemble.predict(ORG, f"prop_{i}") for i in range(3)]
        ensemble.submit_feedback(ORG, predictions[0].prediction_id, FeedbackType.CORRECT, "officer_1")
        ensemble.submit_feedback(ORG, predictions[1].prediction_id, FeedbackType.INCORRECT, "officer_1", corrected_score=80)
        ensemble.submit_feedback(ORG, predictions[2].prediction_id, FeedbackType.PARTIALLY_CORRECT, "officer_1")

        X, y = make_trainer(min_training_samples=1).build_dataset(ORG)

        assert y == [predictions[0].statistical_score, 80.0]
        assert all(len(row) == 11 for row in X)

    def test_augments_from_properties(self, store, make_trainer):
        """Too little feedback is topped up with statistical scores."""
        seed_properties(store, 7)
        seed_properties(store, 4, org_id=OTHER_ORG)

        X, y = make_trainer().build_dataset(ORG)

        assert len(X) == len(y) == 7


class TestTrain:
    """Tests for TrainingService.train."""

    def test_passing_model_is_promoted(self, store, make_trainer):
        """A model at or above the gate is saved, completed and promoted."""
        seed_properties(store, 12)

        result = make_trainer(min_benchmark_score=0.0).train(ORG, auto_promote=True)

        assert result.passed and result.promoted
        assert result.sample_count == 12
        assert store.get_active_model(ORG).model_id == result.model_id
        run = store.get_training_run(ORG, result.training_run_id)
        assert run.status == TrainingStatus.COMPLETED
        assert run.model_id == result.model_id
        assert run.passed is True

    def test_failing_model_is_not_promoted(self, store, make_trainer, monkeypatch):
        """A model below the gate is recorded but stays inactive."""
        seed_properties(store, 12)
        monkeypatch.setattr("complyflow.risk.training.RiskModel.benchmark", lambda self, X, y: 42.0)
        trainer = make_trainer(min_benchmark_score=80.0)

        result = trainer.train(ORG, auto_promote=True)

        assert result.passed is False
        assert result.promoted is False
        assert result.benchmark_score == 42.0
        assert store.get_active_model(ORG) is None
        assert store.get_model(ORG, result.model_id).accuracy == 0.42
        with pytest.raises(ConflictError):
            trainer.promote(ORG, result.model_id)

    def test_insufficient_data(self, store, make_trainer):
        """Too few samples fails the run without raising."""
        seed_properties(store, 2)

        result = make_trainer().train(ORG)

        assert result.passed is False
        assert result.model_id is None
        assert "Insufficient" in result.error
        run = store.get_training_run(ORG, result.training_run_id)
        assert run.status == TrainingStatus.FAILED
        assert run.benchmark_score == 0.0
        assert store.list_models(ORG) == []

    def test_failed_model_write_releases_org(self, make_trainer):
        """A failed model write finishes the run as FAILED and the next run can start."""
        failing = FailingModelWriteStore()
        seed_properties(failing, 12)
        trainer = make_trainer(target_store=failing, min_benchmark_score=0.0)

        first = trainer.train(ORG)
        second = trainer.train(ORG)

        assert first.passed is False
        assert first.error == "write failed"
        assert failing.get_training_run(ORG, first.training_run_id).status == TrainingStatus.FAILED
        assert second.model_id is not None
        assert failing.get_training_run(ORG, second.training_run_id).status == TrainingStatus.COMPLETED

    def test_concurrent_training_refused(self, store, make_trainer):
        """A second run for the same organization is refused and the first is untouched."""
        seed_properties(store, 12)
        first = store.begin_training_run(TrainingRun(org_id=ORG))

        with pytest.raises(TrainingInProgressError):
            make_trainer().train(ORG)

        assert [r.training_run_id for r in make_trainer().history(ORG)] == [first.training_run_id]
        assert store.get_training_run(ORG, first.training_run_id).status == TrainingStatus.RUNNING

    def test_custom_hyperparameters_recorded(self, store, make_trainer):
        """The run and the model keep the hyperparameters they were trained with."""
        seed_properties(store, 12)
        hp = Hyperparameters(epochs=20, learning_rate=0.05, hidden_layers=(8,))

        result = make_trainer(min_benchmark_score=0.0).train(ORG, hyperparameters=hp)

        assert store.get_model(ORG, result.model_id).hyperparameters.epochs == 20
        assert store.get_training_run(ORG, result.training_run_id).hyperparameters.hidden_layers == (8,)
        assert result.promoted is False


class TestPromote:
    """Tests for TrainingService.promote."""

    def test_single_active_model(self, store, make_trainer):
        """Promoting a second model deactivates the first."""
        seed_properties(store, 12)
        trainer = make_trainer(min_benchmark_score=0.0)
        first = trainer.train(ORG, auto_promote=True)
        second = trainer.train(ORG, auto_promote=True)

        active = [m.model_id for m in store.list_models(ORG) if m.is_active]

        assert active == [second.model_id]
        assert first.model_id != second.model_id

    def test_model_without_artifact(self, store, make_trainer):
        """A model with no stored estimator cannot be promoted."""
        model = store.save_model(ModelVersion(org_id=ORG, version="v0", benchmark_score=95.0))

        with pytest.raises(ConfigurationError):
            make_trainer().promote(ORG, model.model_id)

    def test_retries_lost_race(self, make_trainer):
        """A retryable swap conflict is retried until it succeeds."""
        flaky = FlakySwapStore(failures=2)
        model = flaky.save_model(ModelVersion(org_id=ORG, version="v1", benchmark_score=90.0, artifact=b"model"))

        promoted = make_trainer(target_store=flaky).promote(ORG, model.model_id)

        assert promoted.is_active
        assert flaky.swap_calls == 3

    def test_gives_up_after_repeated_conflicts(self, make_trainer):
        """Conflicts beyond the retry budget reach the caller."""
        flaky = FlakySwapStore(failures=5)
        model = flaky.save_model(ModelVersion(org_id=ORG, version="v1", benchmark_score=90.0, artifact=b"model"))

        with pytest.raises(ConflictError):
            make_trainer(target_store=flaky).promote(ORG, model.model_id)

        assert flaky.swap_calls == 3
        assert flaky.get_active_model(ORG) is None
