"""Tests for the risk ensemble."""

from datetime import date

import pytest

from complyflow.errors import AuthorizationError, DataError, NotFoundError
from complyflow.risk import RiskEnsemble, RiskModel, TrainingService, ml_confidence
from complyflow.schemas import FeedbackType, ModelVersion

from .factories import ORG, OTHER_ORG, property_profile, seed_properties

TODAY = date(2025, 6, 1)


@pytest.fixture
def ensemble(store, settings):
    return RiskEnsemble(store, settings)


@pytest.fixture
def trained_model(store, settings, tracer):
    """Train and promote a model regardless of its benchmark."""
    seed_properties(store, 12)
    trainer = TrainingService(store, settings.model_copy(update={"min_benchmark_score": 0.0}), tracer=tracer)
    result = trainer.train(ORG, auto_promote=True)
    assert result.promoted
    return store.get_model(ORG, result.model_id)


class TestMlConfidence:
    """Tests for ml_confidence."""

    def test_grows_with_accuracy_and_feedback(self):
        """Accuracy and feedback volume both raise confidence."""
        model = ModelVersion(org_id=ORG, version="v1", accuracy=0.9, feedback_count=5)

        assert ml_confidence(model) == pytest.approx(0.86)

    def test_capped(self):
        """Confidence never exceeds 0.95."""
        model = ModelVersion(org_id=ORG, version="v1", accuracy=1.0, feedback_count=100)

        assert ml_confidence(model) == 0.95


class TestPredict:
    """Tests for RiskEnsemble.predict."""

    def test_statistical_only_without_model(self, store, ensemble):
        """Without an active model the statistical score passes through."""
        store.save_property(property_profile("prop_1"))

        prediction = ensemble.predict(ORG, "prop_1", today=TODAY)

        assert prediction.ml_score is None
        assert prediction.model_version is None
        assert prediction.blended_score == prediction.statistical_score
        assert prediction.blended_confidence == prediction.statistical_confidence
        assert prediction.is_latest

    def test_blends_with_active_model(self, store, ensemble, trained_model):
        """An active model contributes a confidence-weighted ML score."""
        prediction = ensemble.predict(ORG, "prop_3", today=TODAY)

        assert prediction.ml_score is not None
        assert 0.0 <= prediction.ml_score <= 100.0
        assert prediction.model_version == trained_model.version
        assert prediction.ml_confidence == pytest.approx(ml_confidence(trained_model))
        low, high = sorted([prediction.statistical_score, prediction.ml_score])
        assert low <= prediction.blended_score <= high

    def test_model_failure_falls_back(self, store, ensemble):
        """A model that cannot score the features degrades to statistical only."""
        store.save_property(property_profile("prop_1"))
        model = RiskModel().fit([[0.1] * 11, [0.5] * 11, [0.9] * 11], [10, 50, 90])
        model.feature_names = ["a", "b", "c"]
        version = store.save_model(ModelVersion(
            org_id=ORG, version="broken", benchmark_score=90.0, artifact=model.to_bytes(),
        ))
        store.swap_active_model(ORG, None, version.model_id)

        prediction = ensemble.predict(ORG, "prop_1", today=TODAY)

        assert prediction.ml_score is None
        assert prediction.model_version is None

    def test_latest_prediction_supersedes(self, store, ensemble):
        """Re-scoring a property replaces its latest prediction."""
        store.save_property(property_profile("prop_1"))
        first = ensemble.predict(ORG, "prop_1", today=TODAY)

        second = ensemble.predict(ORG, "prop_1", today=TODAY)

        assert store.latest_prediction(ORG, "prop_1").prediction_id == second.prediction_id
        assert store.get_prediction(ORG, first.prediction_id).is_latest is False

    def test_other_org_property(self, store, ensemble):
        """Scoring another organization's property is refused."""
        store.save_property(property_profile("prop_1", org_id=OTHER_ORG))

        with pytest.raises(AuthorizationError):
            ensemble.predict(ORG, "prop_1")
        with pytest.raises(NotFoundError):
            ensemble.predict(ORG, "prop_missing")


class TestPredictBulk:
    """Tests for RiskEnsemble.predict_bulk."""

    def test_dedupes_caps_and_collects_errors(self, store, ensemble):
        """Duplicates collapse, unknown ids are reported and the cap is honored."""
        seed_properties(store, 3)

        result = ensemble.predict_bulk(
            ORG, ["prop_0", "prop_1", "prop_0", "prop_missing", "prop_2"], cap=3, today=TODAY
        )

        assert [p.property_id for p in result.predictions] == ["prop_0", "prop_1"]
        assert list(result.errors) == ["prop_missing"]
        assert result.skipped == ["prop_2"]

    def test_cross_org_raises(self, store, ensemble):
        """A foreign property aborts the batch."""
        store.save_property(property_profile("prop_x", org_id=OTHER_ORG))

        with pytest.raises(AuthorizationError):
            ensemble.predict_bulk(ORG, ["prop_x"])

    def test_invalid_cap(self, ensemble):
        """The cap must be positive."""
        with pytest.raises(ValueError):
            ensemble.predict_bulk(ORG, ["prop_1"], cap=0)


class TestFeedback:
    """Tests for RiskEnsemble.submit_feedback."""

    def test_snapshots_prediction(self, store, ensemble):
        """Feedback keeps the prediction's statistical score and features."""
        store.save_property(property_profile("prop_1"))
        prediction = ensemble.predict(ORG, "prop_1", today=TODAY)

        feedback = ensemble.submit_feedback(
            ORG, prediction.prediction_id, FeedbackType.INCORRECT, "officer_1", corrected_score=70.0,
        )

        assert feedback.statistical_score == prediction.statistical_score
        assert feedback.features == prediction.features
        assert store.list_feedback(ORG)[0].corrected_score == 70.0

    def test_updates_active_model_counters(self, store, ensemble, trained_model):
        """Feedback is counted against the active model."""
        prediction = ensemble.predict(ORG, "prop_1", today=TODAY)

        ensemble.submit_feedback(ORG, prediction.prediction_id, FeedbackType.CORRECT, "officer_1")
        ensemble.submit_feedback(ORG, prediction.prediction_id, FeedbackType.INCORRECT, "officer_1", corrected_score=5)

        model = store.get_model(ORG, trained_model.model_id)
        assert model.feedback_count == 2
        assert model.correct_feedback_count == 1

    def test_out_of_range_score(self, store, ensemble):
        """A corrected score outside 0-100 is a data error."""
        store.save_property(property_profile("prop_1"))
        prediction = ensemble.predict(ORG, "prop_1", today=TODAY)

        with pytest.raises(DataError) as exc_info:
            ensemble.submit_feedback(
                ORG, prediction.prediction_id, FeedbackType.INCORRECT, "officer_1", corrected_score=150,
            )

        assert exc_info.value.field == "corrected_score"
        assert store.list_feedback(ORG) == []

    def test_other_org_prediction(self, store, ensemble):
        """Feedback on another organization's prediction is refused."""
        store.save_property(property_profile("prop_1"))
        prediction = ensemble.predict(ORG, "prop_1", today=TODAY)

        with pytest.raises(AuthorizationError):
            ensemble.submit_feedback(OTHER_ORG, prediction.prediction_id, FeedbackType.CORRECT, "officer_2")
