"""Tests for correction capture."""

import pytest

from complyflow.errors import AuthorizationError, NotFoundError
from complyflow.learning import CorrectionCapture
from complyflow.schemas import CorrectionInput, CorrectionType

from .factories import ORG, OTHER_ORG, seed_run


@pytest.fixture
def capture(store):
    return CorrectionCapture(store)


class TestRecordCorrections:
    """Tests for CorrectionCapture.record_corrections."""

    def test_partial_success(self, store, capture):
        """Valid entries persist and invalid ones are reported by index."""
        run = seed_run(store)
        items = [
            {"field": "expiry_date", "corrected_value": "2024-12-31", "correction_type": "wrong_format"},
            {"field": "  ", "corrected_value": "x", "correction_type": "MISSING"},
            {"field": "outcome", "corrected_value": "PASS", "correction_type": "GUESSED"},
            {"field": "uprn", "corrected_value": "100023336956", "correction_type": "MISSING"},
        ]

        result = capture.record_corrections(ORG, run.run_id, items, corrected_by="reviewer_1")

        assert result.accepted_count == 2
        assert [r.index for r in result.rejected] == [1, 2]
        assert result.rejected[1].field == "outcome"
        assert "correction_type" in result.rejected[1].error
        assert len(store.list_corrections(ORG)) == 2

    def test_stamps_run_context(self, store, capture):
        """Corrections carry the run's certificate type, tier and original value."""
        run = seed_run(store, fields={"expiry_date": "31-12-2024"})

        result = capture.record_corrections(
            ORG, run.run_id,
            [CorrectionInput(field="expiry_date", corrected_value="2024-12-31", correction_type="WRONG_FORMAT")],
            corrected_by="reviewer_1",
        )

        correction = result.accepted[0]
        assert correction.certificate_type == "GAS_SAFETY"
        assert correction.tier == 2
        assert correction.original_value == "31-12-2024"
        assert correction.used_for_improvement is False

    def test_explicit_original_value_kept(self, store, capture):
        """A submitted original value, even None, overrides the run's value."""
        run = seed_run(store)

        result = capture.record_corrections(
            ORG, run.run_id,
            [{"field": "outcome", "original_value": None, "corrected_value": "FAIL", "correction_type": "HALLUCINATED"}],
            corrected_by="reviewer_1",
        )

        assert result.accepted[0].original_value is None

    def test_by_certificate_id(self, store, capture):
        """A certificate ID resolves to its latest run."""
        seed_run(store, certificate_id="cert_9")
        latest = seed_run(store, certificate_id="cert_9")

        result = capture.record_corrections(
            ORG, "cert_9",
            [{"field": "outcome", "corrected_value": "FAIL", "correction_type": "WRONG_VALUE"}],
            corrected_by="reviewer_1",
        )

        assert result.run_id == latest.run_id

    def test_other_org(self, store, capture):
        """Correcting another organization's run is an authorization failure."""
        run = seed_run(store, org_id=OTHER_ORG)

        with pytest.raises(AuthorizationError):
            capture.record_corrections(ORG, run.run_id, [], corrected_by="reviewer_1")
        with pytest.raises(AuthorizationError):
            capture.record_corrections(ORG, run.certificate_id, [], corrected_by="reviewer_1")
        assert store.list_corrections(OTHER_ORG) == []

    def test_unknown_parent(self, capture):
        """An unknown run or certificate is not found."""
        with pytest.raises(NotFoundError):
            capture.record_corrections(ORG, "cert_missing", [], corrected_by="reviewer_1")


class TestCorrectionQueries:
    """Tests for history, stats and export."""

    def test_history_round_trips_values(self, store, capture):
        """Structured corrected values come back exactly as submitted."""
        run = seed_run(store)
        appliances = [{"location": "Loft", "appliance_type": "Boiler", "safe": False}]
        capture.record_corrections(
            ORG, run.run_id,
            [
                {"field": "appliances", "corrected_value": appliances, "correction_type": "PARTIAL", "notes": "second boiler"},
                {"field": "outcome", "corrected_value": "FAIL", "correction_type": "WRONG_VALUE"},
            ],
            corrected_by="reviewer_1",
        )

        history = capture.get_correction_history(ORG, run.certificate_id)

        assert [c.field for c in history] == ["appliances", "outcome"]
        assert history[0].corrected_value == appliances
        assert history[0].notes == "second boiler"
        assert history[1].correction_type == CorrectionType.WRONG_VALUE
        assert capture.get_correction_history(OTHER_ORG, run.certificate_id) == []

    def test_stats_and_export(self, store, capture):
        """Stats count by field, type and tier and export skips used corrections."""
        run = seed_run(store)
        result = capture.record_corrections(
            ORG, run.run_id,
            [
                {"field": "outcome", "corrected_value": "FAIL", "correction_type": "WRONG_VALUE"},
                {"field": "uprn", "corrected_value": "1", "correction_type": "MISSING"},
            ],
            corrected_by="reviewer_1",
        )
        store.mark_corrections_used(ORG, [result.accepted[0].correction_id])

        stats = capture.correction_stats(ORG)
        exported = capture.export_for_training(ORG)

        assert stats["total_corrections"] == 2
        assert stats["unused_corrections"] == 1
        assert stats["by_type"] == {"WRONG_VALUE": 1, "MISSING": 1}
        assert stats["by_tier"] == {"2": 2}
        assert [e["field"] for e in exported] == ["uprn"]
        assert len(capture.export_for_training(ORG, unused_only=False)) == 2
