"""Tests for certificate, extraction and risk schemas."""

from datetime import date

import pytest
from pydantic import ValidationError

from complyflow.errors import DataError, ErrorCategory, TransientError
from complyflow.schemas import (
    CorrectionInput,
    ElectricalRecord,
    GasSafetyRecord,
    GenericCertificateRecord,
    RiskPrediction,
    RiskTier,
    RunStatus,
    TierAttempt,
    TierOutcome,
    blend_scores,
    classify_tier,
    field_paths,
    parse_certificate_fields,
    parse_date,
)

from .factories import ORG, gas_fields


class TestParseDate:
    """Tests for parse_date."""

    @pytest.mark.parametrize(
        "value",
        ["2024-03-15", "15/03/2024", "15-03-2024", "15.03.2024", "15 March 2024", "15 Mar 2024"],
    )
    def test_common_formats(self, value):
        """Each supported layout parses to the same date."""
        assert parse_date(value) == date(2024, 3, 15)

    @pytest.mark.parametrize("value", [None, "", "not a date", "31/02/2024"])
    def test_unparseable_returns_none(self, value):
        """Blanks and garbage parse to None."""
        assert parse_date(value) is None


class TestCertificateRecords:
    """Tests for parse_certificate_fields and field_paths."""

    def test_gas_record(self):
        """Gas fields build a GasSafetyRecord with typed dates."""
        record = parse_certificate_fields("gas_safety", gas_fields())

        assert isinstance(record, GasSafetyRecord)
        assert record.expiry_date == date(2024, 12, 31)
        assert record.appliances[0].safe is True

    def test_eicr_observation_codes_are_normalized(self):
        """Observation codes are upper-cased before validation."""
        record = parse_certificate_fields("EICR", {"observations": [{"code": " c2 "}]})

        assert isinstance(record, ElectricalRecord)
        assert record.observations[0].code == "C2"

    def test_unknown_type_is_generic(self):
        """Unrecognized types fall back to the generic record."""
        record = parse_certificate_fields("boiler-service", {"energy_rating": "C"})

        assert isinstance(record, GenericCertificateRecord)
        assert record.certificate_type == "OTHER"

    def test_invalid_fields_raise_data_error(self):
        """Fields that cannot form a record raise DataError naming the field."""
        with pytest.raises(DataError) as exc_info:
            parse_certificate_fields("EICR", {"observations": [{"code": "C9"}]})

        assert exc_info.value.category == ErrorCategory.DATA
        assert exc_info.value.field.startswith("EICR.observations")

    def test_field_paths_include_nested(self):
        """List-of-object fields contribute parent.child paths."""
        paths = field_paths("GAS_SAFETY")

        assert "expiry_date" in paths
        assert "appliances.safe" in paths


class TestExtractionSchemas:
    """Tests for run and attempt schemas."""

    def test_terminal_statuses(self):
        """Terminal and processing status sets do not overlap."""
        assert RunStatus.APPROVED.is_terminal
        assert RunStatus.SUPERSEDED.is_terminal
        assert not RunStatus.AWAITING_REVIEW.is_terminal
        assert RunStatus.TIER2_ATTEMPTED.is_processing
        assert not RunStatus.AWAITING_REVIEW.is_processing

    def test_tier_attempt_is_immutable(self):
        """Audit records cannot be edited after creation."""
        attempt = TierAttempt(
            run_id="run_1", org_id=ORG, sequence=1, tier=1,
            adapter="layout", succeeded=True, confidence=0.9,
        )

        with pytest.raises(ValidationError):
            attempt.confidence = 0.1

    def test_failure_outcome_keeps_error_category(self):
        """Failed outcomes carry the error's category, TRANSIENT for unknown errors."""
        typed = TierOutcome.failure(DataError("bad page"))
        untyped = TierOutcome.failure(KeyError("x"))

        assert typed.error_category == ErrorCategory.DATA
        assert typed.confidence == 0.0
        assert untyped.error_category == ErrorCategory.TRANSIENT
        assert TierOutcome.failure(TransientError("")).error == "TransientError"


class TestCorrectionInput:
    """Tests for CorrectionInput validation."""

    def test_type_is_case_insensitive(self):
        """Correction types are normalized to upper case."""
        item = CorrectionInput(field="expiry_date", corrected_value="2025-01-01", correction_type="wrong_value")

        assert item.correction_type.value == "WRONG_VALUE"

    def test_blank_corrected_value_rejected(self):
        """An empty corrected value is invalid."""
        with pytest.raises(ValidationError):
            CorrectionInput(field="outcome", corrected_value="  ", correction_type="MISSING")


class TestRiskScoring:
    """Tests for blend_scores, classify_tier and RiskPrediction."""

    @pytest.mark.parametrize(
        "score,tier",
        [(0, RiskTier.LOW), (34, RiskTier.LOW), (35, RiskTier.MEDIUM), (54.9, RiskTier.MEDIUM),
         (55, RiskTier.HIGH), (74, RiskTier.HIGH), (75, RiskTier.CRITICAL), (100, RiskTier.CRITICAL)],
    )
    def test_tier_boundaries(self, score, tier):
        """Tier boundaries are inclusive lower bounds."""
        assert classify_tier(score) == tier

    def test_blend_without_ml_passes_through(self):
        """No ML score means the statistical component is returned unchanged."""
        assert blend_scores(62, 0.9) == (62.0, 0.9)
        assert blend_scores(62, 0.9, 80.0, 0.0) == (62.0, 0.9)

    def test_blend_is_confidence_weighted(self):
        """Both components are weighted by their confidences."""
        score, confidence = blend_scores(60, 0.9, 80.0, 0.6)

        assert score == pytest.approx(68.0)
        assert confidence == pytest.approx(0.75)

    def test_prediction_computed_fields(self):
        """Blended score and tier are derived, not stored."""
        prediction = RiskPrediction(
            org_id=ORG, property_id="prop_1",
            statistical_score=60, statistical_confidence=0.9,
            ml_score=80.0, ml_confidence=0.6,
        )

        dumped = prediction.model_dump()
        assert dumped["blended_score"] == pytest.approx(68.0)
        assert dumped["risk_tier"] == RiskTier.HIGH

    def test_prediction_without_ml_uses_statistical_tier(self):
        """A statistical-only prediction is tiered on the statistical score."""
        prediction = RiskPrediction(
            org_id=ORG, property_id="prop_1", statistical_score=30, statistical_confidence=0.85,
        )

        assert prediction.blended_score == 30.0
        assert prediction.risk_tier == RiskTier.LOW
