"""Tests for the validation and outcome rules engine."""

import json
from datetime import date

import pytest

from complyflow.errors import ConfigurationError
from complyflow.rules import OutcomeClass, RuleEngine, RuleSet
from complyflow.rules.engine import SCHEMA_RULE_ID, add_months
from complyflow.utils import TTLCache

from .factories import gas_fields


def _rule_file(tmp_path, outcome_rules, validation_rules=()):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({
        "version": 1,
        "validation_rules": list(validation_rules),
        "outcome_rules": list(outcome_rules),
    }))
    return path


class TestDefaultRules:
    """Tests against the shipped rule file."""

    def test_valid_gas_record(self, rule_engine):
        """A consistent gas record passes and is classified from its outcome text rule."""
        result = rule_engine.evaluate("GAS_SAFETY", gas_fields())

        assert result.passed
        assert result.outcome.outcome == OutcomeClass.SATISFACTORY
        assert result.outcome.rule_id == "gas.outcome_pass"

    def test_expiry_before_issue(self, rule_engine):
        """An expiry date before the issue date fails validation."""
        result = rule_engine.evaluate("GAS_SAFETY", gas_fields(expiry_date="2023-06-01"))

        assert not result.passed
        assert "all.expiry_after_issue" in result.failed_rules

    def test_gas_validity_window(self, rule_engine):
        """Gas records longer than twelve months fail."""
        result = rule_engine.evaluate("GAS_SAFETY", gas_fields(expiry_date="2025-06-30"))

        assert result.failed_rules == ["gas.expiry_within_12_months"]

    def test_missing_field_skips_dependent_rules(self, rule_engine):
        """Rules on an absent field are skipped, while presence rules still fail."""
        result = rule_engine.evaluate("GAS_SAFETY", gas_fields(issue_date=None))

        skipped = {c.rule_id for c in result.checks if c.skipped}
        assert "all.expiry_after_issue" in skipped
        assert result.failed_rules == ["all.issue_date_present"]

    def test_missing_registration_is_a_warning(self, rule_engine):
        """Warning-severity failures do not fail validation."""
        result = rule_engine.evaluate("GAS_SAFETY", gas_fields(engineer_registration=None))

        assert result.passed
        assert result.warnings == ["gas.engineer_registration_present"]

    def test_unsafe_appliance_beats_pass_text(self, rule_engine):
        """The highest-priority matching outcome rule wins."""
        fields = gas_fields(appliances=[{"location": "Hall", "safe": True}, {"location": "Loft", "safe": False}])

        result = rule_engine.evaluate("GAS_SAFETY", fields)

        assert result.outcome.outcome == OutcomeClass.UNSATISFACTORY
        assert result.outcome.rule_id == "gas.unsafe_appliance"
        assert result.outcome.confidence == 1.0

    def test_eicr_c2_observation(self, rule_engine):
        """Any C1 or C2 observation makes an EICR unsatisfactory."""
        fields = {"issue_date": "2024-01-10", "outcome": "Satisfactory", "observations": [{"code": "C3"}, {"code": "C2"}]}

        assert rule_engine.evaluate("EICR", fields).outcome.outcome == OutcomeClass.UNSATISFACTORY

    def test_fallback_to_extracted_text(self, rule_engine):
        """With no matching rule the printed outcome decides at reduced confidence."""
        result = rule_engine.evaluate("EICR", {"issue_date": "2024-01-10", "outcome": "Satisfactory overall"})

        assert result.outcome.outcome == OutcomeClass.SATISFACTORY
        assert result.outcome.confidence == RuleEngine.FALLBACK_CONFIDENCE
        assert result.outcome.source == "extracted_text"

    def test_no_signal_needs_review(self, rule_engine):
        """No matching rule and no outcome text gives NEEDS_REVIEW without failing validation."""
        result = rule_engine.evaluate("ASBESTOS", {"issue_date": "2024-01-10"})

        assert result.passed
        assert result.outcome.outcome == OutcomeClass.NEEDS_REVIEW

    def test_unparseable_fields(self, rule_engine):
        """Fields that do not fit the record shape fail the schema check."""
        result = rule_engine.evaluate("EICR", {"observations": [{"code": "C9"}]})

        assert result.failed_rules == [SCHEMA_RULE_ID]
        assert result.outcome.outcome == OutcomeClass.NEEDS_REVIEW


class TestRuleLoading:
    """Tests for rule-file validation and caching."""

    def test_unknown_field_rejected_at_load(self):
        """A rule naming a field the certificate type lacks is a configuration error."""
        data = {"validation_rules": [{
            "id": "gas.bad", "certificate_types": ["GAS_SAFETY"], "field": "boiler_colour",
            "operator": "IS_PRESENT",
        }]}

        with pytest.raises(ConfigurationError, match="boiler_colour"):
            RuleSet.from_dict(data)

    def test_wildcard_rule_limited_to_common_fields(self):
        """Wildcard rules may only use fields every certificate type has."""
        data = {"outcome_rules": [{
            "id": "all.rating", "field": "energy_rating", "operator": "EQUALS", "value": "G",
            "outcome": "UNSATISFACTORY",
        }]}

        with pytest.raises(ConfigurationError):
            RuleSet.from_dict(data)

    def test_unknown_certificate_type(self):
        """Rules must target known certificate types."""
        data = {"outcome_rules": [{
            "id": "x", "certificate_types": ["BOILER"], "field": "outcome", "operator": "IS_PRESENT",
            "outcome": "PASS",
        }]}

        with pytest.raises(ConfigurationError):
            RuleSet.from_dict(data)

    def test_missing_file(self, tmp_path):
        """A missing rule file is a configuration error."""
        with pytest.raises(ConfigurationError):
            RuleSet.load(tmp_path / "absent.json")

    def test_tie_goes_to_unsatisfactory(self, tmp_path):
        """Equal-priority matches resolve to UNSATISFACTORY."""
        path = _rule_file(tmp_path, [
            {"id": "pass", "field": "outcome", "operator": "IS_PRESENT", "outcome": "SATISFACTORY", "priority": 70},
            {"id": "fail", "field": "outcome", "operator": "IS_PRESENT", "outcome": "UNSATISFACTORY", "priority": 70},
        ])
        engine = RuleEngine(path, TTLCache())

        assert engine.evaluate("FRA", {"outcome": "anything"}).outcome.rule_id == "fail"

    def test_reload_picks_up_edits(self, tmp_path):
        """Cached rules are replaced on reload."""
        path = _rule_file(tmp_path, [
            {"id": "first", "field": "outcome", "operator": "IS_PRESENT", "outcome": "PASS"},
        ])
        engine = RuleEngine(path, TTLCache(), ttl_seconds=3600)
        assert engine.evaluate("LIFT", {"outcome": "ok"}).outcome.rule_id == "first"

        _rule_file(tmp_path, [
            {"id": "second", "field": "outcome", "operator": "IS_PRESENT", "outcome": "FAIL"},
        ])
        assert engine.evaluate("LIFT", {"outcome": "ok"}).outcome.rule_id == "first"
        engine.reload()
        assert engine.evaluate("LIFT", {"outcome": "ok"}).outcome.rule_id == "second"


class TestAddMonths:
    """Tests for calendar month arithmetic."""

    def test_clamps_to_month_end(self):
        """Adding a month to 31 January lands on the last day of February."""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 11, 15), 14) == date(2025, 1, 15)
