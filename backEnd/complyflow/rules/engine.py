"""
Validation and outcome rules engine.

Rules are data. They are loaded from a JSON file, validated with pydantic and
checked against the typed certificate schemas when loaded, so a rule that
names a field the certificate type does not have is rejected before any
document is evaluated.

Validation rules decide whether extracted fields are internally consistent.
Outcome rules classify the certificate (SATISFACTORY, UNSATISFACTORY, AT_RISK,
PASS, FAIL). The highest-priority matching outcome rule wins. When nothing
matches, the outcome is NEEDS_REVIEW, which is not a validation failure.
"""

import calendar
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..errors import ConfigurationError, DataError
from ..schemas.certificates import (
    CertificateRecordBase,
    RECORD_TYPES,
    field_paths,
    parse_certificate_fields,
    parse_date,
)
from ..utils.cache import TTLCache

logger = logging.getLogger(__name__)

WILDCARD = "*"
SCHEMA_RULE_ID = "schema.invalid_fields"


class Operator(str, Enum):
    CONTAINS = "CONTAINS"
    EQUALS = "EQUALS"
    STARTS_WITH = "STARTS_WITH"
    ENDS_WITH = "ENDS_WITH"
    IS_TRUE = "IS_TRUE"
    IS_FALSE = "IS_FALSE"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    ARRAY_ANY_MATCH = "ARRAY_ANY_MATCH"
    REGEX = "REGEX"
    IS_PRESENT = "IS_PRESENT"
    DATE_AFTER_FIELD = "DATE_AFTER_FIELD"
    MONTHS_AFTER_FIELD_LTE = "MONTHS_AFTER_FIELD_LTE"


class OutcomeClass(str, Enum):
    SATISFACTORY = "SATISFACTORY"
    UNSATISFACTORY = "UNSATISFACTORY"
    AT_RISK = "AT_RISK"
    PASS = "PASS"
    FAIL = "FAIL"
    NEEDS_REVIEW = "NEEDS_REVIEW"


CROSS_FIELD_OPERATORS = {Operator.DATE_AFTER_FIELD, Operator.MONTHS_AFTER_FIELD_LTE}


class Rule(BaseModel):
    id: str
    description: str = ""
    certificate_types: List[str] = Field(default_factory=lambda: [WILDCARD])
    field: str
    operator: Operator
    value: Any = None
    priority: int = Field(default=50, ge=0)
    enabled: bool = True

    @field_validator("certificate_types")
    @classmethod
    def _upper_types(cls, value: List[str]) -> List[str]:
        return [v.strip().upper() for v in value] or [WILDCARD]

    def applies_to(self, cert_type: str) -> bool:
        return self.enabled and (WILDCARD in self.certificate_types or cert_type in self.certificate_types)

    def referenced_field(self) -> Optional[str]:
        """Second field named by cross-field operators."""
        if self.operator == Operator.DATE_AFTER_FIELD:
            return str(self.value)
        if self.operator == Operator.MONTHS_AFTER_FIELD_LTE:
            return str(self.value["field"])
        return None


class ValidationRule(Rule):
    severity: Literal["error", "warning"] = "error"
    message: Optional[str] = None


class OutcomeRule(Rule):
    outcome: OutcomeClass

    @property
    def confidence(self) -> float:
        return min(1.0, self.priority / 100)


class RuleFile(BaseModel):
    version: int = 1
    validation_rules: List[ValidationRule] = Field(default_factory=list)
    outcome_rules: List[OutcomeRule] = Field(default_factory=list)


@dataclass
class RuleCheck:
    """Result of one validation rule."""

    rule_id: str
    passed: bool
    severity: str
    message: str
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "passed": self.passed,
            "severity": self.severity,
            "message": self.message,
            "skipped": self.skipped,
        }


@dataclass
class OutcomeDecision:
    outcome: OutcomeClass
    confidence: float
    rule_id: Optional[str] = None
    source: str = "rule"  # "rule" | "extracted_text" | "default"


@dataclass
class EvaluationResult:
    """Combined validation and outcome result for one certificate."""

    certificate_type: str
    checks: List[RuleCheck] = field(default_factory=list)
    outcome: Optional[OutcomeDecision] = None
    record: Optional[CertificateRecordBase] = None

    @property
    def failed_rules(self) -> List[str]:
        return [c.rule_id for c in self.checks if not c.passed and c.severity == "error"]

    @property
    def warnings(self) -> List[str]:
        return [c.rule_id for c in self.checks if not c.passed and c.severity == "warning"]

    @property
    def passed(self) -> bool:
        return not self.failed_rules

    def to_dict(self) -> Dict[str, Any]:
        return {
            "certificate_type": self.certificate_type,
            "passed": self.passed,
            "failed_rules": self.failed_rules,
            "warnings": self.warnings,
            "checks": [c.to_dict() for c in self.checks],
            "outcome": self.outcome.outcome.value if self.outcome else None,
            "outcome_confidence": self.outcome.confidence if self.outcome else None,
            "outcome_rule": self.outcome.rule_id if self.outcome else None,
        }


def resolve_field(record: Any, path: str) -> Any:
    """Resolve a dotted path. Lists fan out, so "appliances.safe" yields a list."""
    current: Any = record
    for part in path.split("."):
        if isinstance(current, list):
            current = [_get(item, part) for item in current]
        else:
            current = _get(current, part)
        if current is None:
            return None
    return current


def _get(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return len(value) > 0
    return True


def _text(value: Any) -> str:
    return str(value).strip().lower()


def _equal(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str) or isinstance(expected, str):
        return _text(actual) == _text(expected)
    return actual == expected


def _truthy(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    text = _text(value)
    if text in ("true", "yes", "y", "1", "pass"):
        return True
    if text in ("false", "no", "n", "0", "fail"):
        return False
    return None


def _compare(actual: Any, expected: Any) -> Optional[float]:
    """Return actual - expected as a number, or None if not comparable."""
    if isinstance(actual, date):
        other = parse_date(expected)
        if other is None:
            return None
        return float((actual - other).days)
    try:
        return float(actual) - float(expected)
    except (TypeError, ValueError):
        return None


def add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def matches(rule: Rule, record: Any) -> bool:
    """Evaluate a rule's condition against a record."""
    actual = resolve_field(record, rule.field)
    op = rule.operator
    expected = rule.value

    if op == Operator.IS_PRESENT:
        return _is_present(actual)
    if actual is None:
        return False

    if op == Operator.ARRAY_ANY_MATCH:
        items = actual if isinstance(actual, list) else [actual]
        options = expected if isinstance(expected, list) else [expected]
        return any(_equal(item, option) for item in items for option in options)

    if isinstance(actual, list):
        # Scalar operators over a fanned-out list match if any element does.
        return any(matches_value(op, item, expected) for item in actual if item is not None)

    if op in CROSS_FIELD_OPERATORS:
        other_path = rule.referenced_field()
        other = resolve_field(record, other_path) if other_path else None
        actual_date, other_date = parse_date(actual), parse_date(other)
        if actual_date is None or other_date is None:
            return False
        if op == Operator.DATE_AFTER_FIELD:
            return actual_date > other_date
        return actual_date <= add_months(other_date, int(expected["months"]))

    return matches_value(op, actual, expected)


def matches_value(op: Operator, actual: Any, expected: Any) -> bool:
    if op == Operator.CONTAINS:
        return _text(expected) in _text(actual)
    if op == Operator.EQUALS:
        return _equal(actual, expected)
    if op == Operator.STARTS_WITH:
        return _text(actual).startswith(_text(expected))
    if op == Operator.ENDS_WITH:
        return _text(actual).endswith(_text(expected))
    if op == Operator.IS_TRUE:
        return _truthy(actual) is True
    if op == Operator.IS_FALSE:
        return _truthy(actual) is False
    if op == Operator.GREATER_THAN:
        diff = _compare(actual, expected)
        return diff is not None and diff > 0
    if op == Operator.LESS_THAN:
        diff = _compare(actual, expected)
        return diff is not None and diff < 0
    if op == Operator.REGEX:
        return re.search(str(expected), str(actual), re.IGNORECASE) is not None
    if op == Operator.IS_PRESENT:
        return _is_present(actual)
    return False


class RuleSet:
    """Validated, priority-ordered rules loaded from a rule file."""

    def __init__(self, validation_rules: List[ValidationRule], outcome_rules: List[OutcomeRule], source: str = "<memory>"):
        self.validation_rules = sorted(validation_rules, key=lambda r: -r.priority)
        # Ties go to UNSATISFACTORY so a failing signal is never masked.
        self.outcome_rules = sorted(
            outcome_rules,
            key=lambda r: (-r.priority, r.outcome != OutcomeClass.UNSATISFACTORY),
        )
        self.source = source
        self._check_field_paths()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str = "<memory>") -> "RuleSet":
        try:
            parsed = RuleFile.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid rule file {source}: {e}") from e
        return cls(parsed.validation_rules, parsed.outcome_rules, source=source)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "RuleSet":
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigurationError(f"Rule file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Rule file {path} is not valid JSON: {e}") from e
        rule_set = cls.from_dict(data, source=str(path))
        logger.info(
            f"Loaded {len(rule_set.validation_rules)} validation and "
            f"{len(rule_set.outcome_rules)} outcome rules from {path}"
        )
        return rule_set

    def _check_field_paths(self) -> None:
        common = set(field_paths("OTHER")) - {"energy_rating"}
        for rule in [*self.validation_rules, *self.outcome_rules]:
            if WILDCARD in rule.certificate_types:
                allowed_sets = [common]
            else:
                unknown = [t for t in rule.certificate_types if t not in RECORD_TYPES]
                if unknown:
                    raise ConfigurationError(f"Rule {rule.id} names unknown certificate types {unknown}")
                allowed_sets = [set(field_paths(t)) for t in rule.certificate_types]

            for allowed in allowed_sets:
                for path in filter(None, [rule.field, rule.referenced_field()]):
                    if path not in allowed:
                        raise ConfigurationError(
                            f"Rule {rule.id} references unknown field {path!r}"
                        )
            if rule.operator == Operator.MONTHS_AFTER_FIELD_LTE and not (
                isinstance(rule.value, dict) and "months" in rule.value and "field" in rule.value
            ):
                raise ConfigurationError(f"Rule {rule.id} needs a {{field, months}} value")
            if rule.operator == Operator.REGEX:
                try:
                    re.compile(str(rule.value))
                except re.error as e:
                    raise ConfigurationError(f"Rule {rule.id} has an invalid pattern: {e}") from e

    def validation_rules_for(self, cert_type: str) -> List[ValidationRule]:
        return [r for r in self.validation_rules if r.applies_to(cert_type)]

    def outcome_rules_for(self, cert_type: str) -> List[OutcomeRule]:
        return [r for r in self.outcome_rules if r.applies_to(cert_type)]


def outcome_from_text(text: Optional[str]) -> Optional[OutcomeClass]:
    """Classify printed outcome text when no rule matched."""
    if not text:
        return None
    lowered = _text(text)
    if any(word in lowered for word in ("unsatisfactory", "fail", "unsafe")):
        return OutcomeClass.UNSATISFACTORY
    if any(word in lowered for word in ("satisfactory", "pass", "safe")):
        return OutcomeClass.SATISFACTORY
    return None


class RuleEngine:
    """Evaluates certificates against the current rule set.

    The loaded rule set is cached, so edits to the rule file are picked up
    after the cache TTL or an explicit reload().
    """

    FALLBACK_CONFIDENCE = 0.7

    def __init__(self, rules_path: Union[str, Path], cache: TTLCache, ttl_seconds: float = 60.0):
        self.rules_path = str(rules_path)
        self._cache = cache
        self._ttl = ttl_seconds

    @property
    def _cache_key(self) -> str:
        return f"rules:{self.rules_path}"

    def rule_set(self) -> RuleSet:
        return self._cache.get_or_set(self._cache_key, lambda: RuleSet.load(self.rules_path), self._ttl)

    def reload(self) -> RuleSet:
        self._cache.invalidate(self._cache_key)
        return self.rule_set()

    def evaluate(self, cert_type: str, fields: Union[Dict[str, Any], CertificateRecordBase]) -> EvaluationResult:
        """
        Validate fields and classify the certificate outcome.

        Args:
            cert_type: Certificate type code
            fields: Extracted field map or an already-typed record

        Returns:
            EvaluationResult with per-rule checks and the outcome decision
        """
        cert_type = cert_type.upper()
        result = EvaluationResult(certificate_type=cert_type)

        if isinstance(fields, CertificateRecordBase):
            record = fields
        else:
            try:
                record = parse_certificate_fields(cert_type, fields)
            except DataError as e:
                result.checks.append(RuleCheck(SCHEMA_RULE_ID, False, "error", str(e)))
                result.outcome = OutcomeDecision(OutcomeClass.NEEDS_REVIEW, 0.0, source="default")
                return result
        result.record = record

        rules = self.rule_set()
        for rule in rules.validation_rules_for(cert_type):
            result.checks.append(self._check(rule, record))

        result.outcome = self._classify(rules, cert_type, record)

        if result.failed_rules:
            logger.info(f"{cert_type} validation failed: {', '.join(result.failed_rules)}")
        return result

    def _check(self, rule: ValidationRule, record: CertificateRecordBase) -> RuleCheck:
        message = rule.message or rule.description or rule.id
        if rule.operator != Operator.IS_PRESENT:
            fields_needed = [rule.field, rule.referenced_field()]
            if any(path and not _is_present(resolve_field(record, path)) for path in fields_needed):
                return RuleCheck(rule.id, True, rule.severity, "not applicable: field missing", skipped=True)
        passed = matches(rule, record)
        return RuleCheck(rule.id, passed, rule.severity, message if not passed else "ok")

    def _classify(self, rules: RuleSet, cert_type: str, record: CertificateRecordBase) -> OutcomeDecision:
        for rule in rules.outcome_rules_for(cert_type):
            if matches(rule, record):
                return OutcomeDecision(rule.outcome, rule.confidence, rule.id)

        from_text = outcome_from_text(record.outcome)
        if from_text is not None:
            return OutcomeDecision(from_text, self.FALLBACK_CONFIDENCE, source="extracted_text")
        return OutcomeDecision(OutcomeClass.NEEDS_REVIEW, 0.0, source="default")
