"""
Statistical risk scoring.

Five factors, each scored 0-100 from explicit rules:
- expiry: overdue and soon-to-expire certificates
- defect: open remedial actions by priority
- asset_profile: age, height, occupants, asbestos, sprinklers
- coverage_gap: compliance streams with no certificate on file
- external: EPC rating against minimum energy standards

The overall score is the weighted mean of the factors, rounded to an int,
so the same property on the same day always lands in the same tier.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Optional

from ..schemas import FactorBreakdown, PropertyProfile, RiskTier, classify_tier
from ..schemas.risk import DEFAULT_FACTOR_WEIGHTS

logger = logging.getLogger(__name__)

GAS_REGS = "Gas Safety (Installation and Use) Regulations 1998"
ELECTRICAL_REGS = "Electrical Safety Standards in the Private Rented Sector (England) Regulations 2020"
FIRE_ORDER = "Regulatory Reform (Fire Safety) Order 2005"
BUILDING_SAFETY_ACT = "Building Safety Act 2022"
ASBESTOS_REGS = "Control of Asbestos Regulations 2012"
HOUSING_ACT = "Housing Act 2004 - Category 1 Hazard"
EPC_REGS = "Energy Performance of Buildings Regulations 2012"
MEES_REGS = "Minimum Energy Efficiency Standards Regulations 2015"

EXPIRY_LEGISLATION = {
    "GAS_SAFETY": GAS_REGS,
    "EICR": ELECTRICAL_REGS,
    "FRA": FIRE_ORDER,
    "ASBESTOS": ASBESTOS_REGS,
}

DEFECT_POINTS = {
    "IMMEDIATE": 35,
    "URGENT": 15,
    "PRIORITY": 15,
    "ROUTINE": 5,
    "ADVISORY": 5,
}

EPC_POINTS = {"G": 40, "F": 35, "E": 10, "D": 5}

FEATURE_NAMES = [
    "expiry_score",
    "defect_score",
    "asset_profile_score",
    "coverage_gap_score",
    "external_score",
    "days_since_last_certificate",
    "open_actions",
    "historical_breaches",
    "asset_age",
    "is_hrb",
    "has_vulnerable_occupants",
]


@dataclass
class FactorScore:
    """One factor's score with the reasons behind it."""

    score: int = 0
    reasons: List[str] = field(default_factory=list)
    legislation: List[str] = field(default_factory=list)

    def add(self, points: int, reason: str, legislation: Optional[str] = None):
        self.score += points
        self.reasons.append(reason)
        if legislation and legislation not in self.legislation:
            self.legislation.append(legislation)

    def capped(self) -> int:
        return min(100, self.score)


@dataclass
class StatisticalResult:
    """Deterministic score for one property."""

    score: int
    confidence: float
    factors: FactorBreakdown
    reasons: List[str]
    legislation_refs: List[str]
    recommended_actions: List[str]
    features: List[float]

    @property
    def tier(self) -> RiskTier:
        return classify_tier(self.score)


def predicted_breach_date(score: float, today: date) -> Optional[date]:
    """Estimated breach date. Scores below 40 have none."""
    if score >= 70:
        return today + timedelta(days=max(1, round((100 - score) * 3)))
    if score >= 40:
        return today + timedelta(days=round(30 + (100 - score) * 2))
    return None


class StatisticalScorer:
    """Rule-based property risk scorer."""

    def __init__(self, weights: Optional[Dict[str, float]] = None):
        self.weights = dict(weights or DEFAULT_FACTOR_WEIGHTS)
        missing = set(DEFAULT_FACTOR_WEIGHTS) - set(self.weights)
        if missing:
            raise ValueError(f"Missing factor weights: {sorted(missing)}")
        if sum(self.weights.values()) <= 0:
            raise ValueError("Factor weights must sum to a positive value")

    def expiry_risk(self, profile: PropertyProfile, today: date) -> FactorScore:
        factor = FactorScore()
        for cert in profile.certificates:
            if cert.expiry_date is None:
                continue
            days_left = (cert.expiry_date - today).days
            if days_left < 0:
                factor.add(
                    30,
                    f"{cert.certificate_type} certificate overdue",
                    EXPIRY_LEGISLATION.get(cert.certificate_type.upper()),
                )
            elif days_left <= 7:
                factor.add(20, f"{cert.certificate_type} expires within 7 days")
            elif days_left <= 30:
                factor.add(10, f"{cert.certificate_type} expires within 30 days")
        return factor

    def defect_risk(self, profile: PropertyProfile) -> FactorScore:
        factor = FactorScore()
        for action in profile.actions:
            if not action.is_open:
                continue
            points = DEFECT_POINTS.get(action.priority, 0)
            if not points:
                continue
            if action.priority == "IMMEDIATE":
                description = (action.description or "Unspecified")[:50]
                factor.add(points, f"Immediate defect: {description}", HOUSING_ACT)
            else:
                factor.add(points, f"{action.priority.title()} defect open")
        return factor

    def asset_profile_risk(self, profile: PropertyProfile, today: date) -> FactorScore:
        factor = FactorScore()
        age = self._asset_age(profile, today)
        if age is not None and age > 50:
            factor.add(20, f"Building age: {age} years")
        elif age is not None and age > 30:
            factor.add(10, f"Building age: {age} years")

        if profile.is_hrb:
            factor.add(25, "Higher-risk building", BUILDING_SAFETY_ACT)
        if profile.has_vulnerable_occupants:
            factor.add(20, "Vulnerable occupants present")
        if profile.has_asbestos:
            factor.add(15, "Asbestos containing materials present", ASBESTOS_REGS)
        if profile.is_hrb and not profile.has_sprinklers:
            factor.add(10, "No sprinkler system in higher-risk building")
        return factor

    def coverage_gap_risk(self, profile: PropertyProfile) -> FactorScore:
        factor = FactorScore()
        held = profile.certificate_types()

        if profile.has_gas and "GAS_SAFETY" not in held:
            factor.add(30, "Missing gas safety record", GAS_REGS)
        if profile.has_electricity and "EICR" not in held:
            factor.add(25, "Missing EICR", ELECTRICAL_REGS)
        if "EPC" not in held:
            factor.add(15, "Missing energy performance certificate", EPC_REGS)
        if "FRA" not in held:
            if profile.is_hrb:
                factor.add(30, "Missing fire risk assessment for higher-risk building", FIRE_ORDER)
                factor.legislation.append(BUILDING_SAFETY_ACT)
            else:
                factor.add(10, "Missing fire risk assessment")
        return factor

    def external_risk(self, profile: PropertyProfile) -> FactorScore:
        factor = FactorScore()
        rating = (profile.epc_rating or "").strip().upper()
        points = EPC_POINTS.get(rating, 0)
        if rating in ("F", "G"):
            factor.add(points, f"EPC rating {rating} below minimum standard", MEES_REGS)
        elif points:
            factor.add(points, f"EPC rating {rating}")
        return factor

    def score(self, profile: PropertyProfile, today: Optional[date] = None) -> StatisticalResult:
        """
        Score a property.

        Args:
            profile: Property facts, certificates and open actions
            today: Scoring date, defaults to the current date

        Returns:
            StatisticalResult with factor breakdown, confidence and features
        """
        today = today or date.today()
        scores = {
            "expiry": self.expiry_risk(profile, today),
            "defect": self.defect_risk(profile),
            "asset_profile": self.asset_profile_risk(profile, today),
            "coverage_gap": self.coverage_gap_risk(profile),
            "external": self.external_risk(profile),
        }
        breakdown = FactorBreakdown(**{name: f.capped() for name, f in scores.items()})

        total_weight = sum(self.weights[name] for name in scores)
        overall = round(
            sum(breakdown.as_dict()[name] * self.weights[name] for name in scores) / total_weight
        )

        legislation: List[str] = []
        reasons: List[str] = []
        for f in scores.values():
            reasons.extend(f.reasons)
            legislation.extend(ref for ref in f.legislation if ref not in legislation)

        result = StatisticalResult(
            score=overall,
            confidence=self._confidence(scores),
            factors=breakdown,
            reasons=reasons,
            legislation_refs=legislation,
            recommended_actions=self._actions(scores, profile),
            features=self.features(profile, breakdown, today),
        )
        logger.debug(f"Property {profile.property_id} statistical score {overall} ({result.tier.value})")
        return result

    @staticmethod
    def _confidence(scores: Dict[str, FactorScore]) -> float:
        if scores["expiry"].reasons:
            return 0.95
        if scores["defect"].reasons:
            return 0.90
        if scores["coverage_gap"].reasons:
            return 0.80
        return 0.85

    @staticmethod
    def _actions(scores: Dict[str, FactorScore], profile: PropertyProfile) -> List[str]:
        actions = []
        expiry = scores["expiry"].reasons
        if any("overdue" in r for r in expiry):
            actions.append("URGENT: Schedule immediate inspection for overdue certificates")
        if any("7 days" in r for r in expiry):
            actions.append("Schedule renewal for certificates expiring within 7 days")
        if any(r.startswith("Immediate defect") for r in scores["defect"].reasons):
            actions.append("URGENT: Address immediate defects")
        if scores["coverage_gap"].reasons:
            actions.append("Arrange missing compliance certificates")
        if profile.is_hrb:
            actions.append("Review the building safety case for the higher-risk building")
        if profile.has_vulnerable_occupants:
            actions.append("Review personal emergency evacuation plans")
        return actions

    @staticmethod
    def _asset_age(profile: PropertyProfile, today: date) -> Optional[int]:
        if not profile.year_built:
            return None
        return today.year - profile.year_built

    def features(self, profile: PropertyProfile, factors: FactorBreakdown, today: date) -> List[float]:
        """Model input vector, ordered as FEATURE_NAMES."""
        issued = [c.issue_date for c in profile.certificates if c.issue_date is not None]
        if issued:
            days_since = (today - max(issued)).days
            since_last = min(max(days_since, 0) / 365, 1.0)
        else:
            since_last = 1.0
        open_actions = sum(1 for a in profile.actions if a.is_open)
        age = self._asset_age(profile, today) or 0

        return [
            factors.expiry / 100,
            factors.defect / 100,
            factors.asset_profile / 100,
            factors.coverage_gap / 100,
            factors.external / 100,
            since_last,
            min(open_actions / 10, 1.0),
            float(profile.historical_breach_count),
            age / 100,
            1.0 if profile.is_hrb else 0.0,
            1.0 if profile.has_vulnerable_occupants else 0.0,
        ]
