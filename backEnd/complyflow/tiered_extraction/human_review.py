"""Human review queue (Tier 3).

Tier 3 is not a callable service. Runs that cannot be settled automatically
are queued as HumanReview entries with a priority score. A reviewer's
decision becomes the tier's outcome: confidence 1.0 on approval, 0.0 on
rejection, with the reviewer's wall-clock time as processing time.
"""

import logging
from typing import List, Optional, Sequence

from ..schemas import (
    DocumentInput,
    ExtractionRun,
    HumanReview,
    ReviewDecision,
    ReviewStatus,
    TierOutcome,
)
from ..storage.base import ComplianceStore
from .base import TierAdapter, TierContext

logger = logging.getLogger(__name__)

# Certificate types whose failures carry immediate safety consequences.
HIGH_RISK_TYPES = {"GAS_SAFETY", "EICR", "FRA"}


def calculate_priority(
    confidence: float,
    failed_rules: Sequence[str],
    certificate_type: str,
) -> float:
    """Review priority in [0, 1], higher is more urgent.

    Factors:
    - Lower confidence = higher priority
    - Failed business rules = higher priority
    - Safety-critical certificate types = higher priority
    - Multiple failed rules = higher priority
    """
    priority = (1.0 - confidence) * 0.4

    if failed_rules:
        priority += 0.2
    if certificate_type.upper() in HIGH_RISK_TYPES:
        priority += 0.2
    if len(failed_rules) > 1:
        priority += 0.1 * min(len(failed_rules) - 1, 3)

    return min(priority, 1.0)


class HumanReviewAdapter(TierAdapter):
    """Tier 3: queue-backed human review."""

    name = "human_review"
    tier = 3

    def __init__(self, store: ComplianceStore):
        self.store = store

    def is_configured(self) -> bool:
        return True

    def estimate_cost(self, document: DocumentInput) -> float:
        return 0.0

    def enqueue(
        self,
        run: ExtractionRun,
        reason: str,
        failed_rules: Optional[Sequence[str]] = None,
    ) -> HumanReview:
        """Create a review entry for a run."""
        failed_rules = list(failed_rules or [])
        review = HumanReview(
            org_id=run.org_id,
            run_id=run.run_id,
            certificate_id=run.certificate_id,
            certificate_type=run.document_type,
            reason=reason,
            failed_rules=failed_rules,
            error_tags=list(failed_rules),
            priority=calculate_priority(run.confidence, failed_rules, run.document_type),
        )
        self.store.create_review(review)
        logger.info(
            f"Queued run {run.run_id} for review ({reason}, priority {review.priority:.2f})"
        )
        return review

    def pending(self, org_id: str, limit: Optional[int] = None) -> List[HumanReview]:
        """Open reviews, most urgent first."""
        reviews = self.store.list_reviews(org_id, status=ReviewStatus.PENDING)
        reviews.sort(key=lambda r: (-r.priority, r.created_at))
        return reviews[:limit] if limit else reviews

    @staticmethod
    def outcome_for(
        decision: ReviewDecision,
        review_time_seconds: Optional[float] = None,
    ) -> TierOutcome:
        approved = decision == ReviewDecision.APPROVE
        return TierOutcome(
            succeeded=approved,
            confidence=1.0 if approved else 0.0,
            error=None if approved else "Rejected by reviewer",
            processing_time_ms=int((review_time_seconds or 0) * 1000),
            estimated_cost=0.0,
        )

    async def attempt(self, document: DocumentInput, context: TierContext) -> TierOutcome:
        """Outcome of the run's latest completed review, if a reviewer has decided."""
        completed = [
            r for r in self.store.list_reviews(context.org_id, run_id=context.run_id)
            if r.status == ReviewStatus.COMPLETED and r.decision is not None
        ]
        if not completed:
            return TierOutcome(succeeded=False, confidence=0.0, error="Awaiting human review")
        latest = max(completed, key=lambda r: r.completed_at or r.created_at)
        return self.outcome_for(latest.decision, latest.review_time_seconds)
