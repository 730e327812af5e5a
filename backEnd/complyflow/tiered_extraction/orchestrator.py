"""
Extraction orchestrator.

Drives one certificate through the tiers:
1. Azure Document Intelligence layout analysis (cheap, fast)
2. Vision model (costlier, reads handwriting and poor scans)
3. Human review (work queue)

After every tier attempt an immutable TierAttempt row is appended, then:
- confident and valid -> APPROVED
- confident but invalid -> VALIDATION_FAILED, queued for review
- not confident, or the tier failed -> escalate to the next tier
- no tier left -> AWAITING_REVIEW

Escalation only moves upwards. Adapter errors become failed attempts and
never escape the orchestrator. Every status change is a compare-and-swap
against the stored status, so a run superseded mid-flight keeps its audit
rows but is not moved by a stale result.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..config.settings import Settings
from ..errors import ConflictError, StaleRunError, TransientError
from ..observability.tracing import ComplyTracer, get_tracer
from ..rules.engine import RuleEngine
from ..schemas import (
    DocumentInput,
    ExtractionRun,
    HumanReview,
    ReviewDecision,
    ReviewStatus,
    RunStatus,
    TierAttempt,
    TierOutcome,
    utcnow,
)
from ..schemas.certificates import normalize_certificate_type
from ..schemas.extraction import PROCESSING_STATUSES, REVIEWABLE_STATUSES
from ..storage.base import ComplianceStore
from .base import TierAdapter, TierContext
from .confidence import MergedFields
from .human_review import HumanReviewAdapter

logger = logging.getLogger(__name__)

ATTEMPTED_STATUS = {
    1: RunStatus.TIER1_ATTEMPTED,
    2: RunStatus.TIER2_ATTEMPTED,
}

REASON_LOW_CONFIDENCE = "low_confidence"
REASON_VALIDATION = "validation_failed"
REASON_TIERS_FAILED = "all_tiers_failed"
REASON_COST_BUDGET = "cost_budget_exceeded"


class ExtractionOrchestrator:
    """State machine for tiered certificate extraction."""

    def __init__(
        self,
        store: ComplianceStore,
        rules: RuleEngine,
        adapters: Sequence[TierAdapter],
        review_queue: HumanReviewAdapter,
        settings: Settings,
        tracer: Optional[ComplyTracer] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.rules = rules
        self.adapters = sorted(adapters, key=lambda a: a.tier)
        self.review_queue = review_queue
        self.settings = settings
        self.tracer = tracer or get_tracer()
        self._clock = clock

    async def process(
        self,
        org_id: str,
        certificate_id: str,
        document: DocumentInput,
    ) -> ExtractionRun:
        """
        Run a certificate through the tiers.

        Args:
            org_id: Owning organization
            certificate_id: Certificate being processed
            document: Document bytes and metadata

        Returns:
            The run in its resting state: APPROVED, VALIDATION_FAILED,
            AWAITING_REVIEW, or whatever a concurrent writer left it in
        """
        run = self.store.create_run(ExtractionRun(
            org_id=org_id,
            certificate_id=certificate_id,
            document_type=normalize_certificate_type(document.certificate_type),
        ))
        logger.info(f"Started run {run.run_id} for certificate {certificate_id} ({run.document_type})")

        with self.tracer.span("extraction_run", run_id=run.run_id, certificate_id=certificate_id):
            return await self._drive(run, document)

    async def process_many(
        self,
        org_id: str,
        items: Sequence[Tuple[str, DocumentInput]],
        max_concurrent: int = 4,
    ) -> List[ExtractionRun]:
        """Process independent certificates concurrently, preserving input order."""
        semaphore = asyncio.Semaphore(max_concurrent)

        async def _one(item: Tuple[str, DocumentInput]) -> ExtractionRun:
            certificate_id, document = item
            async with semaphore:
                return await self.process(org_id, certificate_id, document)

        return list(await asyncio.gather(*[_one(item) for item in items]))

    async def _drive(self, run: ExtractionRun, document: DocumentInput) -> ExtractionRun:
        merged = MergedFields()
        total_cost = 0.0
        sequence = 0
        last_reason = REASON_TIERS_FAILED

        budget = self.settings.max_cost_per_document
        for adapter in self.adapters:
            estimate = adapter.estimate_cost(document)
            if budget is not None and adapter.is_configured() and total_cost + estimate > budget:
                logger.warning(
                    f"Run {run.run_id}: tier {adapter.tier} would exceed the cost budget "
                    f"({total_cost + estimate:.4f} > {budget:.4f})"
                )
                last_reason = REASON_COST_BUDGET
                break

            context = TierContext(
                org_id=run.org_id,
                run_id=run.run_id,
                certificate_type=run.document_type,
                prior_fields=merged.values(),
                prior_field_confidence=merged.confidences(),
                prior_confidence=run.confidence,
                carried_fields=merged.high_confidence(),
            )
            outcome = await self._invoke(adapter, document, context)
            sequence += 1
            self._record_attempt(run, adapter, outcome, sequence)
            total_cost += outcome.estimated_cost

            changes: Dict[str, Any] = {"final_tier": adapter.tier, "total_cost": total_cost}
            evaluation = None
            if outcome.succeeded:
                merged.merge(
                    outcome.structured_fields,
                    outcome.field_confidence,
                    outcome.confidence,
                    adapter.name,
                )
                evaluation = self.rules.evaluate(run.document_type, merged.values())
                changes.update(
                    confidence=outcome.confidence,
                    fields=merged.values(),
                    field_confidence=merged.confidences(),
                    validation_passed=evaluation.passed,
                    failed_rules=evaluation.failed_rules,
                    outcome=evaluation.outcome.outcome.value if evaluation.outcome else None,
                )

            run = self._transition(run, ATTEMPTED_STATUS[adapter.tier], "tier attempted", **changes)
            if run is None:
                return self._current(context.org_id, context.run_id)

            if not outcome.succeeded:
                logger.info(
                    f"Run {run.run_id}: tier {adapter.tier} failed "
                    f"({outcome.error_category.value if outcome.error_category else 'unknown'}), escalating"
                )
                last_reason = REASON_TIERS_FAILED
                continue

            threshold = self.settings.threshold_for(adapter.tier)
            if outcome.confidence >= threshold:
                if evaluation.passed:
                    return self._finish(run, RunStatus.APPROVED, f"tier {adapter.tier} confident and valid")
                # Confident but invalid: no escalation.
                finished = self._finish(
                    run, RunStatus.VALIDATION_FAILED, f"failed rules: {', '.join(evaluation.failed_rules)}"
                )
                if finished.status == RunStatus.VALIDATION_FAILED:
                    self.review_queue.enqueue(finished, REASON_VALIDATION, evaluation.failed_rules)
                return finished

            logger.info(
                f"Run {run.run_id}: tier {adapter.tier} confidence {outcome.confidence:.2f} "
                f"below {threshold:.2f}, escalating"
            )
            last_reason = REASON_LOW_CONFIDENCE if evaluation.passed else REASON_VALIDATION

        return self._await_review(run, last_reason)

    async def _invoke(self, adapter: TierAdapter, document: DocumentInput, context: TierContext) -> TierOutcome:
        """Call an adapter under the per-tier time ceiling. Never raises."""
        timeout = self.settings.tier_timeout_seconds
        try:
            return await asyncio.wait_for(adapter.attempt(document, context), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Run {context.run_id}: tier {adapter.tier} timed out after {timeout}s")
            return TierOutcome.failure(
                TransientError(f"Tier {adapter.tier} timed out after {timeout}s"),
                processing_time_ms=int(timeout * 1000),
            )
        except Exception as e:
            logger.error(f"Run {context.run_id}: tier {adapter.tier} adapter error: {e}")
            self.tracer.log_error(e, {"run_id": context.run_id, "tier": adapter.tier})
            return TierOutcome.failure(e)

    def _record_attempt(
        self,
        run: ExtractionRun,
        adapter: TierAdapter,
        outcome: TierOutcome,
        sequence: int,
    ) -> TierAttempt:
        attempt = TierAttempt(
            run_id=run.run_id,
            org_id=run.org_id,
            sequence=sequence,
            tier=adapter.tier,
            adapter=adapter.name,
            succeeded=outcome.succeeded,
            confidence=outcome.confidence,
            raw_text=outcome.raw_text,
            structured_fields=outcome.structured_fields,
            payload_ref=outcome.metadata.get("payload_ref"),
            error=outcome.error,
            error_category=outcome.error_category,
            processing_time_ms=outcome.processing_time_ms,
            estimated_cost=outcome.estimated_cost,
        )
        self.store.append_tier_attempt(attempt)
        self.tracer.log_tier_attempt(
            run.run_id, adapter.tier, adapter.name, outcome.succeeded, outcome.confidence, outcome.error
        )
        return attempt

    def _transition(
        self,
        run: ExtractionRun,
        to_status: RunStatus,
        reason: str,
        **changes: Any,
    ) -> Optional[ExtractionRun]:
        """Compare-and-swap the run's status. Returns None if the run moved underneath us."""
        try:
            updated = self.store.transition_run(
                run.org_id, run.run_id, run.status, status=to_status, **changes
            )
        except StaleRunError as e:
            logger.warning(f"Run {run.run_id} changed concurrently ({e.actual}); dropping stale result")
            return None

        self.tracer.log_run_transition(run.run_id, run.status.value, to_status.value, reason)
        logger.info(f"Run {run.run_id}: {run.status.value} -> {to_status.value} ({reason})")
        return updated

    def _finish(self, run: ExtractionRun, status: RunStatus, reason: str, **changes: Any) -> ExtractionRun:
        updated = self._transition(run, status, reason, completed_at=self._clock(), **changes)
        return updated if updated is not None else self._current(run.org_id, run.run_id)

    def _await_review(self, run: ExtractionRun, reason: str) -> ExtractionRun:
        updated = self._transition(run, RunStatus.AWAITING_REVIEW, reason)
        if updated is None:
            return self._current(run.org_id, run.run_id)
        self.review_queue.enqueue(updated, reason, updated.failed_rules)
        return updated

    def _current(self, org_id: str, run_id: str) -> ExtractionRun:
        return self.store.get_run(org_id, run_id)

    def record_review_decision(
        self,
        org_id: str,
        review_id: str,
        reviewer_id: str,
        decision: ReviewDecision,
        corrected_fields: Optional[Dict[str, Any]] = None,
        error_tags: Sequence[str] = (),
        review_time_seconds: Optional[float] = None,
    ) -> Tuple[ExtractionRun, HumanReview]:
        """
        Apply a reviewer's decision (the Tier 3 attempt).

        Args:
            org_id: Caller's organization
            review_id: Review being completed
            reviewer_id: Reviewer identity
            decision: APPROVE or REJECT
            corrected_fields: Field values the reviewer changed
            error_tags: Failure-cause tags chosen by the reviewer
            review_time_seconds: Wall-clock review time

        Returns:
            (updated run, completed review)

        Raises:
            AuthorizationError: Review or run belongs to another organization
            NotFoundError: Review or run does not exist
            ConflictError: Review already completed or run no longer reviewable
        """
        review = self.store.get_review(org_id, review_id)
        if review.status == ReviewStatus.COMPLETED:
            raise ConflictError(f"Review {review_id} already completed")

        run = self.store.get_run(org_id, review.run_id)
        if run.status not in REVIEWABLE_STATUSES:
            raise ConflictError(f"Run {run.run_id} is {run.status.value} and cannot be reviewed")

        corrected_fields = dict(corrected_fields or {})
        field_changes = {
            name: {"from": run.fields.get(name), "to": value}
            for name, value in corrected_fields.items()
            if run.fields.get(name) != value
        }
        fields = {**run.fields, **corrected_fields}

        outcome = self.review_queue.outcome_for(decision, review_time_seconds)
        outcome = outcome.model_copy(update={"structured_fields": fields})
        sequence = len(self.store.list_tier_attempts(org_id, run.run_id)) + 1
        self._record_attempt(run, self.review_queue, outcome, sequence)

        evaluation = self.rules.evaluate(run.document_type, fields)
        if decision == ReviewDecision.APPROVE:
            if not evaluation.passed:
                logger.warning(
                    f"Run {run.run_id} approved by {reviewer_id} despite failed rules "
                    f"{evaluation.failed_rules}"
                )
            status = RunStatus.APPROVED
        else:
            status = RunStatus.REJECTED

        updated = self._transition(
            run,
            status,
            f"reviewed by {reviewer_id}",
            completed_at=self._clock(),
            confidence=outcome.confidence,
            final_tier=self.review_queue.tier,
            fields=fields,
            validation_passed=evaluation.passed,
            failed_rules=evaluation.failed_rules,
            outcome=evaluation.outcome.outcome.value if evaluation.outcome else None,
        )
        if updated is None:
            raise StaleRunError(run.run_id, run.status.value, self._current(org_id, run.run_id).status.value)

        review = review.model_copy(update={
            "status": ReviewStatus.COMPLETED,
            "reviewer_id": reviewer_id,
            "decision": decision,
            "error_tags": sorted(set(review.error_tags) | set(error_tags)),
            "was_correct": decision == ReviewDecision.APPROVE and not field_changes,
            "change_count": len(field_changes),
            "field_changes": field_changes,
            "review_time_seconds": review_time_seconds,
            "completed_at": self._clock(),
        })
        self.store.update_review(review)
        return updated, review

    def supersede(self, org_id: str, certificate_id: str) -> List[str]:
        """Mark a certificate's open runs SUPERSEDED (e.g. the document was re-uploaded)."""
        superseded = []
        for run in self.store.list_runs(org_id, certificate_id=certificate_id):
            if run.status.is_terminal:
                continue
            if self._transition(run, RunStatus.SUPERSEDED, "certificate superseded", completed_at=self._clock()):
                superseded.append(run.run_id)
        return superseded

    def sweep_stuck_runs(self, org_id: str, now: Optional[datetime] = None) -> List[str]:
        """
        Fail runs stuck in a processing state longer than the configured timeout.

        Intended to be called periodically by an external scheduler.

        Returns:
            IDs of runs marked FAILED
        """
        now = now or self._clock()
        cutoff = now - timedelta(minutes=self.settings.stuck_run_timeout_minutes)
        failed = []
        for run in self.store.list_runs(org_id, statuses=list(PROCESSING_STATUSES)):
            if run.updated_at >= cutoff:
                continue
            if self._transition(run, RunStatus.FAILED, "stuck run sweep", completed_at=now):
                failed.append(run.run_id)
        if failed:
            logger.warning(f"Swept {len(failed)} stuck run(s) for org {org_id}")
        return failed
