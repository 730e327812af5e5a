"""
Pattern analysis over corrections and review outcomes.

Groups recent corrections by (certificate type, field, correction type) and
completed review error tags by (certificate type, tag). Clusters at or above
the support threshold become Suggestions, upserted by a stable key so that
repeated analysis updates rather than duplicates them.

Each suggestion tracks an accuracy metric for its certificate type:
    accuracy = 1 - affected / extractions
Suggestions are created ACTIVE. An open suggestion auto-resolves once the
metric reaches the configured target, and an auto-resolved one reopens when
the metric drops below target again. Dismissed and manually resolved
suggestions are never reopened.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config.settings import Settings
from ..errors import ConflictError, DataError
from ..observability.tracing import traced
from ..schemas import (
    Correction,
    CorrectionType,
    ImpactLevel,
    PatternSeverity,
    Suggestion,
    SuggestionCategory,
    SuggestionStatus,
    utcnow,
)
from ..storage.base import ComplianceStore

logger = logging.getLogger(__name__)

KIND_CORRECTION = "correction"
KIND_REVIEW = "review"

# (category, effort, action template) per correction type
CORRECTION_ACTIONS: Dict[CorrectionType, Tuple[SuggestionCategory, ImpactLevel, str]] = {
    CorrectionType.MISSING: (
        SuggestionCategory.PROMPT,
        ImpactLevel.LOW,
        "Add explicit instructions and an example for locating '{field}' on {cert_type} certificates.",
    ),
    CorrectionType.WRONG_VALUE: (
        SuggestionCategory.TRAINING,
        ImpactLevel.HIGH,
        "Collect corrected {cert_type} samples for '{field}' and add them to the extraction examples.",
    ),
    CorrectionType.WRONG_FORMAT: (
        SuggestionCategory.PREPROCESSING,
        ImpactLevel.LOW,
        "Normalize the format of '{field}' after extraction for {cert_type} certificates.",
    ),
    CorrectionType.HALLUCINATED: (
        SuggestionCategory.PROMPT,
        ImpactLevel.MEDIUM,
        "Require null for '{field}' when it is not visible on {cert_type} certificates.",
    ),
    CorrectionType.EXTRA_TEXT: (
        SuggestionCategory.PREPROCESSING,
        ImpactLevel.LOW,
        "Strip labels and surrounding text from '{field}' on {cert_type} certificates.",
    ),
    CorrectionType.PARTIAL: (
        SuggestionCategory.PROMPT,
        ImpactLevel.MEDIUM,
        "Ask for the complete value of '{field}' including multi-line content on {cert_type} certificates.",
    ),
}


def severity_for(count: int) -> PatternSeverity:
    if count >= 50:
        return PatternSeverity.CRITICAL
    if count >= 20:
        return PatternSeverity.HIGH
    if count >= 5:
        return PatternSeverity.MEDIUM
    return PatternSeverity.LOW


def impact_for(severity: PatternSeverity) -> ImpactLevel:
    if severity in (PatternSeverity.CRITICAL, PatternSeverity.HIGH):
        return ImpactLevel.HIGH
    if severity == PatternSeverity.MEDIUM:
        return ImpactLevel.MEDIUM
    return ImpactLevel.LOW


def correction_key(cert_type: str, field_name: str, correction_type: CorrectionType) -> str:
    return f"{KIND_CORRECTION}:{cert_type}:{field_name}:{correction_type.value}"


def review_key(cert_type: str, tag: str) -> str:
    return f"{KIND_REVIEW}:{cert_type}:{tag}"


def progress_toward(baseline: float, current: float, target: float) -> float:
    """Percent of the distance from baseline to target covered so far."""
    if current >= target or target <= baseline:
        return 100.0
    return max(0.0, min(100.0, (current - baseline) / (target - baseline) * 100.0))


@dataclass
class Pattern:
    """A recurring failure cluster."""

    key: str
    kind: str
    certificate_type: str
    subject: str  # field name or review tag
    occurrences: int
    correction_type: Optional[CorrectionType] = None
    correction_ids: List[str] = field(default_factory=list)
    examples: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def severity(self) -> PatternSeverity:
        return severity_for(self.occurrences)


@dataclass
class PatternAnalysisResult:
    patterns: List[Pattern] = field(default_factory=list)
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    auto_resolved: List[str] = field(default_factory=list)
    reopened: List[str] = field(default_factory=list)
    analyzed_corrections: int = 0
    analyzed_reviews: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patterns": len(self.patterns),
            "created": self.created,
            "updated": self.updated,
            "auto_resolved": self.auto_resolved,
            "reopened": self.reopened,
            "analyzed_corrections": self.analyzed_corrections,
            "analyzed_reviews": self.analyzed_reviews,
        }


class PatternAnalyzer:
    """Turns corrections into deduplicated improvement suggestions."""

    def __init__(
        self,
        store: ComplianceStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def find_patterns(
        self,
        corrections: List[Correction],
        reviews: List[Any],
    ) -> List[Pattern]:
        """Cluster corrections and review tags, keeping those at or above min support."""
        clusters: Dict[str, Pattern] = {}

        for c in sorted(corrections, key=lambda c: c.created_at):
            key = correction_key(c.certificate_type, c.field, c.correction_type)
            pattern = clusters.setdefault(key, Pattern(
                key=key,
                kind=KIND_CORRECTION,
                certificate_type=c.certificate_type,
                subject=c.field,
                occurrences=0,
                correction_type=c.correction_type,
            ))
            pattern.occurrences += 1
            pattern.correction_ids.append(c.correction_id)
            if len(pattern.examples) < 3:
                pattern.examples.append({"original": c.original_value, "corrected": c.corrected_value})

        for review in reviews:
            for tag in set(review.error_tags):
                key = review_key(review.certificate_type, tag)
                pattern = clusters.setdefault(key, Pattern(
                    key=key,
                    kind=KIND_REVIEW,
                    certificate_type=review.certificate_type,
                    subject=tag,
                    occurrences=0,
                ))
                pattern.occurrences += 1

        patterns = [p for p in clusters.values() if p.occurrences >= self.settings.pattern_min_support]
        patterns.sort(key=lambda p: (-p.occurrences, p.key))
        return patterns[: self.settings.pattern_max_patterns]

    @traced("pattern_analysis")
    def run_pattern_analysis(self, org_id: str, now: Optional[datetime] = None) -> PatternAnalysisResult:
        """
        Analyze the recent window and upsert suggestions.

        Re-running without new data updates the same suggestions in place.

        Args:
            org_id: Organization to analyze
            now: Analysis time, defaults to the clock

        Returns:
            PatternAnalysisResult listing created, updated and auto-resolved keys
        """
        now = now or self._clock()
        since = now - timedelta(days=self.settings.pattern_window_days)

        corrections = self.store.list_corrections(org_id, since=since)
        reviews = [
            r for r in self.store.list_reviews(org_id)
            if r.created_at >= since and r.error_tags
        ]
        result = PatternAnalysisResult(
            analyzed_corrections=len(corrections),
            analyzed_reviews=len(reviews),
        )
        result.patterns = self.find_patterns(corrections, reviews)

        extractions = self._extraction_counts(org_id, since)
        affected = self._affected_counts(corrections, reviews)
        seen = set()

        for pattern in result.patterns:
            seen.add(pattern.key)
            accuracy = self._accuracy(extractions, affected, pattern.kind, pattern.certificate_type, pattern.subject)
            existing = self.store.find_suggestion_by_key(org_id, pattern.key)

            if existing is None:
                self.store.upsert_suggestion(self._new_suggestion(org_id, pattern, accuracy, now))
                result.created.append(pattern.key)
                continue

            if existing.status == SuggestionStatus.AUTO_RESOLVED and accuracy < existing.target_value:
                self.store.upsert_suggestion(self._reopen(existing, accuracy, now, pattern))
                result.reopened.append(pattern.key)
                continue

            if existing.status.is_closed:
                continue

            updated = self._refresh(existing, accuracy, now, pattern)
            self.store.upsert_suggestion(updated)
            if updated.status == SuggestionStatus.AUTO_RESOLVED:
                result.auto_resolved.append(pattern.key)
            else:
                result.updated.append(pattern.key)

        # Open suggestions whose cluster fell below support still track their metric.
        for suggestion in self.store.list_suggestions(org_id):
            if suggestion.status.is_closed or suggestion.suggestion_key in seen:
                continue
            meta = suggestion.metadata
            accuracy = self._accuracy(
                extractions, affected, meta.get("kind", KIND_CORRECTION),
                meta.get("certificate_type", ""), meta.get("subject", ""),
            )
            updated = self._refresh(suggestion, accuracy, now)
            self.store.upsert_suggestion(updated)
            if updated.status == SuggestionStatus.AUTO_RESOLVED:
                result.auto_resolved.append(suggestion.suggestion_key)

        logger.info(
            f"Pattern analysis for {org_id}: {len(result.patterns)} pattern(s), "
            f"{len(result.created)} created, {len(result.updated)} updated, "
            f"{len(result.auto_resolved)} auto-resolved, {len(result.reopened)} reopened"
        )
        return result

    def _extraction_counts(self, org_id: str, since: datetime) -> Dict[str, int]:
        counts: Dict[str, int] = defaultdict(int)
        for run in self.store.list_runs(org_id):
            if run.created_at >= since:
                counts[run.document_type] += 1
        return counts

    @staticmethod
    def _affected_counts(corrections: List[Correction], reviews: List[Any]) -> Dict[Tuple[str, str, str], int]:
        """Distinct runs affected per (kind, certificate type, field or tag)."""
        runs: Dict[Tuple[str, str, str], set] = defaultdict(set)
        for c in corrections:
            runs[(KIND_CORRECTION, c.certificate_type, c.field)].add(c.run_id)
        for r in reviews:
            for tag in r.error_tags:
                runs[(KIND_REVIEW, r.certificate_type, tag)].add(r.run_id)
        return {key: len(run_ids) for key, run_ids in runs.items()}

    @staticmethod
    def _accuracy(
        extractions: Dict[str, int],
        affected: Dict[Tuple[str, str, str], int],
        kind: str,
        cert_type: str,
        subject: str,
    ) -> float:
        bad = affected.get((kind, cert_type, subject), 0)
        total = max(extractions.get(cert_type, 0), bad)
        if total == 0:
            return 1.0
        return round(1.0 - bad / total, 4)

    def _new_suggestion(self, org_id: str, pattern: Pattern, accuracy: float, now: datetime) -> Suggestion:
        target = self.settings.target_field_accuracy
        if pattern.kind == KIND_CORRECTION:
            category, effort, template = CORRECTION_ACTIONS[pattern.correction_type]
            title = f"{pattern.certificate_type} '{pattern.subject}' {pattern.correction_type.value.lower()} corrections"
            action = template.format(field=pattern.subject, cert_type=pattern.certificate_type)
        else:
            category, effort = SuggestionCategory.REVIEW, ImpactLevel.MEDIUM
            title = f"{pattern.certificate_type} reviews tagged '{pattern.subject}'"
            action = (
                f"Investigate why {pattern.certificate_type} certificates are flagged "
                f"'{pattern.subject}' in review and tighten the matching rule or extraction."
            )

        return Suggestion(
            org_id=org_id,
            suggestion_key=pattern.key,
            category=category,
            title=title,
            description=f"{action} Seen {pattern.occurrences} time(s) in the last "
                        f"{self.settings.pattern_window_days} days.",
            impact=impact_for(pattern.severity),
            effort=effort,
            severity=pattern.severity,
            occurrences=pattern.occurrences,
            current_value=accuracy,
            target_value=target,
            metadata={
                "kind": pattern.kind,
                "certificate_type": pattern.certificate_type,
                "subject": pattern.subject,
                "correction_type": pattern.correction_type.value if pattern.correction_type else None,
                "baseline_value": accuracy,
                "examples": pattern.examples,
            },
            created_at=now,
            updated_at=now,
        )

    def _refresh(
        self,
        suggestion: Suggestion,
        accuracy: float,
        now: datetime,
        pattern: Optional[Pattern] = None,
    ) -> Suggestion:
        baseline = suggestion.metadata.get("baseline_value", suggestion.current_value)
        progress = max(
            suggestion.progress_percent,
            progress_toward(baseline, accuracy, suggestion.target_value),
        )
        update: Dict[str, Any] = {
            "current_value": accuracy,
            "progress_percent": progress,
            "updated_at": now,
        }
        if pattern is not None:
            update.update(
                occurrences=pattern.occurrences,
                severity=pattern.severity,
                impact=impact_for(pattern.severity),
                metadata={**suggestion.metadata, "examples": pattern.examples},
            )
        refreshed = suggestion.model_copy(update=update)
        if accuracy >= suggestion.target_value:
            logger.info(f"Suggestion {suggestion.suggestion_key} reached its target, auto-resolving")
            refreshed = self._close(refreshed, SuggestionStatus.AUTO_RESOLVED, now)
        return refreshed

    def _reopen(self, suggestion: Suggestion, accuracy: float, now: datetime, pattern: Pattern) -> Suggestion:
        """Bring an auto-resolved suggestion back when its metric slips below target again."""
        logger.info(
            f"Suggestion {suggestion.suggestion_key} fell to {accuracy:.4f} "
            f"(target {suggestion.target_value}), reopening"
        )
        return suggestion.model_copy(update={
            "status": SuggestionStatus.ACTIVE,
            "occurrences": pattern.occurrences,
            "severity": pattern.severity,
            "impact": impact_for(pattern.severity),
            "current_value": accuracy,
            "progress_percent": 0.0,
            "resolved_at": None,
            "updated_at": now,
            "metadata": {
                **suggestion.metadata,
                "baseline_value": accuracy,
                "examples": pattern.examples,
                "reopen_count": suggestion.metadata.get("reopen_count", 0) + 1,
            },
        })

    @staticmethod
    def _close(suggestion: Suggestion, status: SuggestionStatus, now: datetime, **extra: Any) -> Suggestion:
        return suggestion.model_copy(update={
            "status": status,
            "progress_percent": 100.0 if status != SuggestionStatus.DISMISSED else suggestion.progress_percent,
            "resolved_at": now,
            "updated_at": now,
            **extra,
        })

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def list_suggestions(
        self,
        org_id: str,
        status: Optional[SuggestionStatus] = None,
    ) -> List[Suggestion]:
        """Suggestions ordered by severity then occurrences."""
        order = list(PatternSeverity)
        suggestions = self.store.list_suggestions(org_id, status=status)
        suggestions.sort(key=lambda s: (-order.index(s.severity), -s.occurrences, s.created_at))
        return suggestions

    def start_work(self, org_id: str, suggestion_id: str, actor: str) -> Suggestion:
        suggestion = self.store.get_suggestion(org_id, suggestion_id)
        if suggestion.status != SuggestionStatus.ACTIVE:
            raise ConflictError(
                f"Suggestion {suggestion_id} is {suggestion.status.value}, only ACTIVE can be started"
            )
        updated = suggestion.model_copy(update={
            "status": SuggestionStatus.IN_PROGRESS,
            "actioned_by": actor,
            "updated_at": self._clock(),
        })
        return self.store.upsert_suggestion(updated)

    def resolve(self, org_id: str, suggestion_id: str, actor: str) -> Suggestion:
        """Close a suggestion manually and mark its corrections as used for improvement."""
        suggestion = self.store.get_suggestion(org_id, suggestion_id)
        if suggestion.status.is_closed:
            raise ConflictError(f"Suggestion {suggestion_id} is already {suggestion.status.value}")

        marked = 0
        meta = suggestion.metadata
        if meta.get("kind") == KIND_CORRECTION:
            ids = [
                c.correction_id for c in self.store.list_corrections(org_id)
                if not c.used_for_improvement
                and c.certificate_type == meta.get("certificate_type")
                and c.field == meta.get("subject")
                and c.correction_type.value == meta.get("correction_type")
            ]
            marked = self.store.mark_corrections_used(org_id, ids)

        updated = self._close(suggestion, SuggestionStatus.RESOLVED, self._clock(), actioned_by=actor)
        logger.info(f"Suggestion {suggestion_id} resolved by {actor}; {marked} correction(s) marked used")
        return self.store.upsert_suggestion(updated)

    def dismiss(self, org_id: str, suggestion_id: str, reason: str, actor: str) -> Suggestion:
        """Dismiss a suggestion. Dismissal is terminal and requires a reason."""
        if not reason or not reason.strip():
            raise DataError("A reason is required to dismiss a suggestion", field="reason")
        suggestion = self.store.get_suggestion(org_id, suggestion_id)
        if suggestion.status.is_closed:
            raise ConflictError(f"Suggestion {suggestion_id} is already {suggestion.status.value}")

        updated = self._close(
            suggestion,
            SuggestionStatus.DISMISSED,
            self._clock(),
            dismiss_reason=reason.strip(),
            actioned_by=actor,
        )
        return self.store.upsert_suggestion(updated)
