"""Capture of reviewer corrections against extraction runs.

Captures every field a reviewer changes, enabling:
1. Tracking correction patterns for extraction improvement
2. Audit trail of all changes
3. Fine-tuning data collection
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence, Union

from pydantic import ValidationError

from ..errors import DataError, NotFoundError
from ..schemas import Correction, CorrectionInput, ExtractionRun
from ..storage.base import ComplianceStore

logger = logging.getLogger(__name__)


@dataclass
class RejectedCorrection:
    """A submitted correction that failed validation."""

    index: int
    field: Any
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "field": self.field, "error": self.error}


@dataclass
class CorrectionBatchResult:
    """Outcome of a correction submission. Valid entries persist even when others fail."""

    run_id: str
    certificate_id: str
    accepted: List[Correction] = field(default_factory=list)
    rejected: List[RejectedCorrection] = field(default_factory=list)

    @property
    def accepted_count(self) -> int:
        return len(self.accepted)

    @property
    def rejected_count(self) -> int:
        return len(self.rejected)


class CorrectionCapture:
    """Records field-level corrections scoped to an organization."""

    def __init__(self, store: ComplianceStore):
        self.store = store

    def resolve_run(self, org_id: str, run_or_certificate_id: str) -> ExtractionRun:
        """
        Find the run a correction applies to.

        Accepts either a run ID or a certificate ID (latest run wins). Runs of
        another organization raise AuthorizationError, not NotFoundError.
        """
        try:
            return self.store.get_run(org_id, run_or_certificate_id)
        except NotFoundError:
            return self.store.latest_run_for_certificate(org_id, run_or_certificate_id)

    def record_corrections(
        self,
        org_id: str,
        run_or_certificate_id: str,
        items: Sequence[Union[CorrectionInput, Mapping[str, Any]]],
        corrected_by: str,
    ) -> CorrectionBatchResult:
        """
        Persist one immutable Correction per submitted field.

        Args:
            org_id: Caller's organization
            run_or_certificate_id: Extraction run or certificate being corrected
            items: Corrections as CorrectionInput or plain dicts
            corrected_by: Reviewer identity

        Returns:
            CorrectionBatchResult with accepted and rejected entries

        Raises:
            AuthorizationError: Parent belongs to another organization
            NotFoundError: Parent does not exist
        """
        run = self.resolve_run(org_id, run_or_certificate_id)
        result = CorrectionBatchResult(run_id=run.run_id, certificate_id=run.certificate_id)

        for index, item in enumerate(items):
            try:
                entry = self._parse(item)
            except DataError as e:
                raw_field = item.get("field") if isinstance(item, Mapping) else None
                result.rejected.append(RejectedCorrection(index, raw_field, str(e)))
                continue

            original = entry.original_value
            if "original_value" not in entry.model_fields_set:
                original = run.fields.get(entry.field)

            correction = Correction(
                org_id=org_id,
                run_id=run.run_id,
                certificate_id=run.certificate_id,
                certificate_type=run.document_type,
                tier=run.final_tier,
                field=entry.field,
                original_value=original,
                corrected_value=entry.corrected_value,
                correction_type=entry.correction_type,
                corrected_by=corrected_by,
                notes=entry.notes,
            )
            self.store.add_correction(correction)
            result.accepted.append(correction)

        logger.info(
            f"Recorded {result.accepted_count} correction(s) for run {run.run_id}"
            + (f", rejected {result.rejected_count}" if result.rejected else "")
        )
        return result

    @staticmethod
    def _parse(item: Union[CorrectionInput, Mapping[str, Any]]) -> CorrectionInput:
        if isinstance(item, CorrectionInput):
            return item
        if not isinstance(item, Mapping):
            raise DataError(f"Correction must be an object, got {type(item).__name__}")
        try:
            return CorrectionInput.model_validate(dict(item))
        except ValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(part) for part in first.get("loc", ()))
            raise DataError(f"{loc}: {first.get('msg')}", field=loc) from e

    def get_correction_history(self, org_id: str, certificate_id: str) -> List[Correction]:
        """All corrections for a certificate, oldest first."""
        corrections = self.store.list_corrections(org_id, certificate_id=certificate_id)
        return sorted(corrections, key=lambda c: c.created_at)

    def correction_stats(self, org_id: str) -> Dict[str, Any]:
        """
        Get statistics about corrections for an organization.

        Useful for understanding common correction patterns.
        """
        corrections = self.store.list_corrections(org_id)
        return {
            "total_corrections": len(corrections),
            "unused_corrections": sum(1 for c in corrections if not c.used_for_improvement),
            "by_field": dict(Counter(c.field for c in corrections)),
            "by_type": dict(Counter(c.correction_type.value for c in corrections)),
            "by_certificate_type": dict(Counter(c.certificate_type for c in corrections)),
            "by_tier": dict(Counter(str(c.tier) for c in corrections if c.tier is not None)),
        }

    def export_for_training(self, org_id: str, unused_only: bool = True) -> List[Dict[str, Any]]:
        """Corrections as flat records for prompt tuning or fine-tuning sets."""
        corrections = self.store.list_corrections(org_id)
        if unused_only:
            corrections = [c for c in corrections if not c.used_for_improvement]
        return [
            {
                "correction_id": c.correction_id,
                "certificate_type": c.certificate_type,
                "tier": c.tier,
                "field": c.field,
                "original_value": c.original_value,
                "corrected_value": c.corrected_value,
                "correction_type": c.correction_type.value,
                "created_at": c.created_at.isoformat(),
            }
            for c in sorted(corrections, key=lambda c: c.created_at)
        ]
