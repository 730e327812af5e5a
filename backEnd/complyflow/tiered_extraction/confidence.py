"""
Confidence scoring helpers shared by the tier adapters and the orchestrator.

Covers:
- Document confidence from per-word OCR confidences
- Field-level merging across tiers (best-so-far carry forward)
- Timing of adapter calls
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence

# Fields found by a lower tier with at least this confidence are carried
# forward verbatim instead of being re-derived.
CARRY_FORWARD_CONFIDENCE = 0.9


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def page_confidence(word_confidences: Sequence[float]) -> float:
    """Mean of a page's word confidences. A page without words scores 0."""
    return sum(word_confidences) / (len(word_confidences) or 1)


def document_confidence(pages: Iterable[Sequence[float]]) -> float:
    """
    Mean of per-page confidences.

    Args:
        pages: One sequence of word confidences per page

    Returns:
        Document confidence in [0, 1]; 0 for a document with no pages
    """
    page_scores = [page_confidence(words) for words in pages]
    return clamp(sum(page_scores) / (len(page_scores) or 1))


def mean_field_confidence(field_confidence: Dict[str, float]) -> float:
    if not field_confidence:
        return 0.0
    return clamp(sum(field_confidence.values()) / len(field_confidence))


@dataclass
class FieldResult:
    """A single extracted field with its confidence and origin."""

    value: Any
    confidence: float
    source: str  # adapter name

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "confidence": self.confidence, "source": self.source}


@dataclass
class MergedFields:
    """Best-so-far field set accumulated across tiers."""

    fields: Dict[str, FieldResult] = field(default_factory=dict)

    def values(self) -> Dict[str, Any]:
        return {name: result.value for name, result in self.fields.items()}

    def confidences(self) -> Dict[str, float]:
        return {name: result.confidence for name, result in self.fields.items()}

    def high_confidence(self, threshold: float = CARRY_FORWARD_CONFIDENCE) -> Dict[str, Any]:
        return {
            name: result.value
            for name, result in self.fields.items()
            if result.confidence >= threshold and result.value not in (None, "", [])
        }

    def merge(
        self,
        values: Dict[str, Any],
        confidences: Dict[str, float],
        default_confidence: float,
        source: str,
        only_improve: bool = True,
    ) -> List[str]:
        """
        Merge a tier's fields in.

        Args:
            values: Field name -> value from the tier
            confidences: Field name -> confidence, where the tier reports it
            default_confidence: Confidence for fields without their own score
            source: Adapter name
            only_improve: Only replace fields where the new confidence is higher

        Returns:
            Names of fields that were replaced
        """
        replaced = []
        for name, value in values.items():
            if value in (None, "", []):
                continue
            new = FieldResult(value, clamp(confidences.get(name, default_confidence)), source)
            current = self.fields.get(name)

            should_replace = (
                current is None
                or not only_improve
                or new.confidence > current.confidence
                or current.value in (None, "", [])
            )
            if should_replace:
                self.fields[name] = new
                replaced.append(name)
        return replaced

    @classmethod
    def from_run(cls, values: Dict[str, Any], confidences: Dict[str, float], source: str) -> "MergedFields":
        merged = cls()
        merged.merge(values, confidences, 0.0, source, only_improve=False)
        return merged


class ExtractionTimer:
    """Context manager for timing adapter calls."""

    def __init__(self):
        self.start_time: float = 0
        self.elapsed_ms: int = 0

    def __enter__(self):
        self.start_time = time.monotonic()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = int((time.monotonic() - self.start_time) * 1000)
