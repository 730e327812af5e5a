"""Uniform contract for extraction tiers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict

from ..schemas import DocumentInput, TierOutcome


@dataclass
class TierContext:
    """What an adapter knows about the run when it is invoked."""

    org_id: str
    run_id: str
    certificate_type: str
    prior_fields: Dict[str, Any] = field(default_factory=dict)
    prior_field_confidence: Dict[str, float] = field(default_factory=dict)
    prior_confidence: float = 0.0
    # High-confidence lower-tier fields a higher tier may reuse as-is
    carried_fields: Dict[str, Any] = field(default_factory=dict)


class TierAdapter(ABC):
    """
    One extraction strategy.

    attempt() returns a TierOutcome and performs no persistence. Expected
    failures are reported through the outcome. A missing configuration is
    reported with ErrorCategory.CONFIGURATION so the orchestrator can
    escalate without spending a retry budget.
    """

    name: str = "adapter"
    tier: int = 0

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials and dependencies are available."""

    @abstractmethod
    def estimate_cost(self, document: DocumentInput) -> float:
        """Estimated spend in USD for one attempt on this document."""

    @abstractmethod
    async def attempt(self, document: DocumentInput, context: TierContext) -> TierOutcome:
        """Run the tier against a document."""

    async def close(self) -> None:
        """Release network clients. Adapters without any keep the default."""
