"""
Service container.

Builds every capability once at process start and hands out the same
instances to the CLI, schedulers and tests. Nothing is resolved per request.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config.settings import Settings, get_settings
from .learning import CorrectionCapture, PatternAnalysisResult, PatternAnalyzer
from .observability.tracing import ComplyTracer, configure_langsmith, get_tracer
from .risk import RiskEnsemble, TrainingResult, TrainingService
from .rules import RuleEngine
from .schemas import Hyperparameters
from .storage import ComplianceStore, build_store
from .tiered_extraction import (
    ExtractionOrchestrator,
    HumanReviewAdapter,
    LayoutAnalysisAdapter,
    VisionModelAdapter,
)
from .utils import FixedWindowRateLimiter, TTLCache

logger = logging.getLogger(__name__)


@dataclass
class ComplyServices:
    """Process-wide capabilities, wired together."""

    settings: Settings
    store: ComplianceStore
    cache: TTLCache
    rate_limiter: FixedWindowRateLimiter
    tracer: ComplyTracer
    rules: RuleEngine
    layout: LayoutAnalysisAdapter
    vision: VisionModelAdapter
    review_queue: HumanReviewAdapter
    orchestrator: ExtractionOrchestrator
    corrections: CorrectionCapture
    patterns: PatternAnalyzer
    ensemble: RiskEnsemble
    trainer: TrainingService

    @classmethod
    def create(
        cls,
        settings: Optional[Settings] = None,
        store: Optional[ComplianceStore] = None,
        layout: Optional[LayoutAnalysisAdapter] = None,
        vision: Optional[VisionModelAdapter] = None,
    ) -> "ComplyServices":
        settings = settings or get_settings()
        store = store or build_store(settings.store_backend)
        cache = TTLCache(default_ttl=settings.rules_cache_ttl_seconds)
        tracer = get_tracer()

        rules = RuleEngine(settings.rules_path, cache, ttl_seconds=settings.rules_cache_ttl_seconds)
        layout = layout or LayoutAnalysisAdapter(settings)
        vision = vision or VisionModelAdapter(settings)
        review_queue = HumanReviewAdapter(store)

        return cls(
            settings=settings,
            store=store,
            cache=cache,
            rate_limiter=FixedWindowRateLimiter(
                settings.rate_limit_requests, settings.rate_limit_window_seconds
            ),
            tracer=tracer,
            rules=rules,
            layout=layout,
            vision=vision,
            review_queue=review_queue,
            orchestrator=ExtractionOrchestrator(
                store, rules, [layout, vision], review_queue, settings, tracer=tracer
            ),
            corrections=CorrectionCapture(store),
            patterns=PatternAnalyzer(store, settings),
            ensemble=RiskEnsemble(store, settings, cache=cache),
            trainer=TrainingService(store, settings, tracer=tracer),
        )

    async def startup(self) -> None:
        """Load rules and tracing up front so configuration errors surface at boot."""
        configure_langsmith(self.settings)
        rule_set = self.rules.rule_set()
        logger.info(
            f"ComplyFlow started: {len(rule_set.validation_rules)} validation rule(s), "
            f"{len(rule_set.outcome_rules)} outcome rule(s); "
            f"tier 1 {'configured' if self.layout.is_configured() else 'not configured'}, "
            f"tier 2 {'configured' if self.vision.is_configured() else 'not configured'}"
        )

    async def shutdown(self) -> None:
        await self.layout.close()
        await self.vision.close()
        self.cache.clear()
        logger.info("ComplyFlow stopped")

    def trigger_pattern_analysis(self, caller_id: str, org_id: str) -> PatternAnalysisResult:
        """
        Operator-triggered pattern analysis.

        Raises:
            RateLimitExceeded: Caller exceeded the trigger window
        """
        self.rate_limiter.hit(f"patterns:{caller_id}")
        return self.patterns.run_pattern_analysis(org_id)

    def trigger_training(
        self,
        caller_id: str,
        org_id: str,
        hyperparameters: Optional[Hyperparameters] = None,
        auto_promote: bool = False,
    ) -> TrainingResult:
        """
        Operator-triggered model training.

        Raises:
            RateLimitExceeded: Caller exceeded the trigger window
            TrainingInProgressError: A training run is already active for the org
        """
        self.rate_limiter.hit(f"training:{caller_id}")
        return self.trainer.train(org_id, hyperparameters, auto_promote=auto_promote)
