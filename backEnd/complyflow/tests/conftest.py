"""Shared fixtures: isolated settings, in-memory store, fake tiers, frozen clock."""

import os
from datetime import datetime
from typing import Any, Callable
from unittest.mock import patch

import pytest

from complyflow.config.settings import DEFAULT_RULES_PATH, Settings, get_settings
from complyflow.observability.tracing import ComplyTracer, get_tracer
from complyflow.rules import RuleEngine
from complyflow.storage import InMemoryStore
from complyflow.tiered_extraction import ExtractionOrchestrator, HumanReviewAdapter, TierAdapter
from complyflow.utils import TTLCache

from .factories import FROZEN_NOW


@pytest.fixture(autouse=True)
def isolated_env():
    """Keep real credentials and .env values out of every test."""
    with patch.dict(os.environ, {}, clear=True):
        get_settings.cache_clear()
        get_tracer.cache_clear()
        yield
    get_settings.cache_clear()
    get_tracer.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        poll_interval_seconds=0.0,
        tier_timeout_seconds=2.0,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def frozen_clock() -> Callable[[], datetime]:
    return lambda: FROZEN_NOW


@pytest.fixture
def tracer(settings) -> ComplyTracer:
    return ComplyTracer(settings)


@pytest.fixture
def rule_engine() -> RuleEngine:
    return RuleEngine(DEFAULT_RULES_PATH, TTLCache())


@pytest.fixture
def review_queue(store) -> HumanReviewAdapter:
    return HumanReviewAdapter(store)


@pytest.fixture
def make_orchestrator(store, rule_engine, review_queue, settings, tracer):
    def _make(*adapters: TierAdapter, **overrides: Any) -> ExtractionOrchestrator:
        return ExtractionOrchestrator(
            store,
            rule_engine,
            list(adapters),
            review_queue,
            settings.model_copy(update=overrides) if overrides else settings,
            tracer=tracer,
        )
    return _make
