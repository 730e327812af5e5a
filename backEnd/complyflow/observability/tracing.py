"""
LangSmith integration for pipeline observability.

Provides:
- Trace configuration from settings
- A tracer with ComplyFlow-specific events (tier attempts, run transitions,
  training runs, errors)
- A decorator for tracing sync and async functions

Every method is a no-op when LANGCHAIN_API_KEY is not set.
"""

import asyncio
import os
from contextlib import contextmanager
from functools import lru_cache, wraps
from typing import Any, Callable, Optional, TypeVar

from langsmith import Client
from langsmith.run_trees import RunTree

from ..config.settings import Settings, get_settings


F = TypeVar("F", bound=Callable[..., Any])


def configure_langsmith(settings: Optional[Settings] = None) -> Optional[Client]:
    """
    Configure LangSmith from settings.

    Returns:
        LangSmith client if configured, None otherwise
    """
    settings = settings or get_settings()

    if not settings.is_langsmith_configured():
        return None

    os.environ["LANGCHAIN_TRACING_V2"] = str(settings.langchain_tracing_v2).lower()
    os.environ["LANGCHAIN_PROJECT"] = settings.langchain_project
    os.environ["LANGCHAIN_API_KEY"] = settings.langchain_api_key

    return Client()


class ComplyTracer:
    """Tracer for extraction, learning and risk events."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()
        self._client: Optional[Client] = None
        self._configured = False
        self._project: str = self._settings.langchain_project

    @property
    def client(self) -> Optional[Client]:
        """Lazy-load LangSmith client."""
        if not self._configured:
            self._client = configure_langsmith(self._settings)
            self._configured = True
        return self._client

    @property
    def is_enabled(self) -> bool:
        return self.client is not None

    @contextmanager
    def span(self, name: str, run_type: str = "chain", **metadata):
        """
        Create a trace span with metadata.

        Args:
            name: Span name
            run_type: LangSmith run type (chain, tool, llm, etc.)
            **metadata: Additional metadata to attach

        Yields:
            RunTree object for the span, or None when tracing is off
        """
        if not self.is_enabled:
            yield None
            return

        run = RunTree(
            name=name,
            run_type=run_type,
            extra=metadata,
            project_name=self._project,
        )

        try:
            yield run
            run.end()
            run.post()
        except Exception as e:
            run.end(error=str(e))
            run.post()
            raise

    def log_tier_attempt(
        self,
        run_id: str,
        tier: int,
        adapter: str,
        succeeded: bool,
        confidence: float,
        error: Optional[str] = None,
    ) -> None:
        """Record one tier invocation."""
        if not self.is_enabled:
            return

        self.client.create_run(
            name=f"tier{tier}_{adapter}",
            run_type="tool",
            project_name=self._project,
            inputs={"run_id": run_id, "tier": tier},
            outputs={"succeeded": succeeded, "confidence": confidence},
            error=error,
        )

    def log_run_transition(
        self,
        run_id: str,
        from_status: str,
        to_status: str,
        reason: Optional[str] = None,
    ) -> None:
        """
        Log an extraction run status transition.

        Args:
            run_id: Extraction run ID
            from_status: Previous status
            to_status: New status
            reason: Short explanation of the decision
        """
        if not self.is_enabled:
            return

        self.client.create_run(
            name="run_transition",
            run_type="chain",
            project_name=self._project,
            inputs={"run_id": run_id, "from_status": from_status},
            outputs={"to_status": to_status, "reason": reason},
        )

    def log_training_run(
        self,
        org_id: str,
        model_version: str,
        benchmark_score: float,
        passed: bool,
        samples: int,
    ) -> None:
        if not self.is_enabled:
            return

        self.client.create_run(
            name="risk_model_training",
            run_type="chain",
            project_name=self._project,
            inputs={"org_id": org_id, "samples": samples},
            outputs={
                "model_version": model_version,
                "benchmark_score": benchmark_score,
                "passed": passed,
            },
        )

    def log_error(
        self,
        error: Exception,
        context: dict[str, Any],
    ) -> None:
        """
        Log an error for debugging.

        Args:
            error: The exception that occurred
            context: Additional context about the error
        """
        if not self.is_enabled:
            return

        self.client.create_run(
            name="error",
            run_type="chain",
            project_name=self._project,
            inputs=context,
            outputs={
                "error_type": type(error).__name__,
                "error_message": str(error),
            },
            error=str(error),
        )


@lru_cache()
def get_tracer() -> ComplyTracer:
    """Get singleton tracer instance."""
    return ComplyTracer()


def traced(name: Optional[str] = None, run_type: str = "chain"):
    """
    Decorator for tracing functions.

    Example:
        @traced("pattern_analysis")
        def run_pattern_analysis(org_id: str) -> AnalysisReport:
            ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__name__

        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                with get_tracer().span(span_name, run_type=run_type):
                    return await func(*args, **kwargs)

            return async_wrapper  # type: ignore

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            with get_tracer().span(span_name, run_type=run_type):
                return func(*args, **kwargs)

        return sync_wrapper  # type: ignore

    return decorator
