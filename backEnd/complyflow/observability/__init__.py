"""Observability module for LangSmith tracing."""

from .tracing import ComplyTracer, get_tracer, traced

__all__ = ["ComplyTracer", "get_tracer", "traced"]
