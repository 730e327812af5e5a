"""Storage boundary and its implementations."""

from .base import ComplianceStore
from .memory import InMemoryStore

__all__ = ["ComplianceStore", "InMemoryStore", "build_store"]


def build_store(backend: str = "memory") -> ComplianceStore:
    """Create the configured store. Firestore is imported only when selected."""
    backend = backend.lower()
    if backend == "memory":
        return InMemoryStore()
    if backend == "firestore":
        from .firestore import FirestoreStore
        return FirestoreStore()
    raise ValueError(f"Unknown store backend: {backend}")
