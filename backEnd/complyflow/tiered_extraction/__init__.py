"""
Tiered certificate extraction.

Tiers:
1. Azure Document Intelligence layout analysis
2. Vision model
3. Human review queue
"""

from .azure_di import LayoutAnalysisAdapter
from .base import TierAdapter, TierContext
from .human_review import HumanReviewAdapter
from .orchestrator import ExtractionOrchestrator
from .vision import VisionModelAdapter

__all__ = [
    "ExtractionOrchestrator",
    "HumanReviewAdapter",
    "LayoutAnalysisAdapter",
    "TierAdapter",
    "TierContext",
    "VisionModelAdapter",
]
