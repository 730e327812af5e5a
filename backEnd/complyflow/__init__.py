"""
ComplyFlow - adaptive compliance certificate pipeline.

Turns scanned compliance certificates into validated structured data through
tiered extraction, learns from human corrections, and predicts which
properties are heading for a compliance breach.
"""

__version__ = "0.1.0"
