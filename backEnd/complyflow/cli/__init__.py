"""Command-line interface for ComplyFlow."""
