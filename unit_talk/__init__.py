"""Unit Talk agent supervision and resilience framework."""

__version__ = "0.1.0"
