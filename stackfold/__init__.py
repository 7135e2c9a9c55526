"""Collapse DTrace stack samples into folded stack lines for flame graphs."""

__version__ = "0.1.0"