"""Prompt dispatch to CLI and HTTP AI backends with availability-aware fallback."""

__version__ = "0.1.0"
