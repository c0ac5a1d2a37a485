"""Persistent orchestration of multi-step agent sessions."""

__version__ = "0.1.0"
