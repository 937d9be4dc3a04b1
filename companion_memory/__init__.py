"""Cognitive memory and proactive engagement engine for an AI companion."""

__version__ = "0.1.0"
