"""Persistence and domain types for the metered LLM gateway."""

__version__ = "0.1.0"
