"""Email Triage - smart search over a bucketed inbox.

This package parses natural-language queries into filters, routes them to
structured, semantic or hybrid retrieval, and keeps message embeddings filled
in using local Ollama models.
"""

__version__ = "0.1.0"

from email_triage.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
