"""Ollama model provider."""

from .client import OllamaClient

__all__ = ["OllamaClient"]
