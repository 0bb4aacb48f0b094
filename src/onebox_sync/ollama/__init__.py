"""Email classification through a local Ollama server."""

from .client import OllamaClassifier

__all__ = ["OllamaClassifier"]
