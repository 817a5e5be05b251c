"""LLM-backed fallback classification."""

from .ai_fallback import AiCaseClassifier, AiFallbackError, AiSuggestion
from .llm import LLMClient, LLMError, OllamaClient

__all__ = [
    "AiCaseClassifier",
    "AiFallbackError",
    "AiSuggestion",
    "LLMClient",
    "LLMError",
    "OllamaClient",
]
