"""
Vision/language service client used to inspect the source image.

- Ollama: Local Ollama API at localhost:11434
"""

from .base import (
    ChatMessage,
    ChatResponse,
    VisionServiceError,
)
from .ollama_provider import OllamaConfig, OllamaVisionClient

__all__ = [
    "ChatMessage",
    "ChatResponse",
    "VisionServiceError",
    "OllamaConfig",
    "OllamaVisionClient",
]
