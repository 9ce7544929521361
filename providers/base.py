"""
Shared data structures for the vision/language service client.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class VisionServiceError(Exception):
    """The vision service was unreachable or answered with an error."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


def strip_data_url(image: str) -> str:
    """Ollama expects bare base64; drop a data:...;base64, prefix if present."""
    if image.startswith("data:") and "," in image:
        return image.split(",", 1)[1]
    return image


@dataclass
class ChatMessage:
    """A single message in a chat conversation."""
    role: str  # "system", "user", "assistant"
    content: str
    # Base64 images for vision models
    images: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for /api/chat."""
        message = {"role": self.role, "content": self.content}
        if self.images:
            message["images"] = [strip_data_url(img) for img in self.images]
        return message


@dataclass
class ChatResponse:
    content: str
    model: str = ""
    role: str = "assistant"
    raw: Dict[str, Any] = field(default_factory=dict)
