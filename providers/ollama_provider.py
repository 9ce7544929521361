"""
Ollama Provider - vision/language calls against the Ollama API.

Only the non-streaming chat call, model listing and a health check are
needed: the puzzle pipeline uses the vision model to look at the source
image before generating pieces.
"""

import logging
from dataclasses import dataclass, replace
from typing import List, Optional, Dict, Any

import aiohttp

from .base import ChatMessage, ChatResponse, VisionServiceError, strip_data_url

logger = logging.getLogger("providers.ollama")


@dataclass(frozen=True)
class OllamaConfig:
    base_url: str = "http://localhost:11434"
    model: str = "llava"
    timeout: float = 60.0

    @classmethod
    def from_settings(cls, settings, model_key: str = "ollama.vision_model") -> "OllamaConfig":
        """Config for the model under `model_key`, falling back to ollama.default_model."""
        return cls(
            base_url=settings.get("ollama.base_url", cls.base_url),
            model=settings.get(model_key) or settings.get("ollama.default_model") or cls.model,
            timeout=float(settings.get("ollama.timeout", cls.timeout)),
        )


class OllamaVisionClient:
    """
    Client value for one Ollama model.

    The configuration is frozen. Switching models goes through
    with_model(), which returns a new client; a request already running on
    the old client keeps its model. Clients derived with with_model() share
    the HTTP session, which is closed by whoever created it.
    """

    def __init__(self, config: Optional[OllamaConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.config = config or OllamaConfig()
        self._session = session
        self._owns_session = session is None

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    def with_model(self, model: str) -> "OllamaVisionClient":
        client = OllamaVisionClient(replace(self.config, model=model), session=self._session)
        # Shares our session if we already have one; otherwise it creates its own.
        client._owns_session = self._session is None
        return client

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.post(
                f"{self.base_url}{path}",
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise VisionServiceError(
                        f"Ollama {path} returned {response.status}: {error_text[:300]}",
                        status=response.status, body=error_text,
                    )
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise VisionServiceError(f"Cannot reach Ollama at {self.base_url}: {e}") from e

    async def chat(self, messages: List[ChatMessage]) -> ChatResponse:
        """Single non-streaming /api/chat call."""
        data = await self._post("/api/chat", {
            "model": self.config.model,
            "messages": [m.to_dict() for m in messages],
            "stream": False,
        })
        message = data.get("message") or {}
        return ChatResponse(
            content=message.get("content", ""),
            model=data.get("model", self.config.model),
            role=message.get("role", "assistant"),
            raw=data,
        )

    async def generate(self, prompt: str, images: Optional[List[str]] = None) -> str:
        payload = {"model": self.config.model, "prompt": prompt, "stream": False}
        if images:
            payload["images"] = [strip_data_url(img) for img in images]
        data = await self._post("/api/generate", payload)
        return data.get("response", "")

    async def analyze_image(self, image_base64: str, prompt: str) -> str:
        """Ask the vision model about one image; returns the reply text."""
        response = await self.chat([ChatMessage(role="user", content=prompt, images=[image_base64])])
        logger.info(f"Vision analysis by {response.model}: {len(response.content)} chars")
        return response.content

    async def list_models(self) -> List[Dict[str, Any]]:
        session = await self._get_session()
        try:
            async with session.get(
                f"{self.base_url}/api/tags",
                timeout=aiohttp.ClientTimeout(total=10),
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise VisionServiceError(
                        f"Ollama /api/tags returned {response.status}",
                        status=response.status, body=error_text,
                    )
                data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise VisionServiceError(f"Cannot reach Ollama at {self.base_url}: {e}") from e

        return [
            {"name": m.get("name", ""), "size": m.get("size", 0)}
            for m in data.get("models", [])
        ]

    async def health_check(self) -> bool:
        try:
            await self.list_models()
            return True
        except VisionServiceError:
            return False
