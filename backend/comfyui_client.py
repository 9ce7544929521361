"""
ComfyUI REST client.

One client value per session: it owns the correlation id that scopes the
event channel, plus a pooled httpx.AsyncClient. The configuration is
frozen; with_config() returns a new client instead of mutating this one,
so a reconfiguration never races an in-flight request.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, quote

import httpx

from backend.comfyui_errors import ComfyUIError, ComfyUIConnectionError, SubmissionError
from backend.identity import new_client_id

logger = logging.getLogger("comfyui.client")


@dataclass(frozen=True)
class ComfyUIConfig:
    base_url: str = "http://127.0.0.1:8188"
    ws_url: Optional[str] = None  # None = derived from base_url
    timeout: float = 120.0

    @classmethod
    def from_settings(cls, settings) -> "ComfyUIConfig":
        return cls(
            base_url=settings.get("comfyui.base_url", cls.base_url),
            ws_url=settings.get("comfyui.ws_url"),
            timeout=float(settings.get("comfyui.timeout", cls.timeout)),
        )


@dataclass
class JobSubmission:
    """Result of POST /prompt. job_id keys every later tracking call."""
    job_id: str
    queue_position: int = 0
    node_errors: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UploadedImage:
    filename: str
    subfolder: str = ""
    type: str = "input"


class ComfyUIClient:
    """Async client for the ComfyUI graph-execution API."""

    def __init__(self, config: Optional[ComfyUIConfig] = None,
                 client_id: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or ComfyUIConfig()
        self._client_id = client_id or new_client_id()
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def base_url(self) -> str:
        return self.config.base_url.rstrip("/")

    def with_config(self, **changes) -> "ComfyUIClient":
        """Return a new client with a modified configuration (and its own correlation id)."""
        return ComfyUIClient(replace(self.config, **changes), transport=self._transport)

    # ------------------------------------------------------------------ #
    # HTTP plumbing
    # ------------------------------------------------------------------ #

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client (connection pooling)."""
        if self._http_client is None or self._http_client.is_closed:
            kwargs = {}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.config.timeout,
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                **kwargs,
            )
        return self._http_client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ComfyUIConnectionError(f"{method} {path} timed out", {"error": str(e)}) from e
        except httpx.TransportError as e:
            raise ComfyUIConnectionError(
                f"Cannot connect to ComfyUI at {self.base_url}: {e}", {"error": str(e)}
            ) from e

    @staticmethod
    def _check(r: httpx.Response, what: str):
        if r.status_code >= 400:
            raise ComfyUIError(
                f"{what} failed: {r.status_code} {r.text[:500]}",
                {"status": r.status_code, "body": r.text},
            )

    async def close(self):
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    # ------------------------------------------------------------------ #
    # Queue
    # ------------------------------------------------------------------ #

    async def submit(self, graph: Dict[str, Any]) -> JobSubmission:
        """Queue a graph under this client's correlation id. Does not wait for execution."""
        r = await self._request("POST", "/prompt", json={"prompt": graph, "client_id": self._client_id})
        if r.status_code < 200 or r.status_code >= 300:
            logger.warning(f"/prompt rejected with {r.status_code}")
            raise SubmissionError(r.status_code, r.text)

        try:
            data = r.json()
        except ValueError as e:
            raise SubmissionError(r.status_code, r.text) from e
        job_id = data.get("prompt_id") if isinstance(data, dict) else None
        if not job_id:
            raise SubmissionError(r.status_code, r.text)

        submission = JobSubmission(
            job_id=str(job_id),
            queue_position=int(data.get("number") or 0),
            node_errors=data.get("node_errors") or {},
        )
        logger.info(f"Queued job {submission.job_id} at position {submission.queue_position}")
        return submission

    async def get_history(self, job_id: Optional[str] = None) -> Dict[str, Any]:
        path = f"/history/{quote(job_id, safe='')}" if job_id else "/history"
        r = await self._request("GET", path)
        self._check(r, f"GET {path}")
        return r.json()

    async def get_queue(self) -> Dict[str, List[Any]]:
        r = await self._request("GET", "/queue")
        self._check(r, "GET /queue")
        return r.json()

    @staticmethod
    def queue_length(queue: Optional[Dict[str, Any]]) -> int:
        if not queue:
            return 0
        return len(queue.get("queue_running") or []) + len(queue.get("queue_pending") or [])

    async def interrupt(self):
        """Interrupt whatever job the remote is executing right now (not necessarily ours)."""
        r = await self._request("POST", "/interrupt")
        self._check(r, "POST /interrupt")
        logger.info("Sent interrupt to ComfyUI")

    # ------------------------------------------------------------------ #
    # Files
    # ------------------------------------------------------------------ #

    def view_url(self, filename: str, subfolder: str = "", type: str = "output") -> str:
        query = urlencode({"filename": filename, "subfolder": subfolder or "", "type": type or "output"})
        return f"{self.base_url}/view?{query}"

    async def fetch_image(self, filename: str, subfolder: str = "", type: str = "output") -> bytes:
        r = await self._request(
            "GET", "/view",
            params={"filename": filename, "subfolder": subfolder or "", "type": type or "output"},
        )
        self._check(r, f"GET /view {filename}")
        return r.content

    async def upload_image(self, data: bytes, filename: str, subfolder: str = "",
                           type: str = "input", content_type: str = "image/png") -> UploadedImage:
        """Upload image bytes into the remote's input folder."""
        r = await self._request(
            "POST", "/upload/image",
            files={"image": (filename, data, content_type)},
            data={"subfolder": subfolder, "type": type},
        )
        self._check(r, "POST /upload/image")
        body = r.json()
        return UploadedImage(
            filename=body.get("name") or filename,
            subfolder=body.get("subfolder") or "",
            type=body.get("type") or type,
        )

    async def bring_output_to_input(self, filename: str, subfolder: str = "") -> UploadedImage:
        """Copy an output image into the input root so another graph can load it."""
        data = await self.fetch_image(filename, subfolder, "output")
        return await self.upload_image(data, filename, subfolder="")

    # ------------------------------------------------------------------ #
    # Health / event channel
    # ------------------------------------------------------------------ #

    async def system_stats(self) -> Dict[str, Any]:
        r = await self._request("GET", "/system_stats")
        self._check(r, "GET /system_stats")
        return r.json()

    async def health_check(self) -> bool:
        try:
            r = await self._request("GET", "/system_stats")
            return r.status_code == 200
        except ComfyUIConnectionError:
            return False

    def event_url(self) -> str:
        """Websocket URL of the event channel for this client's correlation id."""
        query = urlencode({"clientId": self._client_id})
        if self.config.ws_url:
            base = self.config.ws_url.rstrip("/")
            return f"{base}?{query}"
        parts = urlsplit(self.base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        path = parts.path.rstrip("/") + "/ws"
        return urlunsplit((scheme, parts.netloc, path, query, ""))
