"""
Event channel abstraction.

ComfyUI pushes execution events (JSON text frames) and raw image bytes
(binary frames) over one websocket per client id. Consumers never talk to
the socket directly: they connect to an EventChannel's on_message and
on_close signals, so trackers and collectors can be driven by an
in-memory channel in tests.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

import websockets

from backend.comfyui_errors import ChannelConnectError
from core.signals import Signal

logger = logging.getLogger("comfyui.channel")

Frame = Union[str, bytes]


@dataclass
class ExecutionEvent:
    """A parsed text frame."""
    type: str
    job_id: Optional[str] = None
    node_id: Optional[str] = None
    # True only for {"type": "executing", "data": {"node": null}}
    finished: bool = False
    data: Dict[str, Any] = field(default_factory=dict)


def parse_event(payload: Frame) -> Optional[ExecutionEvent]:
    """Parse a text frame; returns None for anything malformed."""
    if isinstance(payload, (bytes, bytearray)):
        return None
    try:
        message = json.loads(payload)
    except (ValueError, TypeError):
        return None
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        return None

    data = message.get("data")
    if not isinstance(data, dict):
        data = {}
    job_id = data.get("prompt_id")
    node = data.get("node")
    return ExecutionEvent(
        type=message["type"],
        job_id=str(job_id) if job_id is not None else None,
        node_id=str(node) if node is not None else None,
        finished=message["type"] == "executing" and "node" in data and node is None,
        data=data,
    )


class EventChannel(ABC):
    """
    A persistent bidirectional message channel.

    on_message is emitted with each frame (str for text, bytes for binary).
    on_close is emitted exactly once with (code, reason) when the channel
    ends for any reason, including close().
    """

    def __init__(self):
        self.on_message = Signal("channel_message")
        self.on_close = Signal("channel_close")

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass

    @abstractmethod
    async def open(self, url: str):
        """Complete the open handshake. Raises ChannelConnectError on failure."""
        pass

    @abstractmethod
    async def send(self, data: Frame):
        pass

    @abstractmethod
    async def close(self):
        pass


ChannelFactory = Callable[[], EventChannel]


class WebSocketChannel(EventChannel):
    """EventChannel backed by the websockets client."""

    def __init__(self, open_timeout: float = 10.0, max_size: Optional[int] = None):
        super().__init__()
        self.open_timeout = open_timeout
        self.max_size = max_size
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closed_emitted = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed_emitted

    async def open(self, url: str):
        try:
            self._ws = await websockets.connect(url, open_timeout=self.open_timeout, max_size=self.max_size)
        except (OSError, asyncio.TimeoutError, websockets.InvalidHandshake, websockets.InvalidURI) as e:
            raise ChannelConnectError(f"Event channel handshake failed for {url}: {e}") from e
        logger.debug(f"Event channel open: {url}")
        self._reader_task = asyncio.create_task(self._reader_loop())

    async def _reader_loop(self):
        code, reason = None, ""
        try:
            async for message in self._ws:
                self.on_message.emit(message)
        except websockets.ConnectionClosed as e:
            logger.debug(f"Event channel closed abnormally: {e}")
        finally:
            if self._ws is not None:
                code = getattr(self._ws, "close_code", None)
                reason = getattr(self._ws, "close_reason", "") or ""
            self._emit_close(code, reason)

    def _emit_close(self, code, reason):
        if self._closed_emitted:
            return
        self._closed_emitted = True
        self.on_close.emit(code, reason)

    async def send(self, data: Frame):
        if self._ws is None:
            raise ChannelConnectError("Event channel is not open")
        await self._ws.send(data)

    async def close(self):
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._emit_close(1000, "closed by client")
