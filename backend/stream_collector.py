"""
Binary-stream artifact collector.

Alternate completion path for graphs that end in a SaveImageWebsocket
node: the remote pushes the finished image as a binary websocket frame
(8-byte type/format header + encoded image) on the same channel as the
JSON execution events. Frames are kept only while the capture node is the
node currently executing.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from backend.comfyui_utils import CAPTURE_NODE_ID
from backend.event_channel import EventChannel, ExecutionEvent, Frame, WebSocketChannel, parse_event

logger = logging.getLogger("comfyui.stream")

# Remote framing: 4-byte event type + 4-byte image format
FRAME_HEADER_SIZE = 8


def sniff_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"RIFF") and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


@dataclass
class CapturedImage:
    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_payload(cls, data: bytes) -> "CapturedImage":
        return cls(data=data, mime_type=sniff_mime(data))

    @property
    def data_url(self) -> str:
        """Self-contained URL for the image bytes."""
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


@dataclass
class StreamResult:
    job_id: str
    images: List[CapturedImage] = field(default_factory=list)
    # False when the channel closed before the completion sentinel
    confirmed: bool = True

    @property
    def image_urls(self) -> List[str]:
        return [img.data_url for img in self.images]


class _StreamRun:
    """State of one collector run (one channel, one job)."""

    def __init__(self, capture_node_id: str, header_size: int,
                 on_event: Optional[Callable[[ExecutionEvent], Any]],
                 on_error: Optional[Callable[[Exception], Any]]):
        self.capture_node_id = capture_node_id
        self.header_size = header_size
        self.on_event = on_event
        self.on_error = on_error
        self.job_id: Optional[str] = None
        self.current_node_id = ""
        self.images: List[CapturedImage] = []
        self.pending: List[Frame] = []
        self.closed_early = False
        self.done: asyncio.Future = asyncio.get_event_loop().create_future()

    def set_job(self, job_id: str):
        self.job_id = job_id
        pending, self.pending = self.pending, []
        for frame in pending:
            if self.done.done():
                break
            self._process(frame)
        if self.closed_early:
            self.on_close()

    def on_frame(self, frame: Frame):
        if self.job_id is None:
            # job id unknown until submit() returns; keep order for replay
            self.pending.append(frame)
            return
        if not self.done.done():
            self._process(frame)

    def _process(self, frame: Frame):
        try:
            if isinstance(frame, (bytes, bytearray)):
                self._on_binary(bytes(frame))
            else:
                self._on_text(frame)
        except Exception as e:
            self._report(e)

    def _on_text(self, frame: str):
        event = parse_event(frame)
        if event is None:
            logger.debug("Dropping malformed event frame")
            return
        if self.on_event:
            self.on_event(event)
        if event.type != "executing" or event.job_id != self.job_id:
            return
        if event.node_id is not None:
            self.current_node_id = event.node_id
        if event.finished:
            self._resolve(True)

    def _on_binary(self, frame: bytes):
        if self.current_node_id != self.capture_node_id:
            return
        payload = frame[self.header_size:]
        if not payload:
            logger.debug(f"Skipping empty binary frame (len={len(frame)})")
            return
        self.images.append(CapturedImage.from_payload(payload))
        logger.debug(f"Captured {len(payload)} bytes from node {self.capture_node_id}")

    def _report(self, error: Exception):
        if self.on_error:
            try:
                self.on_error(error)
            except Exception:
                logger.exception("Stream error callback failed")
        else:
            logger.warning(f"Frame processing failed: {error}")

    def on_close(self, code=None, reason=""):
        if self.job_id is None:
            # resolved in set_job() once the buffered frames are replayed
            self.closed_early = True
            return
        if not self.done.done():
            logger.warning(f"Channel closed before job {self.job_id} finished; "
                           f"returning {len(self.images)} captured image(s)")
        self._resolve(False)

    def _resolve(self, confirmed: bool):
        if not self.done.done():
            self.done.set_result(confirmed)


class BinaryStreamCollector:
    """Submit a graph and collect the images its capture node streams back."""

    def __init__(self, client, channel_factory: Callable[[], EventChannel] = WebSocketChannel,
                 header_size: int = FRAME_HEADER_SIZE):
        self.client = client
        self.channel_factory = channel_factory
        self.header_size = header_size

    async def run(self, graph: Dict[str, Any], capture_node_id: str = CAPTURE_NODE_ID,
                  on_event: Optional[Callable[[ExecutionEvent], Any]] = None,
                  on_error: Optional[Callable[[Exception], Any]] = None,
                  timeout: Optional[float] = None) -> StreamResult:
        """
        Open the channel, submit `graph`, and wait for its completion sentinel.

        An unexpected close (or `timeout`) returns whatever was captured so
        far with confirmed=False. A rejected submission closes the channel
        and re-raises SubmissionError.
        """
        run = _StreamRun(capture_node_id, self.header_size, on_event, on_error)
        channel = self.channel_factory()
        channel.on_message.connect(run.on_frame)
        channel.on_close.connect(run.on_close)

        try:
            await channel.open(self.client.event_url())
            submission = await self.client.submit(graph)
            run.set_job(submission.job_id)

            try:
                confirmed = await asyncio.wait_for(asyncio.shield(run.done), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Stream for job {run.job_id} timed out after {timeout}s")
                confirmed = False
        finally:
            if channel.is_open:
                await channel.close()
            channel.on_message.disconnect(run.on_frame)
            channel.on_close.disconnect(run.on_close)

        logger.info(f"Job {run.job_id} streamed {len(run.images)} image(s) (confirmed={confirmed})")
        return StreamResult(job_id=run.job_id, images=list(run.images), confirmed=confirmed)
