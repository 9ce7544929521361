"""
Execution event tracking.

One ChannelSession owns the event channel of a correlation id; any number
of ExecutionTrackers (one per job id) observe it. Each tracker is a small
state machine:

    AWAITING_CONNECTION -> LISTENING -> COMPLETED       (sentinel seen)
                                     -> CHANNEL_CLOSED  (channel ended first)

CHANNEL_CLOSED still resolves the tracker so callers never hang, but the
outcome is unconfirmed: the job may have finished, failed or still be
running. Check history before trusting it.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from backend.comfyui_errors import ChannelAmbiguousCompletion
from backend.event_channel import EventChannel, ExecutionEvent, Frame, WebSocketChannel, parse_event

logger = logging.getLogger("comfyui.tracker")

NodeCallback = Callable[[str], None]


class TrackerState(Enum):
    AWAITING_CONNECTION = "awaiting_connection"
    LISTENING = "listening"
    COMPLETED = "completed"
    CHANNEL_CLOSED = "channel_closed"


TERMINAL_STATES = (TrackerState.COMPLETED, TrackerState.CHANNEL_CLOSED)


@dataclass
class TrackingOutcome:
    job_id: str
    state: TrackerState
    nodes_seen: List[str] = field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return self.state == TrackerState.COMPLETED

    def raise_if_unconfirmed(self):
        if not self.confirmed:
            raise ChannelAmbiguousCompletion(self.job_id)


class ExecutionTracker:
    """Tracks one job id on a shared channel."""

    def __init__(self, job_id: str, on_node: Optional[NodeCallback] = None):
        self.job_id = job_id
        self.on_node = on_node
        self.state = TrackerState.AWAITING_CONNECTION
        self.nodes_seen: List[str] = []
        self._future: asyncio.Future = asyncio.get_event_loop().create_future()

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def mark_listening(self):
        if self.state == TrackerState.AWAITING_CONNECTION:
            self.state = TrackerState.LISTENING

    def handle_event(self, event: ExecutionEvent):
        if self.done or event.job_id != self.job_id or event.type != "executing":
            return
        if event.finished:
            self._resolve(TrackerState.COMPLETED)
        elif event.node_id is not None:
            self.nodes_seen.append(event.node_id)
            if self.on_node:
                try:
                    self.on_node(event.node_id)
                except Exception:
                    logger.exception(f"Node callback failed for job {self.job_id}")

    def handle_close(self):
        if not self.done:
            logger.warning(f"Channel closed before job {self.job_id} reported completion")
            self._resolve(TrackerState.CHANNEL_CLOSED)

    def _resolve(self, state: TrackerState):
        self.state = state
        if not self._future.done():
            self._future.set_result(TrackingOutcome(self.job_id, state, list(self.nodes_seen)))

    async def wait(self, timeout: Optional[float] = None) -> TrackingOutcome:
        """Await the terminal outcome. A timeout leaves the tracker untouched."""
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)


class ChannelSession:
    """
    Shared event channel for one correlation id.

    Events for job ids nobody tracks yet are buffered briefly so a job that
    finishes before its submission call returns is still observed.
    """

    MAX_UNCLAIMED_JOBS = 64

    def __init__(self, channel: EventChannel, url: str):
        self.channel = channel
        self.url = url
        self._trackers: Dict[str, List[ExecutionTracker]] = {}
        self._unclaimed: "OrderedDict[str, List[ExecutionEvent]]" = OrderedDict()
        self._connected = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connected and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    async def connect(self):
        """Open the channel. Raises ChannelConnectError if the handshake fails."""
        if self._connected or self._closed:
            return
        self.channel.on_message.connect(self._on_message)
        self.channel.on_close.connect(self._on_close)
        try:
            await self.channel.open(self.url)
        except Exception:
            self.channel.on_message.disconnect(self._on_message)
            self.channel.on_close.disconnect(self._on_close)
            raise
        self._connected = True
        for trackers in self._trackers.values():
            for tracker in trackers:
                tracker.mark_listening()
        logger.info(f"Event channel connected: {self.url}")

    def track(self, job_id: str, on_node: Optional[NodeCallback] = None) -> ExecutionTracker:
        tracker = ExecutionTracker(job_id, on_node)
        if self._closed:
            tracker.handle_close()
            return tracker
        if self._connected:
            tracker.mark_listening()
        self._trackers.setdefault(job_id, []).append(tracker)

        for event in self._unclaimed.pop(job_id, []):
            self._dispatch(event)
        return tracker

    def _on_message(self, frame: Frame):
        if isinstance(frame, (bytes, bytearray)):
            return
        event = parse_event(frame)
        if event is None:
            logger.debug("Dropping malformed event frame")
            return
        if event.job_id is None:
            return
        if event.job_id in self._trackers:
            self._dispatch(event)
        elif event.type == "executing":
            self._buffer(event)

    def _dispatch(self, event: ExecutionEvent):
        trackers = self._trackers.get(event.job_id, [])
        for tracker in trackers[:]:
            tracker.handle_event(event)
        if trackers and all(t.done for t in trackers):
            del self._trackers[event.job_id]

    def _buffer(self, event: ExecutionEvent):
        self._unclaimed.setdefault(event.job_id, []).append(event)
        self._unclaimed.move_to_end(event.job_id)
        while len(self._unclaimed) > self.MAX_UNCLAIMED_JOBS:
            self._unclaimed.popitem(last=False)

    def _on_close(self, code=None, reason=""):
        self._closed = True
        logger.info(f"Event channel closed (code={code}, reason={reason!r})")
        trackers = [t for ts in self._trackers.values() for t in ts]
        self._trackers.clear()
        self._unclaimed.clear()
        for tracker in trackers:
            tracker.handle_close()

    async def close(self):
        """Close the channel; every pending tracker resolves as CHANNEL_CLOSED."""
        if self._closed:
            return
        if self._connected:
            await self.channel.close()
        if not self._closed:
            self._on_close(1000, "session closed")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *exc):
        await self.close()


async def wait_until_finished(client, job_id: str,
                              channel_factory: Callable[[], EventChannel] = WebSocketChannel,
                              on_node: Optional[NodeCallback] = None,
                              timeout: Optional[float] = None) -> TrackingOutcome:
    """Open a dedicated channel, wait for one job's sentinel, close the channel."""
    async with ChannelSession(channel_factory(), client.event_url()) as session:
        tracker = session.track(job_id, on_node)
        return await tracker.wait(timeout)
