"""
WebSocketChannel against a local websockets server.
"""

import asyncio
import json
import os
import socket
import sys
import unittest

import websockets

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend.comfyui_errors import ChannelConnectError
from backend.event_channel import WebSocketChannel, parse_event

STATUS = json.dumps({"type": "status", "data": {"status": {"exec_info": {"queue_remaining": 0}}}})
IMAGE = b"\x00\x00\x00\x01\x00\x00\x00\x02\x89PNG"


def free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class Recorder:
    """Collects channel frames and close notifications."""

    def __init__(self, channel, expected_frames=0):
        self.frames = []
        self.closes = []
        self.expected_frames = expected_frames
        self.got_frames = asyncio.Event()
        self.got_close = asyncio.Event()
        channel.on_message.connect(self._on_message)
        channel.on_close.connect(self._on_close)

    def _on_message(self, frame):
        self.frames.append(frame)
        if len(self.frames) >= self.expected_frames:
            self.got_frames.set()

    def _on_close(self, code, reason):
        self.closes.append((code, reason))
        self.got_close.set()


class TestWebSocketChannel(unittest.IsolatedAsyncioTestCase):

    async def serve(self, handler):
        server = await websockets.serve(handler, "127.0.0.1", 0)
        self.addAsyncCleanup(server.wait_closed)
        self.addCleanup(server.close)
        port = next(iter(server.sockets)).getsockname()[1]
        return f"ws://127.0.0.1:{port}/ws?clientId=test-client"

    async def test_delivers_text_and_binary_frames(self):
        async def handler(ws):
            await ws.send(STATUS)
            await ws.send(IMAGE)
            async for message in ws:
                await ws.send(f"echo:{message}")

        url = await self.serve(handler)
        channel = WebSocketChannel(open_timeout=2)
        recorder = Recorder(channel, expected_frames=2)
        await channel.open(url)
        self.assertTrue(channel.is_open)

        await asyncio.wait_for(recorder.got_frames.wait(), 2)
        self.assertEqual(recorder.frames[0], STATUS)
        self.assertEqual(parse_event(recorder.frames[0]).type, "status")
        self.assertIsInstance(recorder.frames[1], bytes)
        self.assertEqual(recorder.frames[1], IMAGE)

        recorder.got_frames.clear()
        recorder.expected_frames = 3
        await channel.send("hello")
        await asyncio.wait_for(recorder.got_frames.wait(), 2)
        self.assertEqual(recorder.frames[2], "echo:hello")

        await channel.close()
        await channel.close()
        self.assertEqual(len(recorder.closes), 1)
        self.assertEqual(recorder.closes[0][0], 1000)
        self.assertFalse(channel.is_open)

    async def test_server_close_fires_once(self):
        async def handler(ws):
            await ws.send(STATUS)
            await ws.close(1001, "going away")

        url = await self.serve(handler)
        channel = WebSocketChannel(open_timeout=2)
        recorder = Recorder(channel)
        await channel.open(url)

        await asyncio.wait_for(recorder.got_close.wait(), 2)
        self.assertEqual(recorder.frames, [STATUS])
        self.assertEqual(recorder.closes[0][0], 1001)
        self.assertFalse(channel.is_open)

        await channel.close()
        self.assertEqual(len(recorder.closes), 1)

    async def test_refused_connection(self):
        channel = WebSocketChannel(open_timeout=2)
        recorder = Recorder(channel)
        with self.assertRaises(ChannelConnectError):
            await channel.open(f"ws://127.0.0.1:{free_port()}/ws")
        self.assertFalse(channel.is_open)
        self.assertEqual(recorder.closes, [])

    async def test_invalid_url(self):
        channel = WebSocketChannel(open_timeout=2)
        with self.assertRaises(ChannelConnectError):
            await channel.open("http://comfy.test:8188/ws")

    async def test_send_before_open(self):
        with self.assertRaises(ChannelConnectError):
            await WebSocketChannel().send("hello")


if __name__ == "__main__":
    unittest.main()
