"""
In-memory stand-ins for ComfyUI: an httpx.MockTransport-backed REST
server and an EventChannel driven by hand. No network is touched.
"""

import json
import os
import sys

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend.comfyui_client import ComfyUIClient, ComfyUIConfig
from backend.comfyui_errors import ChannelConnectError
from backend.event_channel import EventChannel

BASE_URL = "http://comfy.test:8188"
CLIENT_ID = "test-client"


def executing(job_id, node):
    return json.dumps({"type": "executing", "data": {"prompt_id": job_id, "node": node}})


def binary_frame(payload: bytes) -> bytes:
    # 4-byte event type + 4-byte image format, as ComfyUI sends them
    return b"\x00\x00\x00\x01\x00\x00\x00\x02" + payload


def history_entry(*filenames, node_id="7", subfolder="", status="success"):
    return {
        "outputs": {
            node_id: {"images": [{"filename": f, "subfolder": subfolder, "type": "output"} for f in filenames]}
        },
        "status": {"status_str": status, "completed": True, "messages": []},
    }


class FakeChannel(EventChannel):
    """EventChannel whose frames are pushed by the test."""

    def __init__(self, fail_open=False):
        super().__init__()
        self.fail_open = fail_open
        self.url = None
        self.sent = []
        self.open_count = 0
        self.close_count = 0
        self._open = False

    @property
    def is_open(self):
        return self._open

    async def open(self, url):
        self.open_count += 1
        if self.fail_open:
            raise ChannelConnectError(f"refused: {url}")
        self.url = url
        self._open = True

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.close_count += 1
        if self._open:
            self._open = False
            self.on_close.emit(1000, "closed by client")

    def push(self, frame):
        self.on_message.emit(frame)

    def drop(self, code=1006, reason="abnormal closure"):
        """Simulate the remote end going away."""
        if self._open:
            self._open = False
            self.on_close.emit(code, reason)


class ChannelFactory:
    """Callable channel factory that remembers every channel it made."""

    def __init__(self, fail_open=False):
        self.fail_open = fail_open
        self.channels = []

    def __call__(self):
        channel = FakeChannel(fail_open=self.fail_open)
        self.channels.append(channel)
        return channel

    @property
    def current(self):
        return self.channels[-1]


class FakeComfyUI:
    """
    Scripted ComfyUI REST API.

    Jobs get ids job-1, job-2, ... in submission order. on_submit(job_id,
    graph) runs inside the /prompt handler, before the response is sent.
    """

    def __init__(self):
        self.submitted = []
        self.history = {}
        self.rejections = {}  # submission index -> (status, body)
        self.on_submit = None
        self.history_failures = 0
        self.history_calls = 0
        self.queue = {"queue_running": [], "queue_pending": []}
        self.interrupts = 0
        self.uploads = []
        self.files = {}
        self.stats_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        method = request.method

        if path == "/prompt" and method == "POST":
            body = json.loads(request.content)
            index = len(self.submitted)
            self.submitted.append(body)
            if index in self.rejections:
                status, text = self.rejections[index]
                return httpx.Response(status, text=text)
            job_id = f"job-{index + 1}"
            if self.on_submit:
                self.on_submit(job_id, body["prompt"])
            return httpx.Response(200, json={"prompt_id": job_id, "number": index, "node_errors": {}})

        if path.startswith("/history") and method == "GET":
            self.history_calls += 1
            if self.history_failures:
                self.history_failures -= 1
                return httpx.Response(500, text="history unavailable")
            job_id = path[len("/history/"):]
            if not job_id:
                return httpx.Response(200, json=self.history)
            if job_id in self.history:
                return httpx.Response(200, json={job_id: self.history[job_id]})
            return httpx.Response(200, json={})

        if path == "/queue" and method == "GET":
            return httpx.Response(200, json=self.queue)

        if path == "/interrupt" and method == "POST":
            self.interrupts += 1
            return httpx.Response(200)

        if path == "/upload/image" and method == "POST":
            self.uploads.append(request.content)
            return httpx.Response(200, json={"name": "uploaded.png", "subfolder": "", "type": "input"})

        if path == "/view" and method == "GET":
            filename = request.url.params.get("filename")
            if filename in self.files:
                return httpx.Response(200, content=self.files[filename])
            return httpx.Response(404, text="not found")

        if path == "/system_stats" and method == "GET":
            return httpx.Response(self.stats_status, json={"system": {"os": "posix"}, "devices": []})

        return httpx.Response(404, text=f"no route {method} {path}")

    def transport(self):
        return httpx.MockTransport(self.handler)

    def client(self, **config):
        return ComfyUIClient(
            ComfyUIConfig(base_url=BASE_URL, **config),
            client_id=CLIENT_ID,
            transport=self.transport(),
        )

    def prompts(self):
        """Graphs in submission order."""
        return [body["prompt"] for body in self.submitted]
