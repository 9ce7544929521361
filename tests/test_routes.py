"""
Route tests with mocked app state - no ComfyUI or Ollama needed.
"""

import os
import sys
import unittest
from unittest.mock import AsyncMock, MagicMock

from fastapi import FastAPI
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend.comfyui_client import UploadedImage
from backend.comfyui_errors import ComfyUIConnectionError, SubmissionError
from backend.routes import comfyui, puzzle, vision
from providers.base import VisionServiceError


def make_mock_orchestrator():
    orchestrator = MagicMock()
    orchestrator.is_generating = False
    orchestrator.pieces = []
    orchestrator.generate_all = AsyncMock(side_effect=lambda pieces, image: pieces)
    orchestrator.run_prompts = AsyncMock(return_value=[])
    orchestrator.status = MagicMock(return_value={
        "is_generating": False, "progress": {"current": 0, "total": 0}, "error": None, "pieces": [],
    })
    return orchestrator


def make_mock_comfyui():
    client = MagicMock()
    client.base_url = "http://comfy.test:8188"
    client.client_id = "test-client"
    client.health_check = AsyncMock(return_value=True)
    client.get_queue = AsyncMock(return_value={"queue_running": [[0]], "queue_pending": []})
    client.queue_length = MagicMock(return_value=1)
    client.interrupt = AsyncMock()
    client.get_history = AsyncMock(return_value={})
    client.upload_image = AsyncMock(return_value=UploadedImage(filename="src.png"))
    return client


def make_mock_vision():
    client = MagicMock()
    client.model = "llava"
    client.list_models = AsyncMock(return_value=[{"name": "llava", "size": 1}])
    client.analyze_image = AsyncMock(return_value="a fox")
    return client


def make_app():
    app = FastAPI()
    app.include_router(puzzle.router, prefix="/api/puzzle")
    app.include_router(comfyui.router, prefix="/api/comfyui")
    app.include_router(vision.router, prefix="/api/vision")
    app.state.puzzle_orchestrator = make_mock_orchestrator()
    app.state.comfyui_client = make_mock_comfyui()
    app.state.vision_client = make_mock_vision()
    return app


class TestPuzzleRoutes(unittest.TestCase):

    def setUp(self):
        self.app = make_app()
        self.http = TestClient(self.app)
        self.orchestrator = self.app.state.puzzle_orchestrator

    def test_generate(self):
        r = self.http.post("/api/puzzle/generate", json={
            "image_filename": "src.png", "prompts": ["a fox", "an owl"], "subject_ids": [3, 5],
        })
        self.assertEqual(r.status_code, 200)
        pieces, image = self.orchestrator.generate_all.await_args.args
        self.assertEqual(image, "src.png")
        self.assertEqual([(p.subject_id, p.prompt) for p in pieces], [(3, "a fox"), (5, "an owl")])

    def test_generate_mismatched_subjects(self):
        r = self.http.post("/api/puzzle/generate", json={
            "image_filename": "src.png", "prompts": ["a fox"], "subject_ids": [1, 2],
        })
        self.assertEqual(r.status_code, 400)

    def test_generate_while_running(self):
        self.orchestrator.is_generating = True
        r = self.http.post("/api/puzzle/generate", json={"image_filename": "src.png", "prompts": ["a"]})
        self.assertEqual(r.status_code, 409)
        self.orchestrator.generate_all.assert_not_awaited()

    def test_retry_unknown_piece(self):
        r = self.http.post("/api/puzzle/retry/9", json={"image_filename": "src.png"})
        self.assertEqual(r.status_code, 404)

    def test_run_prompts_requires_prompts(self):
        r = self.http.post("/api/puzzle/run-prompts", json={"prompts": []})
        self.assertEqual(r.status_code, 400)

    def test_run_prompts(self):
        r = self.http.post("/api/puzzle/run-prompts", json={"prompts": ["castle"], "wait": True})
        self.assertEqual(r.json(), {"jobs": []})
        self.orchestrator.run_prompts.assert_awaited_once_with(["castle"], wait=True, image_filename=None)

    def test_run_prompts_while_running(self):
        self.orchestrator.is_generating = True
        r = self.http.post("/api/puzzle/run-prompts", json={"prompts": ["castle"], "wait": True})
        self.assertEqual(r.status_code, 409)
        self.orchestrator.run_prompts.assert_not_awaited()

    def test_run_prompts_missing_source_image(self):
        self.orchestrator.run_prompts.side_effect = ValueError("image_filename is required")
        r = self.http.post("/api/puzzle/run-prompts", json={"prompts": ["castle"]})
        self.assertEqual(r.status_code, 400)


class TestComfyUIRoutes(unittest.TestCase):

    def setUp(self):
        self.app = make_app()
        self.http = TestClient(self.app)
        self.client = self.app.state.comfyui_client

    def test_status(self):
        body = self.http.get("/api/comfyui/status").json()
        self.assertTrue(body["running"])
        self.assertEqual(body["queue_length"], 1)

    def test_status_offline(self):
        self.client.health_check.return_value = False
        body = self.http.get("/api/comfyui/status").json()
        self.assertFalse(body["running"])

    def test_queue_unreachable(self):
        self.client.get_queue.side_effect = ComfyUIConnectionError("refused")
        self.assertEqual(self.http.get("/api/comfyui/queue").status_code, 503)

    def test_submission_error_maps_to_502(self):
        self.client.interrupt.side_effect = SubmissionError(400, "remote said no")
        r = self.http.post("/api/comfyui/interrupt")
        self.assertEqual(r.status_code, 502)
        self.assertEqual(r.json()["detail"], "remote said no")

    def test_history_missing(self):
        self.assertEqual(self.http.get("/api/comfyui/history/job-1").status_code, 404)

    def test_upload(self):
        r = self.http.post(
            "/api/comfyui/upload",
            files={"image": ("photo.png", b"\x89PNGdata", "image/png")},
        )
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["filename"], "src.png")
        args, kwargs = self.client.upload_image.await_args
        self.assertEqual(args, (b"\x89PNGdata", "photo.png"))
        self.assertEqual(kwargs["content_type"], "image/png")


class TestVisionRoutes(unittest.TestCase):

    def setUp(self):
        self.app = make_app()
        self.http = TestClient(self.app)

    def test_models(self):
        body = self.http.get("/api/vision/models").json()
        self.assertEqual(body["current"], "llava")

    def test_analyze_unreachable(self):
        self.app.state.vision_client.analyze_image.side_effect = VisionServiceError("down")
        r = self.http.post("/api/vision/analyze", json={"image_base64": "QUJD"})
        self.assertEqual(r.status_code, 503)

    def test_switch_model_replaces_client(self):
        original = self.app.state.vision_client
        replacement = make_mock_vision()
        original.with_model = MagicMock(return_value=replacement)

        r = self.http.post("/api/vision/model", json={"model": "qwen2-vl"})
        self.assertEqual(r.json(), {"model": "qwen2-vl"})
        original.with_model.assert_called_once_with("qwen2-vl")
        self.assertIs(self.app.state.vision_client, replacement)


if __name__ == "__main__":
    unittest.main()
