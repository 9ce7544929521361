"""
Tests for settings persistence, environment overrides and signals.
"""

import json
import os
import shutil
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend.comfyui_client import ComfyUIConfig
from core.signals import Signal
from providers.ollama_provider import OllamaConfig
from settings.settings_manager import SettingsManager


class SettingsTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmpdir, True)

    def make(self, environ=None):
        return SettingsManager(settings_dir=self.tmpdir, environ=environ or {})


class TestDefaultsAndPersistence(SettingsTestCase):

    def test_defaults(self):
        settings = self.make()
        self.assertEqual(settings.get("ollama.base_url"), "http://localhost:11434")
        self.assertEqual(settings.get("ollama.default_model"), "llava")
        self.assertEqual(settings.get("ollama.vision_model"), "qwen2-vl")
        self.assertEqual(settings.get("comfyui.base_url"), "http://127.0.0.1:8188")
        self.assertIsNone(settings.get("comfyui.ws_url"))
        self.assertEqual(settings.get("generation.poll_interval"), 1.5)
        self.assertEqual(settings.get("generation.output_timeout"), 300)
        self.assertEqual(settings.get("missing.key", "fallback"), "fallback")

    def test_set_persists_and_emits(self):
        settings = self.make()
        changes = []
        settings.on_settings_changed.connect(lambda key, value: changes.append((key, value)))

        settings.set("generation.steps", 30)
        settings.set("generation.steps", 30)

        self.assertEqual(changes, [("generation.steps", 30)])
        with open(settings.settings_path, encoding="utf-8") as f:
            self.assertEqual(json.load(f)["generation"]["steps"], 30)
        self.assertEqual(self.make().get("generation.steps"), 30)

    def test_file_merges_over_defaults(self):
        with open(os.path.join(self.tmpdir, "settings.json"), "w", encoding="utf-8") as f:
            json.dump({"comfyui": {"base_url": "http://gpu-box:8188"}}, f)
        settings = self.make()
        self.assertEqual(settings.get("comfyui.base_url"), "http://gpu-box:8188")
        self.assertEqual(settings.get("comfyui.timeout"), 120)

    def test_corrupt_file_falls_back_to_defaults(self):
        with open(os.path.join(self.tmpdir, "settings.json"), "w", encoding="utf-8") as f:
            f.write("{oops")
        self.assertEqual(self.make().get("ollama.default_model"), "llava")

    def test_reset_section(self):
        settings = self.make()
        settings.set("generation.steps", 5)
        settings.reset_to_defaults("generation")
        self.assertEqual(settings.get("generation.steps"), 20)


class TestEnvironmentOverrides(SettingsTestCase):

    ENV = {
        "JIGSAW_OLLAMA_URL": "http://ollama.lan:11434",
        "JIGSAW_VISION_MODEL": "llava:13b",
        "JIGSAW_COMFYUI_URL": "http://comfy.lan:8188",
        "JIGSAW_COMFYUI_WS": "ws://comfy.lan:8188/ws",
        "JIGSAW_OLLAMA_MODEL": "",
    }

    def test_overrides_win(self):
        settings = self.make(self.ENV)
        self.assertEqual(settings.get("ollama.base_url"), "http://ollama.lan:11434")
        self.assertEqual(settings.get("ollama.vision_model"), "llava:13b")
        self.assertEqual(settings.get_section("comfyui")["ws_url"], "ws://comfy.lan:8188/ws")
        self.assertEqual(settings.get_all()["comfyui"]["base_url"], "http://comfy.lan:8188")
        self.assertEqual(set(settings.overrides), {
            "ollama.base_url", "ollama.vision_model", "comfyui.base_url", "comfyui.ws_url",
        })

    def test_overrides_not_persisted(self):
        settings = self.make(self.ENV)
        settings.set("generation.steps", 25)
        with open(settings.settings_path, encoding="utf-8") as f:
            saved = json.load(f)
        self.assertEqual(saved["comfyui"]["base_url"], "http://127.0.0.1:8188")

    def test_explicit_set_beats_override(self):
        settings = self.make(self.ENV)
        settings.set("comfyui.base_url", "http://other:8188")
        self.assertEqual(settings.get("comfyui.base_url"), "http://other:8188")

    def test_client_configs_from_settings(self):
        settings = self.make(self.ENV)
        comfy = ComfyUIConfig.from_settings(settings)
        self.assertEqual(comfy.base_url, "http://comfy.lan:8188")
        self.assertEqual(comfy.ws_url, "ws://comfy.lan:8188/ws")
        self.assertEqual(comfy.timeout, 120.0)

        ollama = OllamaConfig.from_settings(settings)
        self.assertEqual(ollama.base_url, "http://ollama.lan:11434")
        self.assertEqual(ollama.model, "llava:13b")
        self.assertEqual(OllamaConfig.from_settings(settings, "ollama.default_model").model, "llava")

    def test_vision_model_falls_back_to_default_model(self):
        settings = self.make()
        settings.set("ollama.vision_model", None)
        self.assertEqual(OllamaConfig.from_settings(settings).model, "llava")


class TestSignal(unittest.TestCase):

    def test_emit_to_all_listeners(self):
        signal = Signal("test")
        received = []
        signal.connect(received.append)
        signal.connect(lambda value: received.append(value * 2))
        self.assertEqual(signal.emit(3), 0)
        self.assertEqual(received, [3, 6])

    def test_failing_listener_isolated(self):
        signal = Signal("test")
        received = []

        def broken(value):
            raise RuntimeError("listener bug")

        signal.connect(broken)
        signal.connect(received.append)
        self.assertEqual(signal.emit("x"), 1)
        self.assertEqual(received, ["x"])

    def test_connect_once_and_disconnect(self):
        signal = Signal()
        callback = signal.connect(print)
        signal.connect(print)
        self.assertEqual(len(signal), 1)
        signal.disconnect(callback)
        signal.disconnect(callback)
        self.assertEqual(len(signal), 0)


if __name__ == "__main__":
    unittest.main()
