"""
Settings Manager with JSON persistence.

Supports nested key access via dot notation (e.g., "comfyui.base_url")
and automatic persistence to %APPDATA%/JigsawBridge/settings.json (Windows)
or ~/.config/JigsawBridge/settings.json (Linux/macOS).

Environment variables override the service endpoints and model names at
load time. Overrides are never written back to disk.
"""

import json
import logging
import os
import sys
from typing import Any, Optional, Dict
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from core.signals import Signal

logger = logging.getLogger("settings")


# env var -> dotted settings key
ENV_OVERRIDES = {
    "JIGSAW_OLLAMA_URL": "ollama.base_url",
    "JIGSAW_OLLAMA_MODEL": "ollama.default_model",
    "JIGSAW_VISION_MODEL": "ollama.vision_model",
    "JIGSAW_COMFYUI_URL": "comfyui.base_url",
    "JIGSAW_COMFYUI_WS": "comfyui.ws_url",
}


class SettingsManager:
    """
    Manages application settings with JSON persistence.
    Supports nested keys via dot notation (e.g., "generation.poll_interval")
    """

    DEFAULT_SETTINGS = {
        "ollama": {
            "base_url": "http://localhost:11434",
            "default_model": "llava",
            # Vision model used for jigsaw analysis
            "vision_model": "qwen2-vl",
            "timeout": 60,
        },
        "comfyui": {
            "base_url": "http://127.0.0.1:8188",
            # None = derive ws://host/ws from base_url
            "ws_url": None,
            "timeout": 120,
        },
        "generation": {
            "completion": "events",  # events, polling, stream
            "poll_interval": 1.5,
            "output_timeout": 300,
            "capture_node_id": "save_image_websocket_node",
            "checkpoint": "sd_xl_base_1.0.safetensors",
            "steps": 20,
            "negative_prompt": "blurry, low quality, distorted",
            # Optional path to an API-format graph JSON; None = built-in piece workflow
            "template_path": None,
            # Optional graph for plain prompt batches; None = built-in txt2img workflow
            "prompt_template_path": None,
        },
    }

    def __init__(self, app_name: str = "JigsawBridge", settings_dir: Optional[str] = None,
                 environ: Optional[Dict[str, str]] = None):
        """
        Initialize settings manager.

        Args:
            app_name: Application name for settings directory
            settings_dir: Override settings directory (useful for portable mode)
            environ: Environment mapping for overrides (defaults to os.environ)
        """
        self.app_name = app_name
        self._settings: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}
        self._settings_dir = settings_dir
        self._environ = os.environ if environ is None else environ
        self._settings_path = self._get_settings_path()

        # Signals
        self.on_settings_changed = Signal("settings_changed")

        # Load settings
        self._load()

    def _get_settings_path(self) -> Path:
        """Get platform-appropriate settings directory."""
        if self._settings_dir:
            settings_dir = Path(self._settings_dir)
        elif os.name == "nt":  # Windows
            base = os.environ.get("APPDATA", os.path.expanduser("~"))
            settings_dir = Path(base) / self.app_name
        else:  # macOS/Linux
            base = os.path.expanduser("~/.config")
            settings_dir = Path(base) / self.app_name

        settings_dir.mkdir(parents=True, exist_ok=True)
        return settings_dir / "settings.json"

    def _load(self):
        """Load settings from file, merging with defaults, then apply env overrides."""
        self._settings = self._deep_copy(self.DEFAULT_SETTINGS)

        if self._settings_path.exists():
            try:
                with open(self._settings_path, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                    self._deep_merge(self._settings, loaded)
            except Exception as e:
                logger.warning(f"Failed to load settings from {self._settings_path}: {e}")

        self._overrides = {}
        for env_name, key in ENV_OVERRIDES.items():
            value = self._environ.get(env_name)
            if value:
                self._overrides[key] = value
                logger.info(f"Setting '{key}' overridden by ${env_name}")

    def _save(self):
        """Persist settings to disk."""
        try:
            with open(self._settings_path, "w", encoding="utf-8") as f:
                json.dump(self._settings, f, indent=2, ensure_ascii=False)
        except Exception as e:
            logger.warning(f"Failed to save settings to {self._settings_path}: {e}")

    def _deep_copy(self, obj: Any) -> Any:
        """Create a deep copy of nested dicts/lists."""
        if isinstance(obj, dict):
            return {k: self._deep_copy(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._deep_copy(item) for item in obj]
        return obj

    def _deep_merge(self, base: dict, override: dict):
        """Recursively merge override into base."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get setting value using dot notation.

        Example:
            get("comfyui.base_url")
            get("generation.poll_interval", 1.5)
        """
        if key in self._overrides:
            return self._overrides[key]

        keys = key.split(".")
        value = self._settings

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any, save: bool = True):
        """
        Set setting value using dot notation.

        An explicit set wins over an environment override for the rest
        of the process lifetime.
        """
        keys = key.split(".")
        target = self._settings

        for k in keys[:-1]:
            if k not in target:
                target[k] = {}
            target = target[k]

        old_value = self.get(key)
        target[keys[-1]] = value
        self._overrides.pop(key, None)

        if save:
            self._save()

        if old_value != value:
            self.on_settings_changed.emit(key, value)

    def get_section(self, section: str) -> Dict[str, Any]:
        """
        Get an entire settings section with overrides applied.

        Example:
            get_section("generation")
        """
        value = self.get(section, {})
        if not isinstance(value, dict):
            return {}
        value = self._deep_copy(value)
        prefix = section + "."
        for key, override in self._overrides.items():
            if key.startswith(prefix) and "." not in key[len(prefix):]:
                value[key[len(prefix):]] = override
        return value

    def set_section(self, section: str, values: Dict[str, Any], save: bool = True):
        """Set multiple values in a section."""
        for key, value in values.items():
            self.set(f"{section}.{key}", value, save=False)

        if save:
            self._save()

    def get_all(self) -> Dict[str, Any]:
        """Get complete settings dictionary (deep copy, overrides applied)."""
        merged = self._deep_copy(self._settings)
        for key, value in self._overrides.items():
            target = merged
            parts = key.split(".")
            for k in parts[:-1]:
                target = target.setdefault(k, {})
            target[parts[-1]] = value
        return merged

    def reset_to_defaults(self, section: Optional[str] = None):
        """
        Reset settings to defaults.

        Args:
            section: If provided, only reset that section. Otherwise reset all.
        """
        if section:
            default_value = self._navigate_defaults(section)
            if default_value is not None:
                self.set(section, self._deep_copy(default_value))
        else:
            self._settings = self._deep_copy(self.DEFAULT_SETTINGS)
            self._save()
            self.on_settings_changed.emit("*", None)

    def _navigate_defaults(self, key: str) -> Any:
        """Navigate to a key in DEFAULT_SETTINGS."""
        keys = key.split(".")
        value = self.DEFAULT_SETTINGS

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return None

        return value

    @property
    def settings_path(self) -> Path:
        """Get the settings file path."""
        return self._settings_path

    @property
    def overrides(self) -> Dict[str, Any]:
        """Environment overrides currently in effect."""
        return dict(self._overrides)
