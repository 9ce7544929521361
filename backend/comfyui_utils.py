"""
Shared ComfyUI utilities.

Built-in puzzle-piece workflow, checkpoint helpers and media
classification used by the client, the materializer and the batch
orchestrator.
"""

import random
from typing import Dict, Any

from backend.graph_template import InjectionPoints

# Node id of the SaveImageWebsocket node whose binary frames carry the piece image
CAPTURE_NODE_ID = "save_image_websocket_node"

PIECE_INJECTION_POINTS = InjectionPoints(
    load_image_nodes=("10",),
    positive_prompt_nodes=("2",),
    negative_prompt_nodes=("3",),
    sampler_nodes=("5",),
)

# Text-to-image graph used for plain prompt batches
PROMPT_INJECTION_POINTS = InjectionPoints(
    positive_prompt_nodes=("2",),
    negative_prompt_nodes=("3",),
    sampler_nodes=("5",),
)

VIDEO_EXTENSIONS = frozenset({"mp4", "webm", "mov", "mkv", "avi", "gif"})
AUDIO_EXTENSIONS = frozenset({"wav", "mp3", "flac", "ogg", "m4a", "aac"})
IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "webp", "bmp"})


def random_seed() -> int:
    return random.randint(0, 2**63 - 1)


def classify_media(filename: str) -> str:
    """Classify an output file as image, video, audio or other by extension."""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if ext in VIDEO_EXTENSIONS:
        return "video"
    if ext in AUDIO_EXTENSIONS:
        return "audio"
    if ext in IMAGE_EXTENSIONS:
        return "image"
    return "other"


def detect_model_defaults(checkpoint: str) -> Dict[str, Any]:
    """Auto-detect sampling defaults based on checkpoint filename."""
    name_lower = str(checkpoint or "").lower()

    if "flux" in name_lower:
        return {"cfg": 3.5, "sampler_name": "euler", "scheduler": "simple", "steps": 25}
    elif "xl" in name_lower or "sdxl" in name_lower:
        return {"cfg": 8.0, "sampler_name": "dpmpp_2m", "scheduler": "karras", "steps": 30}
    else:
        return {"cfg": 7.0, "sampler_name": "dpmpp_2m", "scheduler": "karras", "steps": 20}


def ensure_checkpoint_extension(checkpoint: str) -> str:
    """
    Append .safetensors if the checkpoint name has no model file extension.
    ComfyUI requires exact filenames including extensions.
    """
    if not checkpoint:
        return checkpoint
    KNOWN_EXTENSIONS = (".safetensors", ".ckpt", ".pt", ".pth", ".bin", ".gguf")
    basename = checkpoint.rsplit("/", 1)[-1].rsplit("\\", 1)[-1]
    if any(basename.lower().endswith(ext) for ext in KNOWN_EXTENSIONS):
        return checkpoint
    return checkpoint + ".safetensors"


def build_piece_workflow(checkpoint: str, image: str = "", prompt: str = "",
                         negative_prompt: str = "", steps: int = None,
                         cfg: float = None, seed: int = -1,
                         denoise: float = 0.75) -> Dict:
    """
    Build the img2img puzzle-piece workflow (API format).

    The source image is re-rendered for one subject; the result is both
    streamed over the websocket (CAPTURE_NODE_ID) and saved to disk so the
    history endpoint lists it. Node ids match PIECE_INJECTION_POINTS.
    """
    checkpoint = ensure_checkpoint_extension(checkpoint)
    defaults = detect_model_defaults(checkpoint)
    if seed == -1:
        seed = random_seed()

    return {
        "1": {
            "class_type": "CheckpointLoaderSimple",
            "inputs": {"ckpt_name": checkpoint}
        },
        "2": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": prompt, "clip": ["1", 1]}
        },
        "3": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": negative_prompt, "clip": ["1", 1]}
        },
        "10": {
            "class_type": "LoadImage",
            "inputs": {"image": image}
        },
        "4": {
            "class_type": "VAEEncode",
            "inputs": {"pixels": ["10", 0], "vae": ["1", 2]}
        },
        "5": {
            "class_type": "KSampler",
            "inputs": {
                "model": ["1", 0], "positive": ["2", 0],
                "negative": ["3", 0], "latent_image": ["4", 0],
                "seed": seed, "steps": steps or defaults["steps"],
                "cfg": cfg if cfg is not None else defaults["cfg"],
                "sampler_name": defaults["sampler_name"],
                "scheduler": defaults["scheduler"],
                "denoise": denoise,
            }
        },
        "6": {
            "class_type": "VAEDecode",
            "inputs": {"samples": ["5", 0], "vae": ["1", 2]}
        },
        "7": {
            "class_type": "SaveImage",
            "inputs": {"images": ["6", 0], "filename_prefix": "JigsawPiece"}
        },
        CAPTURE_NODE_ID: {
            "class_type": "SaveImageWebsocket",
            "inputs": {"images": ["6", 0]}
        },
    }


def build_prompt_workflow(checkpoint: str, prompt: str = "", negative_prompt: str = "",
                          width: int = 1024, height: int = 1024, steps: int = None,
                          cfg: float = None, seed: int = -1) -> Dict:
    """
    Build a plain txt2img workflow (API format) for prompt batches.

    No LoadImage node, so it can be queued without an uploaded source.
    Node ids match PROMPT_INJECTION_POINTS.
    """
    checkpoint = ensure_checkpoint_extension(checkpoint)
    defaults = detect_model_defaults(checkpoint)
    if seed == -1:
        seed = random_seed()

    return {
        "1": {
            "class_type": "CheckpointLoaderSimple",
            "inputs": {"ckpt_name": checkpoint}
        },
        "2": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": prompt, "clip": ["1", 1]}
        },
        "3": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": negative_prompt, "clip": ["1", 1]}
        },
        "4": {
            "class_type": "EmptyLatentImage",
            "inputs": {"width": width, "height": height, "batch_size": 1}
        },
        "5": {
            "class_type": "KSampler",
            "inputs": {
                "model": ["1", 0], "positive": ["2", 0],
                "negative": ["3", 0], "latent_image": ["4", 0],
                "seed": seed, "steps": steps or defaults["steps"],
                "cfg": cfg if cfg is not None else defaults["cfg"],
                "sampler_name": defaults["sampler_name"],
                "scheduler": defaults["scheduler"],
                "denoise": 1.0,
            }
        },
        "6": {
            "class_type": "VAEDecode",
            "inputs": {"samples": ["5", 0], "vae": ["1", 2]}
        },
        "7": {
            "class_type": "SaveImage",
            "inputs": {"images": ["6", 0], "filename_prefix": "JigsawPrompt"}
        },
    }
