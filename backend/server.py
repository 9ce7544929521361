"""
JigsawBridge Backend Server

FastAPI server providing:
- Puzzle piece generation (one ComfyUI job per subject)
- ComfyUI queue / upload / history proxy
- Ollama vision model access
"""

import os
import sys
import logging
from contextlib import asynccontextmanager
from typing import Optional

import aiohttp
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Add parent directory for imports
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, BASE_DIR)

from settings.settings_manager import SettingsManager
from backend.batch_orchestrator import PuzzleBatchOrchestrator
from backend.comfyui_client import ComfyUIClient, ComfyUIConfig
from backend.routes import puzzle, comfyui, vision
from backend.middleware.debug_logger import init_debug_logger, DebugLoggerMiddleware
from providers.ollama_provider import OllamaConfig, OllamaVisionClient

# Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("JigsawBridge")

settings_manager: Optional[SettingsManager] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    global settings_manager

    logger.info("Starting JigsawBridge Backend...")

    settings_manager = SettingsManager(settings_dir=os.environ.get("JIGSAW_SETTINGS_DIR"))
    if settings_manager.overrides:
        logger.info(f"Environment overrides: {', '.join(sorted(settings_manager.overrides))}")

    log_dir = os.path.join(str(settings_manager.settings_path.parent), "logs")
    init_debug_logger(log_dir)

    comfyui_client = ComfyUIClient(ComfyUIConfig.from_settings(settings_manager))
    logger.info(f"ComfyUI at {comfyui_client.base_url} (client id {comfyui_client.client_id})")

    # Shared by every vision client value derived with with_model()
    ollama_session = aiohttp.ClientSession()
    vision_client = OllamaVisionClient(OllamaConfig.from_settings(settings_manager), session=ollama_session)
    logger.info(f"Ollama at {vision_client.base_url} (model {vision_client.model})")

    orchestrator = PuzzleBatchOrchestrator.from_settings(comfyui_client, settings_manager)
    logger.info(f"Puzzle orchestrator ready (completion={orchestrator.completion})")

    # Store in app state for route access
    app.state.settings = settings_manager
    app.state.comfyui_client = comfyui_client
    app.state.vision_client = vision_client
    app.state.puzzle_orchestrator = orchestrator

    logger.info("JigsawBridge Backend ready")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await comfyui_client.close()
    await ollama_session.close()
    logger.info("Shutdown complete")


# Create app
app = FastAPI(
    title="JigsawBridge",
    description="Multi-subject puzzle generation over ComfyUI and Ollama",
    version="1.0.0",
    lifespan=lifespan
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(DebugLoggerMiddleware)

# Include routers
app.include_router(puzzle.router, prefix="/api/puzzle", tags=["Puzzle"])
app.include_router(comfyui.router, prefix="/api/comfyui", tags=["ComfyUI"])
app.include_router(vision.router, prefix="/api/vision", tags=["Vision"])


@app.get("/")
async def root():
    return {"message": "JigsawBridge Backend", "status": "running"}
