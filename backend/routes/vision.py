"""
Vision Routes

Ollama vision model access: list models, describe an image, switch model.
"""

import logging

from fastapi import APIRouter, Request, HTTPException
from pydantic import BaseModel

from providers.base import VisionServiceError

logger = logging.getLogger("Vision.Routes")

router = APIRouter()

DEFAULT_ANALYZE_PROMPT = (
    "Describe the distinct subjects in this image, one per line, "
    "so each can be drawn as its own puzzle piece."
)


class AnalyzeBody(BaseModel):
    image_base64: str
    prompt: str = DEFAULT_ANALYZE_PROMPT


class ModelBody(BaseModel):
    model: str


def _get_vision(request: Request):
    client = getattr(request.app.state, "vision_client", None)
    if not client:
        raise HTTPException(status_code=500, detail="Vision client not initialized")
    return client


@router.get("/models")
async def list_models(request: Request):
    client = _get_vision(request)
    try:
        models = await client.list_models()
    except VisionServiceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"current": client.model, "models": models}


@router.post("/analyze")
async def analyze(body: AnalyzeBody, request: Request):
    """Run the current vision model over one base64 image."""
    if not body.image_base64:
        raise HTTPException(status_code=400, detail="image_base64 is required")
    client = _get_vision(request)
    try:
        text = await client.analyze_image(body.image_base64, body.prompt)
    except VisionServiceError as e:
        raise HTTPException(status_code=502 if e.status else 503, detail=str(e))
    return {"model": client.model, "text": text}


@router.post("/model")
async def set_model(body: ModelBody, request: Request):
    """Switch model. Requests already running keep the previous client."""
    model = body.model.strip()
    if not model:
        raise HTTPException(status_code=400, detail="model is required")
    client = _get_vision(request)
    request.app.state.vision_client = client.with_model(model)
    logger.info(f"Vision model switched: {client.model} -> {model}")
    return {"model": model}
