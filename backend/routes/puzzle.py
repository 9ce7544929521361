"""
Puzzle Generation Routes

One image per puzzle piece, generated sequentially from an uploaded
source image. The batch result and progress stay on the orchestrator so
the UI can poll /status while a batch runs.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Request, HTTPException
from pydantic import BaseModel

from backend.batch_orchestrator import create_pieces

logger = logging.getLogger("Puzzle.Routes")

router = APIRouter()


# --------------------------------------------------------------------------- #
# Request models
# --------------------------------------------------------------------------- #

class GenerateBody(BaseModel):
    image_filename: str
    prompts: List[str]
    subject_ids: Optional[List[int]] = None


class RunPromptsBody(BaseModel):
    prompts: List[str]
    wait: bool = False
    image_filename: Optional[str] = None


class RetryBody(BaseModel):
    image_filename: str


# --------------------------------------------------------------------------- #
# Helpers
# --------------------------------------------------------------------------- #

def _get_orchestrator(request: Request):
    orchestrator = getattr(request.app.state, "puzzle_orchestrator", None)
    if not orchestrator:
        raise HTTPException(status_code=500, detail="Puzzle orchestrator not initialized")
    return orchestrator


# --------------------------------------------------------------------------- #
# Endpoints
# --------------------------------------------------------------------------- #

@router.post("/generate")
async def generate(body: GenerateBody, request: Request):
    """Generate every piece; individual failures are reported per piece."""
    orchestrator = _get_orchestrator(request)
    if orchestrator.is_generating:
        raise HTTPException(status_code=409, detail="A batch is already running")
    try:
        pieces = create_pieces(body.prompts, body.subject_ids)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await orchestrator.generate_all(pieces, body.image_filename)
    return orchestrator.status()


@router.get("/status")
async def get_status(request: Request):
    return _get_orchestrator(request).status()


@router.post("/retry/{piece_id}")
async def retry_piece(piece_id: int, body: RetryBody, request: Request):
    """Re-run one piece of the last batch."""
    orchestrator = _get_orchestrator(request)
    if orchestrator.is_generating:
        raise HTTPException(status_code=409, detail="A batch is already running")
    piece = next((p for p in orchestrator.pieces if p.id == piece_id), None)
    if piece is None:
        raise HTTPException(status_code=404, detail=f"Piece {piece_id} not found")

    await orchestrator.retry_piece(piece, body.image_filename)
    return piece.to_dict()


@router.post("/run-prompts")
async def run_prompts(body: RunPromptsBody, request: Request):
    """Queue one job per prompt; with wait=true also collect the outputs."""
    orchestrator = _get_orchestrator(request)
    if orchestrator.is_generating:
        raise HTTPException(status_code=409, detail="A batch is already running")
    if not body.prompts:
        raise HTTPException(status_code=400, detail="No prompts given")
    try:
        records = await orchestrator.run_prompts(body.prompts, wait=body.wait, image_filename=body.image_filename)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"jobs": [r.to_dict() for r in records]}
