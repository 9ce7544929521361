"""
ComfyUI Routes

Thin proxy over the ComfyUI REST API: health, queue, interrupt, history
and source-image upload. Remote failures are translated into HTTP errors.
"""

import logging
from fastapi import APIRouter, Request, HTTPException, UploadFile, File, Form

from backend.comfyui_errors import ComfyUIConnectionError, ComfyUIError, SubmissionError

logger = logging.getLogger("ComfyUI.Routes")

router = APIRouter()


def _get_client(request: Request):
    """Get ComfyUI client from app state."""
    client = getattr(request.app.state, 'comfyui_client', None)
    if not client:
        raise HTTPException(status_code=500, detail="ComfyUI client not initialized")
    return client


def _raise_http(e: ComfyUIError):
    if isinstance(e, SubmissionError):
        raise HTTPException(status_code=502, detail=e.body or e.message)
    if isinstance(e, ComfyUIConnectionError):
        raise HTTPException(status_code=503, detail=e.message)
    raise HTTPException(status_code=502, detail=e.message)


# ======================== Status ========================

@router.get("/status")
async def get_status(request: Request):
    """Reachability plus current queue length."""
    client = _get_client(request)
    if not await client.health_check():
        return {"running": False, "base_url": client.base_url, "queue_length": None}
    try:
        queue = await client.get_queue()
    except ComfyUIError as e:
        _raise_http(e)
    return {
        "running": True,
        "base_url": client.base_url,
        "client_id": client.client_id,
        "queue_length": client.queue_length(queue),
    }


# ======================== Queue ========================

@router.get("/queue")
async def get_queue(request: Request):
    client = _get_client(request)
    try:
        return await client.get_queue()
    except ComfyUIError as e:
        _raise_http(e)


@router.post("/interrupt")
async def interrupt(request: Request):
    """Interrupt the job currently executing on the remote."""
    client = _get_client(request)
    try:
        await client.interrupt()
    except ComfyUIError as e:
        _raise_http(e)
    return {"success": True}


@router.get("/history/{job_id}")
async def get_history(job_id: str, request: Request):
    client = _get_client(request)
    try:
        history = await client.get_history(job_id)
    except ComfyUIError as e:
        _raise_http(e)
    if job_id not in history:
        raise HTTPException(status_code=404, detail=f"No history for job {job_id}")
    return history[job_id]


# ======================== Upload ========================

@router.post("/upload")
async def upload_image(
    request: Request,
    image: UploadFile = File(...),
    subfolder: str = Form(""),
):
    """Upload the puzzle source image into ComfyUI's input folder."""
    client = _get_client(request)
    data = await image.read()
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload")
    try:
        uploaded = await client.upload_image(
            data,
            image.filename or "upload.png",
            subfolder=subfolder,
            content_type=image.content_type or "image/png",
        )
    except ComfyUIError as e:
        _raise_http(e)
    logger.info(f"Uploaded {uploaded.filename} ({len(data)} bytes)")
    return {"filename": uploaded.filename, "subfolder": uploaded.subfolder, "type": uploaded.type}
