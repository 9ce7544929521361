"""
Debug Logger Middleware

Writes one line per request and one per response for the puzzle, ComfyUI
and vision routes to <log_dir>/debug.log, so a generation session can be
replayed after the fact without cluttering the console.
"""

import os
import time
import logging
from logging.handlers import RotatingFileHandler
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Prefix match
_LOGGED_PREFIXES = ("/api/puzzle/", "/api/comfyui/", "/api/vision/")

# Base64 image bodies are large; keep the log readable
_MAX_REQUEST_BODY = 1000
_MAX_RESPONSE_BODY = 2000

debug_logger: logging.Logger = logging.getLogger("debug_file")
debug_logger.propagate = False

_log_file_path: str = ""


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + "...(truncated)"
    return text


def init_debug_logger(log_dir: str) -> str:
    """
    Attach a rotating file handler (5MB, 1 backup) to the debug logger.
    The log starts empty for every server session. Returns the file path.
    """
    global _log_file_path
    os.makedirs(log_dir, exist_ok=True)
    _log_file_path = os.path.join(log_dir, "debug.log")

    with open(_log_file_path, "w"):
        pass

    handler = RotatingFileHandler(
        _log_file_path, maxBytes=5 * 1024 * 1024, backupCount=1, encoding="utf-8"
    )
    handler.setFormatter(logging.Formatter("[%(asctime)s.%(msecs)03d] %(message)s", datefmt="%H:%M:%S"))
    handler.setLevel(logging.DEBUG)

    for old in debug_logger.handlers:
        old.close()
    debug_logger.handlers.clear()
    debug_logger.addHandler(handler)
    debug_logger.setLevel(logging.DEBUG)

    debug_logger.info("[STARTUP] Debug logger initialized")
    return _log_file_path


def get_log_file_path() -> str:
    return _log_file_path


class DebugLoggerMiddleware(BaseHTTPMiddleware):
    """Request/response summaries for the API prefixes above."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith(_LOGGED_PREFIXES):
            return await call_next(request)

        method = request.method
        query_str = f"?{request.url.query}" if request.url.query else ""

        req_body = ""
        if method in ("POST", "PUT", "PATCH"):
            content_type = request.headers.get("content-type", "")
            if content_type.startswith("multipart/"):
                req_body = f"<multipart {request.headers.get('content-length', '?')} bytes>"
            else:
                body_bytes = await request.body()
                req_body = _truncate(body_bytes.decode("utf-8", errors="replace"), _MAX_REQUEST_BODY)

        body_str = f"  body={req_body}" if req_body else ""
        debug_logger.info(f"[REQ] >>> {method} {path}{query_str}{body_str}")

        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed = (time.monotonic() - start) * 1000
            debug_logger.error(f"[ERROR] {method} {path}  EXCEPTION  {elapsed:.0f}ms  {type(exc).__name__}: {exc}")
            raise
        elapsed = (time.monotonic() - start) * 1000

        # The body iterator can only be consumed once; rebuild the response afterwards
        raw = b"".join([
            chunk if isinstance(chunk, bytes) else chunk.encode("utf-8")
            async for chunk in response.body_iterator
        ])
        resp_body = _truncate(raw.decode("utf-8", errors="replace"), _MAX_RESPONSE_BODY)

        level = "RES" if response.status_code < 400 else "ERROR"
        debug_logger.info(f"[{level}] <<< {method} {path}  {response.status_code}  {elapsed:.0f}ms  body={resp_body}")

        return Response(
            content=raw,
            status_code=response.status_code,
            headers=dict(response.headers),
            media_type=response.media_type,
        )
