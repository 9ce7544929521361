#!/usr/bin/env python3
"""
JigsawBridge Launcher

Starts the FastAPI backend server.
"""

import os
import sys
import argparse

# Ensure we're using the right Python path
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, BASE_DIR)


def run_server(host: str = "127.0.0.1", port: int = 8000, reload: bool = False):
    """Run the FastAPI server."""
    import uvicorn

    print(f"""
    ============================================================
                        JigsawBridge
              Puzzle pieces via ComfyUI + Ollama
    ============================================================
      Backend:  http://{host}:{port}
      API Docs: http://{host}:{port}/docs
    ============================================================
    """)

    uvicorn.run(
        "backend.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


def main():
    parser = argparse.ArgumentParser(description="JigsawBridge Launcher")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload (dev mode)")

    args = parser.parse_args()
    run_server(args.host, args.port, args.reload)


if __name__ == "__main__":
    main()
