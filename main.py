"""
main.py — Server launcher and entry point.

Run this file to start the booking admission API:

    python main.py

This file does NOT contain application logic. See admission/main.py for the
FastAPI application, service wiring, and startup sequence.

Direct uvicorn usage:
    uvicorn admission.main:app --reload
"""

from __future__ import annotations

import os

import uvicorn


HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))


def main() -> None:
    """Start the admission API server."""
    print("=" * 60)
    print("  Booking Admission Service")
    print("=" * 60)
    print(f"  Server  : http://{HOST}:{PORT}")
    print(f"  API docs: http://{HOST}:{PORT}/docs")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    # Single worker: per-accommodation locks live in this process.
    uvicorn.run(
        "admission.main:app",
        host=HOST,
        port=PORT,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
