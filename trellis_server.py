"""Entry point for the Trellis hierarchy API.

Builds the FastAPI app, opens the on-disk tree database and mounts the
hierarchy router below ``/api/trellis``. If the database cannot be
opened the app still boots: ``/api/health`` reports the failure and
only the hierarchy routes are missing.

Usage::

    uvicorn trellis_server:app --reload --port 8430
    uvicorn trellis_server:app --host 0.0.0.0 --port 8430
    python trellis_server.py
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

logger = logging.getLogger("trellis")

app = FastAPI(
    title="Trellis API",
    description=(
        "Hierarchy editing backend: drag-and-drop reordering, reparenting, "
        "promotion and demotion of KPI and record trees."
    ),
    version="0.1.0",
)

# Browser origins permitted to call the API
_ALLOWED_ORIGINS = [
    "http://localhost:3000",   # frontend dev server
    "http://localhost:8430",   # interactive docs
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8430",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_router_status: dict[str, Any] = {"mounted": False, "error": None}


def _mount_trellis(db_path: Path = Path("data/trellis/trellis.db")) -> None:
    """Open *db_path* and attach the hierarchy router, recording the result."""
    try:
        from trellis.src.server import init_trellis_storage, router as trellis_router

        db_path.parent.mkdir(parents=True, exist_ok=True)
        init_trellis_storage(db_path)

        app.include_router(trellis_router, prefix="/api/trellis", tags=["trellis"])
        _router_status["mounted"] = True
        logger.info("Hierarchy routes available under /api/trellis/")
    except Exception as exc:
        _router_status["error"] = str(exc)
        logger.warning("Hierarchy routes unavailable: %s", exc)


@app.get("/api/health")
async def app_health() -> dict[str, Any]:
    """Report whether the hierarchy routes are mounted, with any load error."""
    return {
        "status": "ok" if _router_status["mounted"] else "error",
        "version": "0.1.0",
        "trellis": _router_status,
    }


_mount_trellis()


def run_server(host: str = "127.0.0.1", port: int = 8430) -> None:
    """Serve the app with uvicorn on *host*:*port*."""
    import uvicorn

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    run_server()
