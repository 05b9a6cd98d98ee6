from __future__ import annotations

from fastapi import Request

from .sync_engine import SyncEngine


# PUBLIC_INTERFACE
def get_engine(request: Request) -> SyncEngine:
    """FastAPI dependency returning the engine created at startup."""
    return request.app.state.engine
