from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import EntityValidationError, NotFoundError, PartialCascadeFailure, UnsupportedContext
from .repositories import get_storage
from .routers import boards as boards_router
from .routers import contexts as contexts_router
from .routers import entities as entities_router
from .routers import maintenance as maintenance_router
from .routers import weekly as weekly_router
from .settings import Settings, get_settings
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Service health and status endpoints."},
    {"name": "entities", "description": "Entity CRUD, completion, subtasks, progress and rendering."},
    {"name": "boards", "description": "Boards, rows and card placement within board cells."},
    {"name": "weekly", "description": "Weekly plans: goal, reflection and scheduled entities."},
    {"name": "contexts", "description": "Tags, collections and people timelines."},
    {"name": "maintenance", "description": "Consistency audit, snapshots and legacy migration."},
]


# PUBLIC_INTERFACE
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    The storage backend is opened and the SyncEngine created during the
    lifespan startup; both live on `app.state`.
    """
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        storage = get_storage(settings)
        await storage.open()
        app.state.engine = SyncEngine(storage, settings)
        logger.info("planboard started with %s backend", settings.persistence_backend)
        try:
            yield
        finally:
            await storage.close()

    app = FastAPI(
        title="Planboard Backend",
        description="Kanban boards and weekly planning over one canonical set of entities.",
        version="0.1.0",
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Configure CORS based on settings (CORS_ALLOW_ORIGINS), with '*' fallback
    allow_all = (settings.cors_allow_origins == ["*"]) or (len(settings.cors_allow_origins) == 0)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Same envelope as EntityValidationError, so clients parse one shape for 422."""
        return JSONResponse(
            status_code=422,
            content={
                "error": "ValidationError",
                "message": "Request validation failed",
                "detail": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(EntityValidationError)
    async def entity_validation_handler(request: Request, exc: EntityValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"error": "ValidationError", "message": str(exc), "detail": exc.errors()},
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(UnsupportedContext)
    async def unsupported_context_handler(request: Request, exc: UnsupportedContext) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "UnsupportedContext", "message": str(exc)})

    @app.exception_handler(PartialCascadeFailure)
    async def cascade_failure_handler(request: Request, exc: PartialCascadeFailure) -> JSONResponse:
        return JSONResponse(
            status_code=500,
            content={
                "error": "PartialCascadeFailure",
                "message": str(exc),
                "entity_id": exc.entity_id,
                "stage": exc.stage,
            },
        )

    # PUBLIC_INTERFACE
    @app.get("/", summary="Health Check", tags=["health"])
    def health_check():
        """Liveness check; also reports which storage backend is active."""
        return {"message": "Healthy", "backend": settings.persistence_backend}

    app.include_router(entities_router.router)
    app.include_router(boards_router.router)
    app.include_router(weekly_router.router)
    app.include_router(contexts_router.router)
    app.include_router(maintenance_router.router)
    return app


app = create_app()
