"""FastAPI application factory for the board server."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from ..container import BoardContainer
from ..errors import NotFoundError, StorageError, ValidationError
from ..events.watch import watch_store_file
from .board_api import create_board_router
from .stream import create_stream_router
from .webhook_api import create_webhook_router

APP_VERSION = "0.3.0"


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
    container: Optional[BoardContainer] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        project_dir: Directory holding the `.flux/` state directory; defaults to cwd.
        enable_cors: Whether to enable CORS.
        container: Pre-built container (tests inject one with a fake transport).

    Returns:
        Configured FastAPI app.
    """
    owns_container = container is None
    board = container or BoardContainer(project_dir or Path.cwd())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        board.hub.attach_loop(asyncio.get_running_loop())
        board.worker.start()
        watcher = asyncio.create_task(
            watch_store_file(board.settings.storage_path, board.hub, poll_seconds=board.settings.watch_seconds)
        )
        logger.info("Board server ready (storage={})", board.settings.storage_path)
        try:
            yield
        finally:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher
            if owns_container:
                board.close()
            else:
                board.worker.stop()
                board.hub.close()

    app = FastAPI(
        title="Flux Board",
        description="Task board with live updates and webhook delivery",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.container = board

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc), "field": exc.field})

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage failure on {} {}: {}", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    app.include_router(create_board_router(lambda: board.engine))
    app.include_router(create_webhook_router(lambda: board.engine, lambda: board.dispatcher))
    app.include_router(create_stream_router(lambda: board.hub))

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        return {
            "status": "ok",
            "name": "flux-board",
            "version": APP_VERSION,
            "storage": str(board.settings.storage_path),
            "live_consumers": board.hub.consumer_count,
            "webhook_worker": board.worker.running,
        }

    return app
