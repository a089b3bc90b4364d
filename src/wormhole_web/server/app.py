from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from wormhole_web.archive import ArchivePackager
from wormhole_web.backends.wormhole_cli import WormholeCliBackend
from wormhole_web.config import Settings
from wormhole_web.server.orchestrator import TaskSupervisor
from wormhole_web.server.routes import make_router
from wormhole_web.server.state import AppState, TransferRegistry
from wormhole_web.server.sweeper import LifecycleSweeper
from wormhole_web.storage import TransferStorage

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from wormhole_web.backends.base import TransferBackend

logger = logging.getLogger(__name__)


def build_state(
    settings: Settings, backend: TransferBackend | None = None,
) -> AppState:
    """Wire the services shared by handlers and transfer tasks."""
    storage = TransferStorage(settings.storage_dir)
    if backend is None:
        backend = WormholeCliBackend(
            executable=settings.wormhole_executable,
            appid=settings.wormhole_appid,
            relay_url=settings.wormhole_relay_url,
        )
    return AppState(
        settings=settings,
        storage=storage,
        transfers=TransferRegistry(storage=storage),
        backend=backend,
        packager=ArchivePackager(storage, chunk_size=settings.chunk_size),
        supervisor=TaskSupervisor(),
    )


def create_app(
    settings: Settings | None = None,
    backend: TransferBackend | None = None,
) -> FastAPI:
    """Create a configured wormhole-web FastAPI application.

    Args:
        settings: Runtime settings; read from the environment when omitted.
        backend: Transfer backend; defaults to the ``wormhole`` CLI adapter.
    """
    settings = settings or Settings()
    state = build_state(settings, backend)
    sweeper = LifecycleSweeper(
        state.transfers,
        ttl_seconds=settings.transfer_ttl_seconds,
        interval_seconds=settings.cleanup_interval_seconds,
        supervisor=state.supervisor,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        state.storage.ensure_root()
        sweeper.start()
        logger.info("Transfer storage at %s", state.storage.root)
        try:
            yield
        finally:
            await sweeper.stop()
            still_running = await state.supervisor.drain(
                settings.shutdown_timeout_seconds
            )
            if still_running:
                logger.warning("%d transfer(s) abandoned at shutdown", still_running)
            state.storage.purge()
            logger.info("Server stopped")

    app = FastAPI(title="wormhole-web", lifespan=lifespan)
    # Storage must exist even when the lifespan is not run (e.g. ASGI tests).
    state.storage.ensure_root()
    app.state = state

    @app.exception_handler(RequestValidationError)
    async def _bad_request(_: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": "Invalid request body"})

    app.include_router(make_router(), prefix="/api")
    if settings.static_dir is not None:
        app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")
    return app
