"""FastAPI application factory for the fedbroker token broker."""

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.responses import JSONResponse

from fedbroker.api.deps import build_controller
from fedbroker.api.router_tokens import router as tokens_router
from fedbroker.core.scheduler import run_refresh_loop
from fedbroker.core.settings import BrokerSettings
from fedbroker.db.engine import dispose_engine, get_store, init_models
from fedbroker.oidc.routes_discovery import router as discovery_router

HTTP_NOT_FOUND = 404


def create_app() -> FastAPI:
    """Build and configure the FastAPI application."""
    settings = BrokerSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await init_models()
        task: asyncio.Task[None] | None = None
        if settings.refresh_interval_seconds > 0:
            controller = build_controller(
                get_store(), settings, lock=app.state.sync_lock
            )
            task = asyncio.create_task(run_refresh_loop(app, controller, settings))
        yield
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await dispose_engine()

    app = FastAPI(
        title="fedbroker federated credential broker",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.last_sync = None
    # one trigger at a time across the refresh loop and /internal/sync
    app.state.sync_lock = asyncio.Lock()

    @app.exception_handler(HTTP_NOT_FOUND)
    async def _not_found(_request: Request, _exc: Exception) -> JSONResponse:
        return JSONResponse(
            {"error": "Endpoint not found"}, status_code=HTTP_NOT_FOUND
        )

    app.include_router(discovery_router)
    app.include_router(tokens_router)

    return app
