"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import Mapping

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from setlist_sync.api.router import router
from setlist_sync.config import AppConfig, load_config
from setlist_sync.db import init_db
from setlist_sync.errors import AppError
from setlist_sync.integrations import ProviderClients, build_clients
from setlist_sync.logging import configure_logging, get_logger
from setlist_sync.orchestrator.batch import Orchestrator
from setlist_sync.sync.base import SyncDeps
from setlist_sync.sync.registry import BoundHandler, build_handlers
from setlist_sync.workers.queue_worker import SyncQueueWorker

logger = get_logger(__name__)


def create_app(
    *,
    config: AppConfig | None = None,
    clients: ProviderClients | None = None,
    handlers: Mapping[str, BoundHandler] | None = None,
    init_database: bool = True,
) -> FastAPI:
    """Wire clients, handlers, the queue worker and the orchestrator into an app.

    ``clients`` and ``handlers`` may be supplied by tests to avoid real
    provider traffic.
    """

    resolved = config or load_config()
    configure_logging(resolved.logging.level)
    if init_database:
        init_db()

    if handlers is None:
        deps = SyncDeps(clients=clients or build_clients(resolved), config=resolved.sync)
        handlers = build_handlers(deps)

    app = FastAPI(title="setlist-sync")
    app.state.config = resolved
    app.state.handlers = dict(handlers)
    app.state.sync_worker = SyncQueueWorker(handlers, config=resolved.queue)
    app.state.orchestrator = Orchestrator(handlers, config=resolved.orchestrator)

    @app.exception_handler(AppError)
    async def _handle_app_error(request: Request, exc: AppError) -> JSONResponse:
        return exc.as_response(request_path=request.url.path, method=request.method)

    app.include_router(router)
    logger.info("Application configured", extra={"event": "app.configured"})
    return app


__all__ = ["create_app"]
