"""Application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request

from bonsai_entitlements.config import EngineSettings, get_settings
from bonsai_entitlements.db.session import Database
from bonsai_entitlements.logging import configure_logging, logger
from bonsai_entitlements.services.billing_provider import StripeBillingProvider
from bonsai_entitlements.services.catalog import TierCatalog
from bonsai_entitlements.services.commands import BillingProvider
from bonsai_entitlements.web.errors import register_exception_handlers
from bonsai_entitlements.web.routers import setup_routers


def create_app(
    settings: EngineSettings | None = None,
    *,
    database: Database | None = None,
    catalog: TierCatalog | None = None,
    billing_provider: BillingProvider | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    database = database or Database(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.environment == "dev":
            await database.create_all()
        logger.info("service_starting", environment=settings.environment)
        yield
        await database.dispose()
        logger.info("service_stopped")

    app = FastAPI(title="Bonsai Entitlements", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.catalog = catalog or TierCatalog.from_settings(settings)
    app.state.billing_provider = billing_provider or StripeBillingProvider(settings)

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request.headers.get("x-request-id") or uuid4().hex,
            path=request.url.path,
        )
        return await call_next(request)

    register_exception_handlers(app)
    app.include_router(setup_routers())
    return app


def run() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
