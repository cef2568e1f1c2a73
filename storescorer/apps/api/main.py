from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from storescorer.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from storescorer.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from storescorer.apps.api.routes.admin import router as admin_router
from storescorer.apps.api.routes.audits import router as audits_router
from storescorer.apps.api.routes.checkout import router as checkout_router
from storescorer.apps.api.routes.cron import router as cron_router
from storescorer.apps.api.routes.health import router as health_router
from storescorer.apps.api.routes.webhooks import router as webhooks_router
from storescorer.core.config import get_settings
from storescorer.core.errors import StoreScorerError
from storescorer.core.logging import configure_logging
from storescorer.persistence.db import create_schema, dispose_engine
from storescorer.providers.payments.factory import close_payment_provider


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Shared clients are created lazily and drained here on shutdown.
    if get_settings().auto_create_schema:
        await create_schema()
    yield
    await close_payment_provider()
    await dispose_engine()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="StoreScorer API", version=API_VERSION, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Echo the caller's X-Request-Id or mint one.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StoreScorerError, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    prefix = f"/{API_VERSION}"
    app.include_router(health_router, prefix=prefix)
    app.include_router(checkout_router, prefix=prefix)
    # Provider callbacks and status polling converge on the same reconciliation routine.
    app.include_router(webhooks_router, prefix=prefix)
    app.include_router(audits_router, prefix=prefix)
    # Scheduled triggers for the job sweep and rate-limit hygiene.
    app.include_router(cron_router, prefix=prefix)
    app.include_router(admin_router, prefix=prefix)

    return app


app = create_app()
