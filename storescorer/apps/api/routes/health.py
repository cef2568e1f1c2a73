from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from storescorer.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from storescorer.apps.api.response import SuccessEnvelope, success_response
from storescorer.core.config import get_settings
from storescorer.persistence.db import ping


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthChecks(BaseModel):
    database: bool
    payments_configured: bool
    webhook_configured: bool
    cron_configured: bool


class HealthResponse(BaseModel):
    status: str
    environment: str
    checks: HealthChecks


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> JSONResponse:
    # Degraded when the database is unreachable or payments cannot be taken.
    settings = get_settings()
    try:
        await ping()
        database_ok = True
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("health_database_unreachable", exc_info=exc)
        database_ok = False
    checks = HealthChecks(
        database=database_ok,
        payments_configured=bool(settings.stripe_secret_key and settings.stripe_audit_price_id),
        webhook_configured=bool(settings.stripe_webhook_secret),
        cron_configured=bool(settings.cron_secret),
    )
    healthy = checks.database and checks.payments_configured and checks.webhook_configured
    payload = HealthResponse(
        status="ok" if healthy else "degraded",
        environment=settings.environment,
        checks=checks,
    )
    return JSONResponse(
        content=success_response(request=request, data=payload),
        status_code=200 if healthy else 503,
    )
