from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, Request, status

from storescorer.core.config import get_settings
from storescorer.persistence.store import EntityStore
from storescorer.persistence.store import get_store as _default_store
from storescorer.providers.payments.base import PaymentProvider
from storescorer.providers.payments.factory import get_payment_provider as _default_provider
from storescorer.providers.pipeline.base import AuditPipeline
from storescorer.providers.pipeline.factory import get_audit_pipeline as _default_pipeline
from storescorer.services.jobs import JobQueue
from storescorer.services.rate_limiter import AuditRateLimiter


def get_store() -> EntityStore:
    return _default_store()


def get_payment_provider() -> PaymentProvider:
    return _default_provider()


def get_audit_pipeline() -> AuditPipeline:
    return _default_pipeline()


def get_rate_limiter(store: EntityStore = Depends(get_store)) -> AuditRateLimiter:
    return AuditRateLimiter(store)


def get_job_queue(store: EntityStore = Depends(get_store)) -> JobQueue:
    return JobQueue(store)


def _auth_error(message: str) -> HTTPException:
    # Auth failures share one 401 code and a Bearer challenge.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _matches(candidate: str | None, secret: str) -> bool:
    if not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), secret.encode("utf-8"))


async def require_cron_secret(request: Request) -> None:
    # Scheduled triggers share one secret; without it only development is open.
    settings = get_settings()
    if not settings.cron_secret:
        if settings.environment.lower() == "development":
            return
        raise _auth_error("Cron secret is not configured")
    if not _matches(_bearer_token(request), settings.cron_secret):
        raise _auth_error("Invalid cron secret")


async def require_admin(request: Request) -> None:
    settings = get_settings()
    if not settings.admin_key:
        raise _auth_error("Admin access is not configured")
    token = _bearer_token(request)
    if token is None:
        # Query-string keys arrive with "+" decoded to spaces.
        query_key = request.query_params.get("key")
        token = query_key.replace(" ", "+") if query_key else None
    if not _matches(token, settings.admin_key):
        raise _auth_error("Invalid admin key")
