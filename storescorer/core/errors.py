from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from storescorer.domain.records import RateLimitCheck


class StoreScorerError(Exception):
    """Base error for StoreScorer."""


class InvalidInputError(StoreScorerError):
    """Request input failed validation."""


class RateLimitExceededError(StoreScorerError):
    """Caller or domain exceeded its sliding-window budget."""

    def __init__(self, message: str, check: RateLimitCheck) -> None:
        super().__init__(message)
        self.check = check


class StoreError(StoreScorerError):
    """Entity store call failed."""


class RecordNotFoundError(StoreError):
    """Requested entity does not exist."""


class AuditNotFoundError(RecordNotFoundError):
    """Audit does not exist or has been deleted."""


class PaymentConfigError(StoreScorerError):
    """Missing or invalid payment provider configuration."""


class PaymentProviderError(StoreScorerError):
    """Payment provider request failure."""


class WebhookSignatureError(StoreScorerError):
    """Webhook payload failed signature verification."""


class PipelineConfigError(StoreScorerError):
    """Audit pipeline implementation could not be loaded."""


class ShareRevokedError(StoreScorerError):
    """Shared report link has been revoked."""


class ReportNotReadyError(StoreScorerError):
    """Shared report requested before the audit completed."""
