from __future__ import annotations

import asyncio
import json
import logging

import stripe

from storescorer.core.config import Settings, get_settings
from storescorer.core.errors import PaymentConfigError, PaymentProviderError, WebhookSignatureError
from storescorer.providers.payments.base import (
    CheckoutSession,
    ProviderEvent,
    ProviderSession,
    field,
    session_from_payload,
)
from storescorer.services.resilience import retry_async


logger = logging.getLogger(__name__)


def _retryable(exc: Exception) -> bool:
    # Connection drops and provider throttling are worth another attempt; card/config errors are not.
    return isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError, TimeoutError))


class StripePaymentProvider:
    def __init__(self, settings: Settings | None = None) -> None:
        # Credentials are resolved on first use so the app boots without Stripe configured.
        self._settings = settings
        self._api_key: str | None = None

    def _resolve_api_key(self) -> str:
        if self._api_key is None:
            settings = self._settings or get_settings()
            if not settings.stripe_secret_key:
                raise PaymentConfigError("STRIPE_SECRET_KEY is not configured")
            self._api_key = settings.stripe_secret_key
        return self._api_key

    async def retrieve_session(self, session_id: str) -> ProviderSession:
        api_key = self._resolve_api_key()

        async def _call():
            return await asyncio.to_thread(
                stripe.checkout.Session.retrieve, session_id, api_key=api_key
            )

        try:
            session = await retry_async(_call, retryable=_retryable, operation="stripe_session_retrieve")
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"Stripe session lookup failed: {exc}") from exc
        return session_from_payload(session)

    def verify_webhook_signature(
        self, raw_body: bytes, signature_header: str, secret: str
    ) -> ProviderEvent:
        try:
            stripe.Webhook.construct_event(raw_body, signature_header, secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError("Invalid signature") from exc
        except ValueError as exc:
            raise WebhookSignatureError("Invalid payload") from exc
        # The signature covers the raw body, so the verified JSON is read directly.
        payload = json.loads(raw_body)
        event_type = str(field(payload, "type") or "")
        data_object = field(field(payload, "data"), "object")
        session = None
        if event_type.startswith("checkout.session.") and data_object is not None:
            session = session_from_payload(data_object)
        return ProviderEvent(id=field(payload, "id"), type=event_type, session=session)

    async def create_checkout_session(
        self,
        *,
        audit_id: str,
        domain: str,
        customer_email: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        api_key = self._resolve_api_key()
        settings = self._settings or get_settings()
        if not settings.stripe_audit_price_id:
            raise PaymentConfigError("STRIPE_AUDIT_PRICE_ID is not configured")
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=api_key,
                mode="payment",
                line_items=[{"price": settings.stripe_audit_price_id, "quantity": 1}],
                customer_email=customer_email,
                client_reference_id=audit_id,
                metadata={"auditId": audit_id, "domain": domain},
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.InvalidRequestError as exc:
            message = str(exc)
            if "No such price" in message:
                raise PaymentConfigError("Stripe price is not configured correctly") from exc
            raise PaymentProviderError(f"Stripe rejected checkout session: {message}") from exc
        except stripe.AuthenticationError as exc:
            raise PaymentConfigError("Stripe API key is invalid") from exc
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"Stripe checkout session failed: {exc}") from exc
        return CheckoutSession(id=str(field(session, "id")), url=str(field(session, "url")))

    async def close(self) -> None:
        # Module-level Stripe calls hold no pooled connections; drop cached credentials.
        self._api_key = None
