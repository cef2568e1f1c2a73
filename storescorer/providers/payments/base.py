from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class ProviderSession:
    # Provider-agnostic view of a checkout session used by reconciliation.
    session_id: str
    payment_status: str | None
    amount_total: int | None
    currency: str | None
    payment_intent_id: str | None
    customer_email: str | None
    audit_id: str | None


@dataclass(frozen=True)
class ProviderEvent:
    id: str | None
    type: str
    session: ProviderSession | None


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str


class PaymentProvider(Protocol):
    async def retrieve_session(self, session_id: str) -> ProviderSession:
        ...

    def verify_webhook_signature(
        self, raw_body: bytes, signature_header: str, secret: str
    ) -> ProviderEvent:
        ...

    async def create_checkout_session(
        self,
        *,
        audit_id: str,
        domain: str,
        customer_email: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        ...

    async def close(self) -> None:
        ...


def field(obj: Any, name: str) -> Any:
    # Provider objects support item access; fall back to attributes for plain objects.
    if obj is None:
        return None
    try:
        return obj[name]
    except (KeyError, TypeError, IndexError):
        return getattr(obj, name, None)


def session_from_payload(obj: Any) -> ProviderSession:
    # Normalize a checkout.session object from the webhook body or a lookup response.
    metadata = field(obj, "metadata") or {}
    customer_details = field(obj, "customer_details") or {}
    payment_intent = field(obj, "payment_intent")
    if payment_intent is not None and not isinstance(payment_intent, str):
        payment_intent = field(payment_intent, "id")
    amount_total = field(obj, "amount_total")
    return ProviderSession(
        session_id=str(field(obj, "id")),
        payment_status=field(obj, "payment_status"),
        amount_total=int(amount_total) if amount_total is not None else None,
        currency=field(obj, "currency"),
        payment_intent_id=payment_intent,
        customer_email=field(customer_details, "email") or field(obj, "customer_email"),
        audit_id=field(metadata, "auditId") or field(obj, "client_reference_id"),
    )
